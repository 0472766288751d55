"""Configuration management for the router provisioner."""

import os
import re
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from dotenv import load_dotenv


class RouterConfig(BaseModel):
    """RouterOS REST API access defaults."""
    default_port: int = Field(default=80, ge=1, le=65535)
    scheme: str = "http"
    request_timeout: int = Field(default=30, ge=5, le=120)
    verify_ssl: bool = False
    default_wan_interface: str = "ether1"
    default_wlan_interface: str = "wlan1"

    @field_validator("scheme")
    @classmethod
    def check_scheme(cls, v: str) -> str:
        v = v.lower()
        if v not in ("http", "https"):
            raise ValueError(f"Unsupported scheme: {v}")
        return v


class HotspotConfig(BaseModel):
    """Addressing plan for the captive-portal network."""
    bridge_name: str = "hotspot-bridge"
    bridge_address: str = "192.168.10.1/24"
    bridge_interfaces: List[str] = Field(default_factory=lambda: ["wlan1", "ether2"])
    network: str = "192.168.10.0/24"
    pool_name: str = "hotspot-pool"
    pool_ranges: str = "192.168.10.10-192.168.10.254"
    dhcp_name: str = "hotspot-dhcp"
    dns_servers: str = "8.8.8.8,8.8.4.4"
    profile_name: str = "hotspot-profile"
    server_name: str = "hotspot1"
    dns_name: str = "hotspot.local"
    # Disable RADIUS and force local CHAP login on the server profile.
    secure_auth: bool = False


class PPPoEConfig(BaseModel):
    """Addressing plan for PPPoE subscribers."""
    pool_name: str = "pppoe-pool"
    pool_ranges: str = "192.168.100.10-192.168.100.254"
    local_address: str = "192.168.100.1"
    network: str = "192.168.100.0/24"
    service_name: str = "pppoe-service"
    default_profile: str = "home-standard-10mbps"
    default_interface: str = "bridge"


class VPNConfig(BaseModel):
    """WireGuard concentrator and tunnel settings."""
    network: str = "10.99.0.0/16"
    server_ip: str = "10.99.0.1"
    endpoint: str = "vpn.example.net:51820"
    server_public_key: str = ""
    interface: str = "wg0"
    config_path: str = "/etc/wireguard/wg0.conf"
    router_interface: str = "wg-mgmt"
    router_listen_port: int = Field(default=13231, ge=1, le=65535)
    keepalive: int = Field(default=25, ge=0, le=3600)
    settle_seconds: int = Field(default=30, ge=0, le=300)
    ssh_host: str = "127.0.0.1"
    ssh_port: int = 22
    ssh_username: str = "root"
    ssh_password: Optional[str] = None
    ssh_key_path: Optional[str] = None
    ssh_connect_timeout: int = Field(default=10, ge=1, le=120)
    use_sudo: bool = True
    health_check_interval: int = Field(default=300, ge=10)
    stale_threshold: int = Field(default=600, ge=30)
    alert_after: int = Field(default=3600, ge=60)

    @field_validator("server_public_key", "ssh_password", mode="before")
    @classmethod
    def expand_env_var(cls, v: Optional[str]) -> Optional[str]:
        """Expand environment variables."""
        if v and v.startswith("${") and v.endswith("}"):
            env_var = v[2:-1]
            return os.getenv(env_var, "")
        return v

    @property
    def endpoint_host(self) -> str:
        return self.endpoint.rsplit(":", 1)[0]

    @property
    def endpoint_port(self) -> int:
        if ":" in self.endpoint:
            return int(self.endpoint.rsplit(":", 1)[1])
        return 51820


class SecurityConfig(BaseModel):
    """Secrets-at-rest configuration."""
    secret_key: str = ""

    @field_validator("secret_key", mode="before")
    @classmethod
    def expand_env_var(cls, v: str) -> str:
        """Expand environment variables in the key."""
        if v and v.startswith("${") and v.endswith("}"):
            env_var = v[2:-1]
            return os.getenv(env_var, "")
        return v


class SyncConfig(BaseModel):
    """Scheduled drift reconciliation."""
    enabled: bool = True
    interval: int = Field(default=900, ge=60)


class LocksConfig(BaseModel):
    """Per-router advisory lock settings."""
    ttl: int = Field(default=900, ge=30)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None
    db: str = "/var/lib/routerprov/routerprov.db"


class Config(BaseModel):
    """Main configuration class."""
    router: RouterConfig = Field(default_factory=RouterConfig)
    hotspot: HotspotConfig = Field(default_factory=HotspotConfig)
    pppoe: PPPoEConfig = Field(default_factory=PPPoEConfig)
    vpn: VPNConfig = Field(default_factory=VPNConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    locks: LocksConfig = Field(default_factory=LocksConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def expand_env_vars(obj):
    """Recursively expand environment variables in a dict."""
    if isinstance(obj, dict):
        return {k: expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        pattern = re.compile(r'\$\{([^}]+)\}')
        def replacer(match):
            return os.getenv(match.group(1), match.group(0))
        return pattern.sub(replacer, obj)
    return obj


def load_config(config_path: str = "config.yaml", env_file: str = ".env") -> Config:
    """Load configuration from YAML file and environment variables.

    Args:
        config_path: Path to the YAML configuration file.
        env_file: Path to the .env file for environment variables.

    Returns:
        Config object with all settings.
    """
    env_path = Path(env_file)
    if env_path.exists():
        load_dotenv(env_path)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, "r") as f:
        raw_config = yaml.safe_load(f) or {}

    return Config(**expand_env_vars(raw_config))


# Global config instance (set by main.py / cli.py)
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call load_config() first.")
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
