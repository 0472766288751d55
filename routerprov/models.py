"""Data model for routers, provisioning runs, the deployed-config ledger and VPN tunnels.

Results handed between components are plain dataclasses. Documents that are
persisted in the configuration store are pydantic models so they round-trip
through JSON with validation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningPhase(str, Enum):
    """Current phase of a provisioning run."""
    NOT_STARTED = "not_started"
    CONNECTING = "connecting"
    CLEANING = "cleaning"
    CONFIGURING_WAN = "configuring_wan"
    CONFIGURING_WIFI = "configuring_wifi"
    CONFIGURING_HOTSPOT = "configuring_hotspot"
    CONFIGURING_PPPOE = "configuring_pppoe"
    FINALIZING = "finalizing"
    CONFIGURED = "configured"
    ERROR = "error"


class RouterStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"
    ERROR = "error"


class TunnelStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SETUP = "setup"
    FAILED = "failed"


class EntryStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Per-call values
# ---------------------------------------------------------------------------

@dataclass
class ConnectionConfig:
    """How to reach one router's REST API. Built per call, never persisted."""
    address: str
    username: str
    password: str
    port: int = 80
    scheme: str = "http"
    timeout: float = 30
    verify_ssl: bool = False
    firmware: Optional[str] = None  # RouterOS version, once known

    @property
    def base_url(self) -> str:
        default_port = 443 if self.scheme == "https" else 80
        if self.port and self.port != default_port:
            return f"{self.scheme}://{self.address}:{self.port}/rest"
        return f"{self.scheme}://{self.address}/rest"

    def __repr__(self) -> str:
        return f"ConnectionConfig(address={self.address!r}, port={self.port}, username={self.username!r})"


@dataclass
class ConfigurationResult:
    """Outcome of one configuration or cleanup primitive."""
    success: bool
    step: str
    message: str
    error: Optional[str] = None
    data: Any = None


@dataclass
class ConnectionTestResult:
    """Outcome of probing ``/system/resource``."""
    success: bool
    message: str
    version: Optional[str] = None
    board_name: Optional[str] = None
    platform: Optional[str] = None
    cpu_load: Optional[int] = None
    cpu_count: Optional[int] = None
    memory_usage: Optional[int] = None  # percent
    uptime: Optional[int] = None  # seconds
    error: Optional[str] = None


@dataclass
class RouterConfigIntent:
    """Declarative input for a store-less configuration run."""
    hotspot_enabled: bool = False
    ssid: Optional[str] = None
    pppoe_enabled: bool = False
    pppoe_interfaces: List[str] = field(default_factory=list)
    wan_interface: str = "ether1"
    wlan_interface: str = "wlan1"
    bridge_interfaces: List[str] = field(default_factory=list)
    bridge_name: Optional[str] = None
    lan_addresses: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class FullConfigurationResult:
    """Outcome of a full configuration pipeline."""
    success: bool
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List["FailedStep"] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class ProvisioningResult:
    """Outcome of a persisted provisioning run."""
    success: bool
    router_id: str
    configured: bool = False
    completed_steps: List[str] = field(default_factory=list)
    failed_steps: List["FailedStep"] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    phase: ProvisioningPhase = ProvisioningPhase.NOT_STARTED


@dataclass
class Drift:
    """A ledger entry that no longer matches the device."""
    config_type: str
    config_name: str
    issue: str


@dataclass
class SyncReport:
    router_id: str
    success: bool
    drifts: List[Drift] = field(default_factory=list)
    checked: int = 0
    last_synced_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class VPNProvisioningResult:
    success: bool
    router_id: str
    assigned_ip: Optional[str] = None
    public_key: Optional[str] = None
    status: Optional["TunnelStatus"] = None
    message: str = ""
    error: Optional[str] = None
    completed_steps: List[str] = field(default_factory=list)


@dataclass
class VPNSetupScript:
    """Manual onboarding bundle for routers that cannot be pushed to directly."""
    router_id: str
    assigned_ip: str
    public_key: str
    script: str


# ---------------------------------------------------------------------------
# Persisted documents
# ---------------------------------------------------------------------------

class FailedStep(BaseModel):
    step: str
    error: str
    timestamp: datetime = Field(default_factory=utcnow)


class DeployedConfigEntry(BaseModel):
    """One resource the provisioner believes it created on a router."""
    name: str
    type: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_checked: datetime = Field(default_factory=utcnow)
    status: EntryStatus = EntryStatus.ACTIVE


class DeployedConfigs(BaseModel):
    """Ledger of deployed resources, one list per resource category."""
    ip_pools: List[DeployedConfigEntry] = Field(default_factory=list)
    dhcp_servers: List[DeployedConfigEntry] = Field(default_factory=list)
    dhcp_networks: List[DeployedConfigEntry] = Field(default_factory=list)
    bridges: List[DeployedConfigEntry] = Field(default_factory=list)
    bridge_ports: List[DeployedConfigEntry] = Field(default_factory=list)
    hotspot_profiles: List[DeployedConfigEntry] = Field(default_factory=list)
    hotspot_servers: List[DeployedConfigEntry] = Field(default_factory=list)
    hotspot_user_profiles: List[DeployedConfigEntry] = Field(default_factory=list)
    pppoe_servers: List[DeployedConfigEntry] = Field(default_factory=list)
    ppp_profiles: List[DeployedConfigEntry] = Field(default_factory=list)
    nat_rules: List[DeployedConfigEntry] = Field(default_factory=list)
    wan_config: List[DeployedConfigEntry] = Field(default_factory=list)
    wifi_config: List[DeployedConfigEntry] = Field(default_factory=list)

    def categories(self) -> Dict[str, List[DeployedConfigEntry]]:
        return {name: getattr(self, name) for name in type(self).model_fields}

    def all_entries(self) -> List[DeployedConfigEntry]:
        return [entry for entries in self.categories().values() for entry in entries]


class ProvisioningStatus(BaseModel):
    configured: bool = False
    completed_steps: List[str] = Field(default_factory=list)
    failed_steps: List[FailedStep] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    configured_at: Optional[datetime] = None
    last_attempt: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class RouterConnection(BaseModel):
    address: str
    port: int = 80
    username: str = "admin"
    password_encrypted: str = ""
    prefer_vpn: bool = False


class RouterConfiguration(BaseModel):
    wan_interface: str = "ether1"
    lan_interfaces: List[str] = Field(default_factory=list)
    lan_addresses: List[Dict[str, str]] = Field(default_factory=list)
    wifi_ssid: Optional[str] = None
    wlan_interface: str = "wlan1"
    bridge_name: Optional[str] = None
    hotspot_enabled: bool = True
    pppoe_enabled: bool = False
    pppoe_interfaces: List[str] = Field(default_factory=list)
    deployed_configs: DeployedConfigs = Field(default_factory=DeployedConfigs)


class RouterHealth(BaseModel):
    is_online: bool = False
    last_seen: Optional[datetime] = None
    uptime: Optional[int] = None
    cpu_load: Optional[int] = None
    memory_usage: Optional[int] = None
    version: Optional[str] = None
    model: Optional[str] = None


class RouterVPNState(BaseModel):
    """Tunnel summary mirrored onto the router record."""
    status: Optional[TunnelStatus] = None
    assigned_ip: Optional[str] = None
    last_handshake: Optional[datetime] = None


class RouterRecord(BaseModel):
    id: str
    name: str
    customer_id: Optional[str] = None
    status: RouterStatus = RouterStatus.INACTIVE
    connection: RouterConnection
    configuration: RouterConfiguration = Field(default_factory=RouterConfiguration)
    configuration_status: ProvisioningStatus = Field(default_factory=ProvisioningStatus)
    health: RouterHealth = Field(default_factory=RouterHealth)
    vpn_tunnel: RouterVPNState = Field(default_factory=RouterVPNState)
    created_at: datetime = Field(default_factory=utcnow)


class TunnelVPNConfig(BaseModel):
    client_private_key: str  # encrypted
    client_public_key: str
    server_public_key: str
    assigned_ip: str
    endpoint: str
    allowed_ips: str
    keepalive_seconds: int = 25
    listen_port: int = 13231
    interface_name: str = "wg-mgmt"


class TunnelConnection(BaseModel):
    status: TunnelStatus = TunnelStatus.SETUP
    last_handshake: Optional[datetime] = None
    bytes_in: int = 0
    bytes_out: int = 0
    last_seen: Optional[datetime] = None
    note: Optional[str] = None


class VPNTunnel(BaseModel):
    router_id: str
    customer_id: Optional[str] = None
    vpn_config: TunnelVPNConfig
    connection: TunnelConnection = Field(default_factory=TunnelConnection)
    created_at: datetime = Field(default_factory=utcnow)


class VPNIPPool(BaseModel):
    network: str
    next_available: str
    used_count: int = 0
    total_capacity: int = 0
