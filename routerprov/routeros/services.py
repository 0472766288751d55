"""Idempotent service primitives: PPPoE, PPP profiles and the hotspot captive portal."""

import logging
from typing import Any, Dict, List

from ..models import ConfigurationResult, ConnectionConfig
from . import gateway
from .catalog import CATALOG_VERSION, HOTSPOT_TIERS, PPPOE_TIERS, SECURE_HOTSPOT_PROFILE, SPECIAL_PROFILES
from .common import RECOVERABLE_ERRORS, failed, fetch_list, find_item

logger = logging.getLogger(__name__)

HOTSPOT_USER_PROFILE_PATH = "/ip/hotspot/user/profile"


async def configure_pppoe_servers(config: ConnectionConfig, servers: List[Dict[str, str]]) -> ConfigurationResult:
    """Ensure PPPoE servers, matched on service name and interface.

    Args:
        servers: items of ``{"service-name", "interface", "default-profile"}``.
    """
    step = "pppoe_servers"
    try:
        results: List[Any] = []
        for server in servers:
            existing = find_item(
                await fetch_list(config, "/interface/pppoe-server/server"),
                service_name=server["service-name"],
                interface=server["interface"],
            )
            if existing:
                results.append({"existing": True, "service-name": server["service-name"]})
                continue
            results.append(await gateway.hybrid_send(config, "/interface/pppoe-server/server", dict(server)))
        return ConfigurationResult(success=True, step=step,
                                   message=f"Configured {len(servers)} PPPoE servers successfully", data=results)
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure PPPoE servers", e)


async def _ensure_named(config: ConnectionConfig, path: str, payloads: List[Dict[str, str]]) -> List[str]:
    """Create every payload whose name is absent under ``path``. Returns the created names."""
    existing = await fetch_list(config, path)
    created = []
    for payload in payloads:
        if find_item(existing, name=payload["name"]):
            continue
        await gateway.hybrid_send(config, path, payload)
        created.append(payload["name"])
    return created


async def create_ppp_profiles(config: ConnectionConfig, profiles: List[Dict[str, str]]) -> ConfigurationResult:
    step = "ppp_profiles"
    try:
        created = await _ensure_named(config, "/ppp/profile", profiles)
        return ConfigurationResult(success=True, step=step,
                                   message=f"Created {len(profiles)} PPP profiles successfully",
                                   data={"created": created})
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to create PPP profiles", e)


async def configure_hotspot(
    config: ConnectionConfig,
    profile: Dict[str, str],
    server: Dict[str, str],
) -> ConfigurationResult:
    """Ensure a hotspot server profile and server.

    The profile always gets CHAP login, one device per user and transparent
    proxying, including when it already existed with other values.

    Args:
        profile: ``{"name", "hotspot-address", "dns-name", ...}``.
        server: ``{"name", "interface", "address-pool", "profile"}``.
    """
    step = "hotspot_configuration"
    secure_profile = {**profile, **SECURE_HOTSPOT_PROFILE}
    try:
        existing = find_item(await fetch_list(config, "/ip/hotspot/profile"), name=secure_profile["name"])
        if not existing:
            await gateway.hybrid_send(config, "/ip/hotspot/profile", secure_profile)
            logger.info(f"[{config.address}] Created secure hotspot profile {secure_profile['name']}")
        else:
            await gateway.send(config, f"/ip/hotspot/profile/{existing['.id']}", "PATCH", dict(SECURE_HOTSPOT_PROFILE))
            logger.info(f"[{config.address}] Enforced secure settings on hotspot profile {secure_profile['name']}")

        if not find_item(await fetch_list(config, "/ip/hotspot"), name=server["name"]):
            await gateway.hybrid_send(config, "/ip/hotspot", dict(server))

        return ConfigurationResult(
            success=True, step=step,
            message="Hotspot configured successfully with secure authentication",
            data={"profile": secure_profile["name"], "server": server["name"]},
        )
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure hotspot", e)


async def configure_secure_hotspot_auth(config: ConnectionConfig, server_name: str = "hotspot1") -> ConfigurationResult:
    """Force local CHAP authentication on the profile used by a hotspot server."""
    step = "hotspot_secure_auth"
    try:
        server = find_item(await fetch_list(config, "/ip/hotspot"), name=server_name)
        if not server:
            return ConfigurationResult(success=False, step=step,
                                       message=f"Hotspot server {server_name} not found",
                                       error="Server not found")

        profile_name = server.get("profile")
        profile = find_item(await fetch_list(config, "/ip/hotspot/profile"), name=profile_name)
        if not profile:
            return ConfigurationResult(success=False, step=step,
                                       message=f"Hotspot profile {profile_name} not found",
                                       error="Profile not found")

        await gateway.send(config, f"/ip/hotspot/profile/{profile['.id']}", "PATCH", {
            **SECURE_HOTSPOT_PROFILE,
            "use-radius": "no",
        })
        return ConfigurationResult(
            success=True, step=step,
            message=f"Secure authentication configured for {server_name}",
            data={"server": server_name, "profile": profile_name, "login-by": "http-chap"},
        )
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure secure hotspot authentication", e)


async def create_hotspot_user_profiles(config: ConnectionConfig) -> ConfigurationResult:
    """Seed the time-based hotspot packages."""
    step = "hotspot_user_profiles"
    try:
        payloads = [tier.payload() for tier in HOTSPOT_TIERS]
        created = await _ensure_named(config, HOTSPOT_USER_PROFILE_PATH, payloads)
        return ConfigurationResult(
            success=True, step=step,
            message=f"Created {len(payloads)} hotspot user profiles successfully",
            data={"created": created, "profiles": [p["name"] for p in payloads],
                  "catalog_version": CATALOG_VERSION},
        )
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to create hotspot user profiles", e)


async def create_pppoe_user_profiles(config: ConnectionConfig, local_address: str, remote_pool: str) -> ConfigurationResult:
    """Seed the PPPoE bandwidth tiers."""
    payloads = [tier.payload(local_address, remote_pool) for tier in PPPOE_TIERS]
    result = await create_ppp_profiles(config, payloads)
    if not result.success:
        return result
    return ConfigurationResult(
        success=True, step="pppoe_user_profiles",
        message=f"Created {len(payloads)} PPPoE user profiles successfully",
        data={"created": result.data["created"], "profiles": [p["name"] for p in payloads],
              "catalog_version": CATALOG_VERSION},
    )


async def create_special_profiles(config: ConnectionConfig) -> ConfigurationResult:
    """Seed the trial and admin hotspot profiles."""
    step = "special_profiles"
    try:
        payloads = [profile.payload() for profile in SPECIAL_PROFILES]
        created = await _ensure_named(config, HOTSPOT_USER_PROFILE_PATH, payloads)
        return ConfigurationResult(success=True, step=step,
                                   message="Special profiles created successfully",
                                   data={"created": created})
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to create special profiles", e)
