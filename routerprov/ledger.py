"""Deployed-configuration ledger.

Every resource a provisioning run ensures on a router is mirrored here as a
``DeployedConfigEntry``. Writes pull any entry with the same name from the
category and push the new one in a single document update, so a resource
re-provisioned any number of times still has exactly one entry.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .db import Database
from .models import DeployedConfigEntry, DeployedConfigs, EntryStatus, utcnow

logger = logging.getLogger(__name__)

LEDGER_ROOT = "configuration.deployed_configs"

Matcher = Callable[[DeployedConfigEntry, Dict[str, Any]], bool]


def _by_name(entry: DeployedConfigEntry, item: Dict[str, Any]) -> bool:
    return item.get("name") == entry.name


@dataclass(frozen=True)
class LedgerType:
    """How one resource type is stored in the ledger and found on the device."""
    config_type: str
    category: str
    device_path: str
    matches: Matcher = _by_name


LEDGER_TYPES: Dict[str, LedgerType] = {t.config_type: t for t in [
    LedgerType("ip-pool", "ip_pools", "/ip/pool"),
    LedgerType("dhcp-server", "dhcp_servers", "/ip/dhcp-server"),
    LedgerType("dhcp-network", "dhcp_networks", "/ip/dhcp-server/network",
               lambda e, item: item.get("address") == e.name),
    LedgerType("bridge", "bridges", "/interface/bridge"),
    LedgerType("bridge-port", "bridge_ports", "/interface/bridge/port",
               lambda e, item: (item.get("bridge") == e.parameters.get("bridge")
                                and item.get("interface") == e.parameters.get("interface"))),
    LedgerType("hotspot-profile", "hotspot_profiles", "/ip/hotspot/profile"),
    LedgerType("hotspot-server", "hotspot_servers", "/ip/hotspot"),
    LedgerType("hotspot-user-profile", "hotspot_user_profiles", "/ip/hotspot/user/profile"),
    LedgerType("pppoe-server", "pppoe_servers", "/interface/pppoe-server/server",
               lambda e, item: (item.get("service-name") == e.parameters.get("service_name")
                                and item.get("interface") == e.parameters.get("interface"))),
    LedgerType("ppp-profile", "ppp_profiles", "/ppp/profile"),
    LedgerType("nat-rule", "nat_rules", "/ip/firewall/nat",
               lambda e, item: (item.get("chain") == e.parameters.get("chain")
                                and item.get("src-address") == e.parameters.get("src_address")
                                and item.get("out-interface") == e.parameters.get("out_interface"))),
    LedgerType("wan-interface", "wan_config", "/ip/dhcp-client",
               lambda e, item: item.get("interface") == e.name),
    LedgerType("wifi-config", "wifi_config", "/interface/wireless"),
]}


def category_for(config_type: str) -> str:
    try:
        return LEDGER_TYPES[config_type].category
    except KeyError:
        raise ValueError(f"Unknown ledger type: {config_type}")


def make_entry(config_type: str, name: str, **parameters: Any) -> DeployedConfigEntry:
    category_for(config_type)
    now = utcnow()
    return DeployedConfigEntry(
        name=name,
        type=config_type,
        parameters=parameters,
        created_at=now,
        last_checked=now,
        status=EntryStatus.ACTIVE,
    )


# Entry builders, one per resource type.

def ip_pool(name: str, ranges: str) -> DeployedConfigEntry:
    return make_entry("ip-pool", name, ranges=ranges)


def dhcp_server(name: str, interface: str, address_pool: str) -> DeployedConfigEntry:
    return make_entry("dhcp-server", name, interface=interface, address_pool=address_pool)


def dhcp_network(address: str, gateway: str, dns_server: str) -> DeployedConfigEntry:
    return make_entry("dhcp-network", address, gateway=gateway, dns_server=dns_server)


def bridge(name: str, address: str) -> DeployedConfigEntry:
    return make_entry("bridge", name, address=address)


def bridge_port(bridge_name: str, interface: str) -> DeployedConfigEntry:
    return make_entry("bridge-port", f"{bridge_name}-{interface}", bridge=bridge_name, interface=interface)


def hotspot_profile(name: str, hotspot_address: str, dns_name: str) -> DeployedConfigEntry:
    return make_entry("hotspot-profile", name, hotspot_address=hotspot_address, dns_name=dns_name)


def hotspot_server(name: str, interface: str, address_pool: str, profile: str) -> DeployedConfigEntry:
    return make_entry("hotspot-server", name, interface=interface, address_pool=address_pool, profile=profile)


def hotspot_user_profile(name: str, session_timeout: str, rate_limit: str) -> DeployedConfigEntry:
    return make_entry("hotspot-user-profile", name, session_timeout=session_timeout, rate_limit=rate_limit)


def pppoe_server(service_name: str, interface: str, default_profile: str) -> DeployedConfigEntry:
    return make_entry("pppoe-server", service_name, service_name=service_name,
                      interface=interface, default_profile=default_profile)


def ppp_profile(name: str, local_address: str, remote_address: str, rate_limit: str) -> DeployedConfigEntry:
    return make_entry("ppp-profile", name, local_address=local_address,
                      remote_address=remote_address, rate_limit=rate_limit)


def nat_rule(chain: str, src_address: str, out_interface: str, action: str) -> DeployedConfigEntry:
    return make_entry("nat-rule", f"{chain}-{src_address}-{out_interface}", chain=chain,
                      src_address=src_address, out_interface=out_interface, action=action)


def wan_interface(interface: str) -> DeployedConfigEntry:
    return make_entry("wan-interface", interface, dhcp_client=True)


def wifi_config(interface: str, ssid: str) -> DeployedConfigEntry:
    return make_entry("wifi-config", interface, ssid=ssid)


async def track(db: Database, router_id: str, entry: DeployedConfigEntry) -> None:
    """Record ``entry``, replacing any entry of the same type and name."""
    path = f"{LEDGER_ROOT}.{category_for(entry.type)}"
    await db.update_router(
        router_id,
        pull={path: {"name": entry.name}},
        push={path: entry},
    )
    logger.debug(f"[{router_id}] Tracked {entry.type} {entry.name}")


async def mark_checked(db: Database, router_id: str, config_type: str, name: str,
                       status: EntryStatus = EntryStatus.ACTIVE,
                       checked_at: Optional[datetime] = None) -> None:
    path = f"{LEDGER_ROOT}.{category_for(config_type)}"
    await db.update_router(router_id, set_elements={path: {
        "match": {"name": name},
        "fields": {"last_checked": checked_at or utcnow(), "status": status},
    }})


async def update_last_synced_at(db: Database, router_id: str,
                                when: Optional[datetime] = None) -> datetime:
    when = when or utcnow()
    await db.update_router(router_id, set={"configuration_status.last_synced_at": when})
    return when


def summarize(deployed: Optional[DeployedConfigs]) -> Dict[str, Any]:
    """Count entries per category and the oldest/newest verification time."""
    summary: Dict[str, Any] = {
        "total_configs": 0,
        "configs_by_type": {},
        "oldest_check": None,
        "newest_check": None,
    }
    if deployed is None:
        return summary

    checks: List[datetime] = []
    for category, entries in deployed.categories().items():
        summary["configs_by_type"][category] = len(entries)
        summary["total_configs"] += len(entries)
        checks.extend(entry.last_checked for entry in entries)

    if checks:
        summary["oldest_check"] = min(checks)
        summary["newest_check"] = max(checks)
    return summary
