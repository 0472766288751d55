"""Idempotent network primitives: WAN, LAN addressing, bridges, WiFi, pools, DHCP and NAT.

Every primitive reads current device state first and only creates what is
missing, so calling it again with the same input is a no-op.
"""

import logging
from typing import Any, Dict, List

from ..models import ConfigurationResult, ConnectionConfig
from . import gateway
from .common import RECOVERABLE_ERRORS, failed, fetch_list, find_item
from .system import remove_bridge_port

logger = logging.getLogger(__name__)


async def configure_wan_interface(config: ConnectionConfig, wan_interface: str = "ether1") -> ConfigurationResult:
    """Run a DHCP client on the WAN port."""
    step = "wan_interface"
    try:
        existing = find_item(await fetch_list(config, "/ip/dhcp-client"), interface=wan_interface)
        if existing:
            return ConfigurationResult(
                success=True, step=step,
                message=f"WAN interface {wan_interface} already configured as DHCP client",
                data=existing,
            )

        result = await gateway.hybrid_send(config, "/ip/dhcp-client", {
            "interface": wan_interface,
            "add-default-route": "yes",
            "use-peer-dns": "yes",
        })
        logger.info(f"[{config.address}] DHCP client added on {wan_interface}")
        return ConfigurationResult(
            success=True, step=step,
            message=f"WAN interface {wan_interface} configured successfully",
            data=result,
        )
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure WAN interface", e)


async def configure_lan_interfaces(config: ConnectionConfig, interfaces: List[Dict[str, str]]) -> ConfigurationResult:
    """Assign addresses to LAN interfaces.

    Args:
        interfaces: items of ``{"interface": ..., "address": "a.b.c.d/nn"}``.
    """
    step = "lan_interfaces"
    try:
        results = []
        for iface in interfaces:
            addresses = await fetch_list(config, "/ip/address")
            if find_item(addresses, interface=iface["interface"], address=iface["address"]):
                results.append({"existing": True, "interface": iface["interface"]})
                continue
            results.append(await gateway.hybrid_send(config, "/ip/address", {
                "address": iface["address"],
                "interface": iface["interface"],
            }))
        return ConfigurationResult(success=True, step=step,
                                   message="LAN interfaces configured successfully", data=results)
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure LAN interfaces", e)


async def configure_bridge(
    config: ConnectionConfig,
    bridge_name: str,
    bridge_address: str,
    interfaces: List[str],
) -> ConfigurationResult:
    """Ensure a bridge exists, owns ``interfaces`` and carries ``bridge_address``.

    An interface can be a port of only one bridge, so a port found on a
    different bridge is detached before it is added to this one.
    """
    step = "bridge_configuration"
    try:
        bridge = find_item(await fetch_list(config, "/interface/bridge"), name=bridge_name)
        if not bridge:
            bridge = await gateway.hybrid_send(config, "/interface/bridge", {"name": bridge_name})
            logger.info(f"[{config.address}] Created bridge {bridge_name}")

        moved = []
        for iface in interfaces:
            port = find_item(await fetch_list(config, "/interface/bridge/port"), interface=iface)
            if port and port.get("bridge") == bridge_name:
                continue
            if port:
                logger.info(f"[{config.address}] Moving {iface} from {port.get('bridge')} to {bridge_name}")
                await remove_bridge_port(config, port[".id"])
                moved.append(iface)
            await gateway.hybrid_send(config, "/interface/bridge/port", {
                "bridge": bridge_name,
                "interface": iface,
            })

        addresses = await fetch_list(config, "/ip/address")
        if not find_item(addresses, interface=bridge_name, address=bridge_address):
            await gateway.hybrid_send(config, "/ip/address", {
                "address": bridge_address,
                "interface": bridge_name,
            })

        return ConfigurationResult(
            success=True, step=step,
            message=f"Bridge {bridge_name} configured successfully",
            data={"bridge": bridge, "moved": moved},
        )
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure bridge", e)


async def configure_wifi(
    config: ConnectionConfig,
    wlan_interface: str,
    ssid: str,
    security_profile: str = "default",
) -> ConfigurationResult:
    """Put a wireless interface in AP mode with the given SSID and enable it."""
    step = "wifi_configuration"
    try:
        wlan = find_item(await fetch_list(config, "/interface/wireless"), name=wlan_interface)
        if not wlan:
            return ConfigurationResult(
                success=False, step=step,
                message=f"Wireless interface {wlan_interface} not found",
                error="Interface not found",
            )

        path = f"/interface/wireless/{wlan['.id']}"
        await gateway.send(config, path, "PATCH", {
            "mode": "ap-bridge",
            "ssid": ssid,
            "security-profile": security_profile,
        })
        await gateway.send(config, path, "PATCH", {"disabled": "false"})

        return ConfigurationResult(
            success=True, step=step,
            message=f"WiFi configured with SSID: {ssid}",
            data={"interface": wlan_interface, "ssid": ssid},
        )
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure WiFi", e)


async def create_ip_pools(config: ConnectionConfig, pools: List[Dict[str, str]]) -> ConfigurationResult:
    """Ensure each ``{"name", "ranges"}`` pool exists, matched by name."""
    step = "ip_pools"
    try:
        results: List[Any] = []
        for pool in pools:
            if find_item(await fetch_list(config, "/ip/pool"), name=pool["name"]):
                results.append({"existing": True, "name": pool["name"]})
                continue
            results.append(await gateway.hybrid_send(config, "/ip/pool", dict(pool)))
        return ConfigurationResult(success=True, step=step,
                                   message=f"Created {len(pools)} IP pools successfully", data=results)
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to create IP pools", e)


async def configure_dhcp_server(
    config: ConnectionConfig,
    server: Dict[str, str],
    network: Dict[str, str],
) -> ConfigurationResult:
    """Ensure a DHCP network (matched by address) and server (matched by name).

    Args:
        server: ``{"name", "interface", "address-pool"}``.
        network: ``{"address", "gateway", "dns-server"}``.
    """
    step = "dhcp_server"
    try:
        networks = await fetch_list(config, "/ip/dhcp-server/network")
        if not find_item(networks, address=network["address"]):
            await gateway.hybrid_send(config, "/ip/dhcp-server/network", dict(network))

        servers = await fetch_list(config, "/ip/dhcp-server")
        if not find_item(servers, name=server["name"]):
            await gateway.hybrid_send(config, "/ip/dhcp-server", dict(server))

        return ConfigurationResult(
            success=True, step=step,
            message="DHCP server configured successfully",
            data={"server": server["name"], "network": network["address"]},
        )
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure DHCP server", e)


async def configure_nat(config: ConnectionConfig, rules: List[Dict[str, str]]) -> ConfigurationResult:
    """Ensure NAT rules, matched on chain, source address and out-interface."""
    step = "nat_configuration"
    try:
        results: List[Any] = []
        for rule in rules:
            existing = find_item(
                await fetch_list(config, "/ip/firewall/nat"),
                chain=rule["chain"],
                src_address=rule["src-address"],
                out_interface=rule["out-interface"],
            )
            if existing:
                results.append({"existing": True, "src-address": rule["src-address"]})
                continue
            results.append(await gateway.hybrid_send(config, "/ip/firewall/nat", dict(rule)))
        return ConfigurationResult(success=True, step=step,
                                   message=f"Configured {len(rules)} NAT rules successfully", data=results)
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure NAT", e)
