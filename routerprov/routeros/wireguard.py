"""Management tunnel configuration on the router side."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config import VPNConfig
from ..models import ConfigurationResult, ConnectionConfig, utcnow
from . import gateway
from .common import RECOVERABLE_ERRORS, failed, fetch_list, find_item

logger = logging.getLogger(__name__)

WG_PATH = "/interface/wireguard"
WG_PEERS_PATH = "/interface/wireguard/peers"


def _is_disabled(item: Dict[str, Any]) -> bool:
    return str(item.get("disabled", "false")).lower() in ("true", "yes")


async def push_tunnel_config(
    config: ConnectionConfig,
    private_key: str,
    assigned_ip: str,
    vpn: VPNConfig,
) -> ConfigurationResult:
    """Create the WireGuard interface, server peer, address and route, then enable it.

    Each piece is skipped when already present, so pushing twice is safe.
    """
    step = "wireguard_configuration"
    iface = vpn.router_interface
    try:
        created: List[str] = []

        interfaces = await fetch_list(config, WG_PATH)
        if not find_item(interfaces, name=iface):
            await gateway.hybrid_send(config, WG_PATH, {
                "name": iface,
                "private-key": private_key,
                "listen-port": str(vpn.router_listen_port),
                "comment": "Management VPN Tunnel",
            })
            created.append("interface")

        if not find_item(await fetch_list(config, WG_PEERS_PATH), interface=iface,
                         public_key=vpn.server_public_key):
            await gateway.hybrid_send(config, WG_PEERS_PATH, {
                "interface": iface,
                "public-key": vpn.server_public_key,
                "endpoint-address": vpn.endpoint_host,
                "endpoint-port": str(vpn.endpoint_port),
                "allowed-address": vpn.network,
                "persistent-keepalive": f"{vpn.keepalive}s",
                "comment": "Central Management Server",
            })
            created.append("peer")

        address = f"{assigned_ip}/32"
        if not find_item(await fetch_list(config, "/ip/address"), address=address, interface=iface):
            await gateway.hybrid_send(config, "/ip/address", {
                "address": address,
                "interface": iface,
                "comment": "VPN Management IP",
            })
            created.append("address")

        if not find_item(await fetch_list(config, "/ip/route"), dst_address=vpn.network, gateway=iface):
            await gateway.hybrid_send(config, "/ip/route", {
                "dst-address": vpn.network,
                "gateway": iface,
                "comment": "VPN Network Route",
            })
            created.append("route")

        wg = find_item(await fetch_list(config, WG_PATH), name=iface)
        if wg and _is_disabled(wg):
            await gateway.send(config, f"{WG_PATH}/{wg['.id']}", "PATCH", {"disabled": "no"})
            created.append("enabled")

        logger.info(f"WireGuard applied on {config.address}: {', '.join(created) or 'already configured'}")
        return ConfigurationResult(success=True, step=step,
                                   message="WireGuard configuration applied", data={"created": created})
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to configure WireGuard on router", e)


def render_setup_script(
    private_key: str,
    assigned_ip: str,
    vpn: VPNConfig,
    generated_at: Optional[datetime] = None,
) -> str:
    """RouterOS terminal script for routers that are configured by hand."""
    generated_at = generated_at or utcnow()
    iface = vpn.router_interface
    lines = [
        "# MikroTik VPN Auto-Setup Script",
        f"# Generated: {generated_at.isoformat()}",
        f"# VPN IP: {assigned_ip}",
        ':log info "Starting VPN setup...";',
        "# Create WireGuard interface",
        f'/interface wireguard add name={iface} private-key="{private_key}" '
        f'listen-port={vpn.router_listen_port} comment="Management VPN";',
        "# Add VPN server as peer",
        f'/interface wireguard peers add interface={iface} public-key="{vpn.server_public_key}" '
        f"endpoint-address={vpn.endpoint_host} endpoint-port={vpn.endpoint_port} "
        f'allowed-address={vpn.network} persistent-keepalive={vpn.keepalive}s comment="VPN Server";',
        "# Assign VPN IP to interface",
        f'/ip address add address={assigned_ip}/32 interface={iface} comment="VPN Management IP";',
        "# Add route to VPN network",
        f'/ip route add dst-address={vpn.network} gateway={iface} comment="VPN Network Route";',
        "# Allow incoming connections from VPN network",
        f"/ip firewall filter add chain=input src-address={vpn.network} action=accept "
        f'place-before=0 comment="Allow VPN Management";',
        "# Enable WireGuard interface (if disabled)",
        f"/interface wireguard enable {iface};",
        f':log info "VPN setup complete! IP: {assigned_ip}";',
    ]
    return "\n".join(lines) + "\n"
