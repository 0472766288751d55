"""Read-only device queries and small RouterOS value helpers."""

import ipaddress
import logging
import re
from typing import Any, Dict, List, Optional

from ..errors import GatewayError, describe_connection_error
from ..models import ConnectionConfig, ConnectionTestResult
from . import gateway
from .common import fetch_list

logger = logging.getLogger(__name__)

_UPTIME_UNITS = {"w": 7 * 86400, "d": 86400, "h": 3600, "m": 60, "s": 1}


def parse_uptime(uptime: Optional[str]) -> int:
    """Convert RouterOS uptime (e.g. ``1w2d3h4m5s``) to seconds."""
    if not uptime:
        return 0
    return sum(int(n) * _UPTIME_UNITS[unit] for n, unit in re.findall(r"(\d+)([wdhms])", uptime))


def format_uptime(seconds: Optional[int]) -> str:
    """Render seconds as ``1w 2d 3h 4m``, dropping seconds."""
    remaining = seconds or 0
    parts = []
    for unit in ("w", "d", "h", "m"):
        count, remaining = divmod(remaining, _UPTIME_UNITS[unit])
        if count:
            parts.append(f"{count}{unit}")
    return " ".join(parts) or "0m"


def validate_ip_address(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
        return True
    except ValueError:
        return False


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


async def test_connection(config: ConnectionConfig) -> ConnectionTestResult:
    """Probe the router and report version and load.

    Never raises for gateway failures; the result carries an operator-facing
    message instead.
    """
    try:
        data = await gateway.send(config, "/system/resource", "GET") or {}
    except GatewayError as e:
        message = describe_connection_error(e)
        logger.warning(f"Connection test to {config.address} failed: {message}")
        return ConnectionTestResult(success=False, message=message, error=str(e))

    total = _to_int(data.get("total-memory")) or 0
    free = _to_int(data.get("free-memory")) or 0
    memory_usage = round((total - free) / total * 100) if total > 0 else 0

    result = ConnectionTestResult(
        success=True,
        message="Connected",
        version=data.get("version") or "Unknown",
        board_name=data.get("board-name") or "Unknown",
        platform=data.get("platform"),
        cpu_load=_to_int(data.get("cpu-load")) or 0,
        cpu_count=_to_int(data.get("cpu-count")),
        memory_usage=memory_usage,
        uptime=parse_uptime(data.get("uptime")),
    )
    logger.info(f"Connected to {config.address}: RouterOS {result.version} on {result.board_name}")
    return result


async def get_identity(config: ConnectionConfig) -> Optional[str]:
    try:
        data = await gateway.send(config, "/system/identity", "GET")
    except GatewayError as e:
        logger.warning(f"Failed to fetch identity from {config.address}: {e}")
        return None
    return (data or {}).get("name") or None


async def get_interfaces(config: ConnectionConfig) -> List[Dict[str, Any]]:
    return await fetch_list(config, "/interface")


async def get_mac_address(config: ConnectionConfig) -> Optional[str]:
    """MAC address of the first interface that reports one."""
    for iface in await get_interfaces(config):
        if iface.get("mac-address"):
            return iface["mac-address"]
    return None


async def get_bridge_ports(config: ConnectionConfig) -> List[Dict[str, Any]]:
    return await fetch_list(config, "/interface/bridge/port")


async def remove_bridge_port(config: ConnectionConfig, port_id: str) -> None:
    """Detach a bridge port, using the CLI bridge if DELETE is refused."""
    try:
        await gateway.send(config, f"/interface/bridge/port/{port_id}", "DELETE")
    except GatewayError as e:
        if not gateway.is_fallback_candidate(e):
            raise
        logger.debug(f"DELETE bridge port {port_id} failed ({e}), using CLI remove")
        await gateway.cli_send(config, "/interface/bridge/port/remove", {".id": port_id})
