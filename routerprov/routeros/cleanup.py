"""Removal of vendor-default state that collides with provisioned configuration.

Only run on re-provisioning: on a factory-default router this state is what
keeps the management connection alive.
"""

import logging
from typing import List

from ..errors import GatewayError
from ..models import ConfigurationResult, ConnectionConfig
from . import gateway
from .common import FATAL_ERRORS, RECOVERABLE_ERRORS, failed, fetch_list, find_item
from .system import get_bridge_ports, remove_bridge_port

logger = logging.getLogger(__name__)

DEFAULT_BRIDGE = "bridge"


async def cleanup_default_bridge(config: ConnectionConfig, bridge_name: str = DEFAULT_BRIDGE) -> ConfigurationResult:
    """Detach every port from the factory default bridge."""
    step = "cleanup_default_bridge"
    try:
        removed = []
        if find_item(await fetch_list(config, "/interface/bridge"), name=bridge_name):
            for port in await get_bridge_ports(config):
                if port.get("bridge") != bridge_name:
                    continue
                try:
                    await remove_bridge_port(config, port[".id"])
                    removed.append(port.get("interface"))
                except FATAL_ERRORS:
                    raise
                except GatewayError as e:
                    logger.warning(f"[{config.address}] Failed to remove port {port.get('interface')}: {e}")
        if removed:
            logger.info(f"[{config.address}] Removed {', '.join(removed)} from {bridge_name}")
        return ConfigurationResult(success=True, step=step,
                                   message="Default bridge cleaned up successfully",
                                   data={"removed": removed})
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to clean up default bridge", e)


async def _delete_each(config: ConnectionConfig, path: str, items: List[dict], label: str) -> List[str]:
    deleted = []
    for item in items:
        try:
            await gateway.send(config, f"{path}/{item['.id']}", "DELETE")
            deleted.append(item.get("name") or item[".id"])
        except FATAL_ERRORS:
            raise
        except GatewayError as e:
            logger.warning(f"[{config.address}] Failed to remove {label} {item.get('name')}: {e}")
    return deleted


async def cleanup_conflicting_dhcp(config: ConnectionConfig, interface: str) -> ConfigurationResult:
    """Delete DHCP servers bound to an interface about to be repurposed."""
    step = "cleanup_dhcp"
    try:
        servers = [s for s in await fetch_list(config, "/ip/dhcp-server") if s.get("interface") == interface]
        deleted = await _delete_each(config, "/ip/dhcp-server", servers, "DHCP server")
        return ConfigurationResult(success=True, step=step,
                                   message="Conflicting DHCP servers removed",
                                   data={"interface": interface, "removed": deleted})
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to clean up DHCP servers", e)


async def cleanup_existing_hotspot(config: ConnectionConfig) -> ConfigurationResult:
    """Delete every hotspot server on the device."""
    step = "cleanup_hotspot"
    try:
        deleted = await _delete_each(config, "/ip/hotspot", await fetch_list(config, "/ip/hotspot"), "hotspot")
        return ConfigurationResult(success=True, step=step,
                                   message="Existing hotspot configuration removed",
                                   data={"removed": deleted})
    except RECOVERABLE_ERRORS as e:
        return failed(step, "Failed to clean up hotspot", e)


async def perform_full_cleanup(config: ConnectionConfig, interfaces: List[str]) -> ConfigurationResult:
    """Run every cleanup primitive. Succeeds only if all of them did."""
    results = [await cleanup_default_bridge(config)]
    for iface in interfaces:
        results.append(await cleanup_conflicting_dhcp(config, iface))
    results.append(await cleanup_existing_hotspot(config))

    all_success = all(r.success for r in results)
    return ConfigurationResult(
        success=all_success,
        step="full_cleanup",
        message="Full cleanup completed successfully" if all_success else "Cleanup completed with some warnings",
        error=None if all_success else "; ".join(r.error or r.message for r in results if not r.success),
        data=results,
    )
