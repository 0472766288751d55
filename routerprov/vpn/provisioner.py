"""Management VPN provisioning for routers.

A run generates a key pair, reserves an address, registers the peer on the
concentrator, pushes the tunnel to the router and finally probes it. Each
step is undone when a later one fails, so the concentrator never keeps a
peer the router does not know about.
"""

import asyncio
import logging
import sqlite3
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from ..config import Config
from ..crypto import SecretBox
from ..db import Database
from ..errors import ConcentratorError, RouterNotFound, VPNProvisioningError, VPNRollbackFailure
from ..models import (
    ConnectionConfig,
    RouterVPNState,
    TunnelConnection,
    TunnelStatus,
    TunnelVPNConfig,
    VPNProvisioningResult,
    VPNSetupScript,
    VPNTunnel,
    utcnow,
)
from ..routeros import wireguard
from .concentrator import WireGuardConcentrator
from .ipam import VPNAddressAllocator
from .keys import KeyPair, generate_keypair

logger = logging.getLogger(__name__)

RESERVE_ATTEMPTS = 5
RECENTLY_SEEN = timedelta(minutes=5)
PING_COUNT = 3
PING_WAIT = 2


class VPNProvisioner:
    """Builds management tunnels. Collaborators are injected so tests can fake them."""

    def __init__(
        self,
        db: Database,
        concentrator: WireGuardConcentrator,
        secrets: SecretBox,
        settings: Optional[Config] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.db = db
        self.concentrator = concentrator
        self.secrets = secrets
        self.settings = settings or Config()
        self.vpn = self.settings.vpn
        self.allocator = VPNAddressAllocator(db, self.vpn.network, self.vpn.server_ip)
        self._sleep = sleep

    async def _reserve(self, router_id: str, customer_id: Optional[str], keys: KeyPair) -> VPNTunnel:
        """Allocate an address and persist the tunnel row that claims it."""
        for _ in range(RESERVE_ATTEMPTS):
            address = await self.allocator.allocate()
            tunnel = VPNTunnel(
                router_id=router_id,
                customer_id=customer_id,
                vpn_config=TunnelVPNConfig(
                    client_private_key=self.secrets.encrypt(keys.private_key),
                    client_public_key=keys.public_key,
                    server_public_key=self.vpn.server_public_key,
                    assigned_ip=address,
                    endpoint=self.vpn.endpoint,
                    allowed_ips=self.vpn.network,
                    keepalive_seconds=self.vpn.keepalive,
                    listen_port=self.vpn.router_listen_port,
                    interface_name=self.vpn.router_interface,
                ),
                connection=TunnelConnection(status=TunnelStatus.SETUP, note="provisioning"),
            )
            try:
                await self.db.insert_tunnel(tunnel)
                return tunnel
            except sqlite3.IntegrityError:
                await self.allocator.release(address)
                if await self.db.get_tunnel(router_id) is not None:
                    raise VPNProvisioningError(f"Router {router_id} already has a VPN tunnel")
                logger.warning(f"Address {address} was claimed concurrently, allocating again")
        raise VPNProvisioningError("Could not reserve a VPN address")

    async def _unreserve(self, tunnel: VPNTunnel) -> None:
        await self.db.delete_tunnel(tunnel.router_id)
        await self.allocator.release(tunnel.vpn_config.assigned_ip)

    async def rollback(self, public_key: str) -> bool:
        """Remove a peer from the concentrator. Failures are logged, never raised."""
        logger.info(f"Rolling back VPN peer {public_key[:10]}...")
        try:
            await self.concentrator.remove_peer(public_key)
            return True
        except Exception as e:
            failure = VPNRollbackFailure(f"Failed to remove peer {public_key[:10]}...: {e}")
            logger.error(str(failure))
            return False

    async def _check_new_router(self, router_id: str) -> None:
        if await self.db.get_router(router_id) is None:
            raise RouterNotFound(f"Router not found: {router_id}")
        if await self.db.get_tunnel(router_id) is not None:
            raise VPNProvisioningError(f"Router {router_id} already has a VPN tunnel")

    async def provision_router_vpn(
        self,
        router_id: str,
        customer_id: Optional[str],
        local_connection: ConnectionConfig,
    ) -> VPNProvisioningResult:
        """Build a management tunnel using the router's local connection.

        Raises:
            RouterNotFound: if no record exists for ``router_id``.
        """
        result = VPNProvisioningResult(success=False, router_id=router_id)
        try:
            await self._check_new_router(router_id)
        except VPNProvisioningError as e:
            result.error = str(e)
            return result

        logger.info(f"[{router_id}] Starting VPN provisioning")
        keys = generate_keypair()
        result.public_key = keys.public_key
        result.completed_steps.append("Generate keypair")

        try:
            tunnel = await self._reserve(router_id, customer_id, keys)
        except Exception as e:
            logger.error(f"[{router_id}] Address allocation failed: {e}")
            result.error = f"Failed to allocate VPN IP address: {e}"
            return result
        address = tunnel.vpn_config.assigned_ip
        result.assigned_ip = address
        result.completed_steps.append("Allocate address")
        logger.info(f"[{router_id}] Assigned VPN IP: {address}")

        try:
            await self.concentrator.add_peer(keys.public_key, address)
        except Exception as e:
            logger.error(f"[{router_id}] Peer registration failed: {e}")
            await self._unreserve(tunnel)
            result.error = f"Failed to add peer to VPN server: {e}"
            return result
        result.completed_steps.append("Register peer")

        try:
            pushed = await wireguard.push_tunnel_config(local_connection, keys.private_key, address, self.vpn)
            if not pushed.success:
                raise VPNProvisioningError(pushed.error or pushed.message)
        except Exception as e:
            logger.error(f"[{router_id}] Router configuration failed, rolling back: {e}")
            await self.rollback(keys.public_key)
            await self._unreserve(tunnel)
            result.error = f"Failed to configure WireGuard on router: {e}"
            return result
        result.completed_steps.append("Configure router")

        logger.info(f"[{router_id}] Waiting {self.vpn.settle_seconds}s for tunnel to establish")
        await self._sleep(self.vpn.settle_seconds)

        try:
            reachable = await self.concentrator.ping(address, count=PING_COUNT, wait=PING_WAIT)
        except ConcentratorError as e:
            logger.warning(f"[{router_id}] Reachability test could not run: {e}")
            reachable = False

        status = TunnelStatus.CONNECTED if reachable else TunnelStatus.SETUP
        if reachable:
            logger.info(f"[{router_id}] VPN tunnel active at {address}")
            result.completed_steps.append("Verify tunnel")
        else:
            logger.warning(f"[{router_id}] VPN tunnel not responding yet, configuration applied")

        now = utcnow()
        await self.db.update_tunnel(router_id, set={
            "connection.status": status,
            "connection.note": None,
            "connection.last_seen": now if reachable else None,
            "connection.last_handshake": now if reachable else None,
        })
        await self.db.update_router(router_id, set={"vpn_tunnel": RouterVPNState(
            status=status,
            assigned_ip=address,
            last_handshake=now if reachable else None,
        )})

        result.success = True
        result.status = status
        result.message = ("VPN tunnel connected" if reachable
                          else "VPN configured, waiting for first handshake")
        return result

    async def generate_setup_script(self, router_id: str, customer_id: Optional[str] = None) -> VPNSetupScript:
        """Register a peer and return a script the operator pastes into the router.

        Raises:
            RouterNotFound: if no record exists for ``router_id``.
            VPNProvisioningError: if the router already has a tunnel or the peer
                could not be registered.
        """
        await self._check_new_router(router_id)
        keys = generate_keypair()
        tunnel = await self._reserve(router_id, customer_id, keys)
        address = tunnel.vpn_config.assigned_ip

        try:
            await self.concentrator.add_peer(keys.public_key, address)
        except Exception as e:
            await self._unreserve(tunnel)
            raise VPNProvisioningError(f"Failed to register peer on VPN server: {e}") from e

        await self.db.update_tunnel(router_id, set={"connection.note": "awaiting manual setup"})
        await self.db.update_router(router_id, set={"vpn_tunnel": RouterVPNState(
            status=TunnelStatus.SETUP, assigned_ip=address,
        )})
        logger.info(f"[{router_id}] VPN setup script generated for {address}")
        return VPNSetupScript(
            router_id=router_id,
            assigned_ip=address,
            public_key=keys.public_key,
            script=wireguard.render_setup_script(keys.private_key, address, self.vpn),
        )

    async def check_tunnel_status(self, router_id: str) -> Dict[str, Any]:
        tunnel = await self.db.get_tunnel(router_id)
        if tunnel is None:
            return {"status": "not_found", "last_seen": None, "connected": False}
        last_seen = tunnel.connection.last_seen
        return {
            "status": tunnel.connection.status.value,
            "last_seen": last_seen,
            "connected": last_seen is not None and utcnow() - last_seen < RECENTLY_SEEN,
            "assigned_ip": tunnel.vpn_config.assigned_ip,
        }
