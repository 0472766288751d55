"""Periodic health checks for management tunnels."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from ..config import VPNConfig
from ..db import Database
from ..errors import RouterNotFound
from ..models import TunnelStatus, VPNTunnel, utcnow
from .concentrator import PeerStatus, WireGuardConcentrator

logger = logging.getLogger(__name__)

NOTE_STALE = "stale handshake"
NOTE_MISSING = "peer missing from concentrator"
RECONNECT_PING_COUNT = 2
RECONNECT_PING_WAIT = 2


class VPNMonitor:
    """Classifies tunnels from one concentrator dump per pass."""

    def __init__(self, db: Database, concentrator: WireGuardConcentrator, settings: Optional[VPNConfig] = None):
        self.db = db
        self.concentrator = concentrator
        self.settings = settings or VPNConfig()
        self._stop = asyncio.Event()

    @property
    def stale_threshold(self) -> timedelta:
        return timedelta(seconds=self.settings.stale_threshold)

    async def _update_router(self, router_id: str, fields: Dict[str, Any]) -> None:
        try:
            await self.db.update_router(router_id, set=fields)
        except RouterNotFound:
            logger.warning(f"Tunnel for unknown router {router_id}")

    async def _apply_peer(self, tunnel: VPNTunnel, peer: PeerStatus, now: datetime) -> TunnelStatus:
        handshake = peer.latest_handshake
        stale = handshake is None or now - handshake > self.stale_threshold
        status = TunnelStatus.DISCONNECTED if stale else TunnelStatus.CONNECTED

        fields: Dict[str, Any] = {
            "connection.status": status,
            "connection.last_handshake": handshake,
            "connection.bytes_in": peer.bytes_received,
            "connection.bytes_out": peer.bytes_sent,
            "connection.note": NOTE_STALE if stale else None,
        }
        if not stale:
            fields["connection.last_seen"] = now
        await self.db.update_tunnel(tunnel.router_id, set=fields)

        router_fields: Dict[str, Any] = {
            "vpn_tunnel.status": status,
            "vpn_tunnel.last_handshake": handshake,
        }
        if not stale:
            router_fields["health.last_seen"] = now
        await self._update_router(tunnel.router_id, router_fields)
        return status

    async def check_all_tunnels(self) -> Dict[str, int]:
        """Refresh every tunnel's status from a single ``wg show`` dump."""
        tunnels = await self.db.list_tunnels()
        stats = {"total": len(tunnels), "connected": 0, "disconnected": 0,
                 "stale": 0, "missing": 0, "checked": 0}
        if not tunnels:
            return stats

        peers = {peer.public_key: peer for peer in await self.concentrator.dump()}
        now = utcnow()

        for tunnel in tunnels:
            stats["checked"] += 1
            peer = peers.get(tunnel.vpn_config.client_public_key)
            if peer is not None:
                status = await self._apply_peer(tunnel, peer, now)
                if status == TunnelStatus.CONNECTED:
                    stats["connected"] += 1
                else:
                    stats["stale"] += 1
                    stats["disconnected"] += 1
            else:
                stats["missing"] += 1
                stats["disconnected"] += 1
                await self.db.update_tunnel(tunnel.router_id, set={
                    "connection.status": TunnelStatus.DISCONNECTED,
                    "connection.note": NOTE_MISSING,
                })
                await self._update_router(tunnel.router_id, {"vpn_tunnel.status": TunnelStatus.DISCONNECTED})

        logger.info(f"VPN health check complete: {stats}")
        return stats

    async def reconnect_stale_tunnels(self) -> Dict[str, int]:
        """Ping every disconnected tunnel and mark the ones that answer as connected."""
        tunnels = await self.db.list_tunnels(status=[TunnelStatus.DISCONNECTED])
        stats = {"attempted": len(tunnels), "succeeded": 0, "failed": 0}

        for tunnel in tunnels:
            address = tunnel.vpn_config.assigned_ip
            if await self.concentrator.ping(address, count=RECONNECT_PING_COUNT, wait=RECONNECT_PING_WAIT):
                now = utcnow()
                await self.db.update_tunnel(tunnel.router_id, set={
                    "connection.status": TunnelStatus.CONNECTED,
                    "connection.last_seen": now,
                    "connection.note": None,
                })
                await self._update_router(tunnel.router_id, {
                    "vpn_tunnel.status": TunnelStatus.CONNECTED,
                    "health.is_online": True,
                    "health.last_seen": now,
                })
                stats["succeeded"] += 1
                logger.info(f"Reconnected router at {address}")
            else:
                stats["failed"] += 1
                logger.debug(f"Router at {address} still unreachable")

        logger.info(f"VPN reconnection pass complete: {stats}")
        return stats

    async def check_and_alert(self) -> Dict[str, Any]:
        """Log a warning for every tunnel down longer than ``alert_after``."""
        now = utcnow()
        cutoff = timedelta(seconds=self.settings.alert_after)
        alerts = []

        for tunnel in await self.db.list_tunnels(status=[TunnelStatus.DISCONNECTED]):
            since = tunnel.connection.last_seen or tunnel.created_at
            if now - since <= cutoff:
                continue
            router = await self.db.get_router(tunnel.router_id)
            name = router.name if router else "Unknown Router"
            downtime = int((now - since).total_seconds() // 60)
            alerts.append({
                "router_id": tunnel.router_id,
                "name": name,
                "assigned_ip": tunnel.vpn_config.assigned_ip,
                "downtime_minutes": downtime,
            })
            logger.warning(f"Alert: {name} ({tunnel.vpn_config.assigned_ip}) disconnected for {downtime} minutes")

        return {"alerts_sent": len(alerts), "routers": alerts}

    async def get_statistics(self) -> Dict[str, int]:
        tunnels = await self.db.list_tunnels()
        counts = {status: 0 for status in TunnelStatus}
        for tunnel in tunnels:
            counts[tunnel.connection.status] += 1
        pool = await self.db.get_ip_pool(self.settings.network)
        return {
            "total_tunnels": len(tunnels),
            "active_tunnels": counts[TunnelStatus.CONNECTED],
            "inactive_tunnels": counts[TunnelStatus.DISCONNECTED],
            "setup_tunnels": counts[TunnelStatus.SETUP],
            "failed_tunnels": counts[TunnelStatus.FAILED],
            "ip_pool_usage": pool.used_count if pool else 0,
            "total_capacity": pool.total_capacity if pool else 0,
        }

    async def check_router_status(self, router_id: str) -> Dict[str, Any]:
        """Live status of one router's tunnel straight from the concentrator."""
        tunnel = await self.db.get_tunnel(router_id)
        if tunnel is None:
            return {"status": "not_found", "last_seen": None, "connected": False}

        peer = next((p for p in await self.concentrator.dump()
                     if p.public_key == tunnel.vpn_config.client_public_key), None)
        if peer is not None and peer.latest_handshake is not None:
            connected = utcnow() - peer.latest_handshake < self.stale_threshold
            return {
                "status": "connected" if connected else "stale",
                "last_seen": peer.latest_handshake,
                "connected": connected,
                "assigned_ip": tunnel.vpn_config.assigned_ip,
                "bytes_received": peer.bytes_received,
                "bytes_sent": peer.bytes_sent,
            }
        registered = await self.concentrator.has_peer(tunnel.vpn_config.client_public_key)
        return {
            "status": "disconnected" if registered else "peer_missing",
            "last_seen": tunnel.connection.last_seen,
            "connected": False,
            "assigned_ip": tunnel.vpn_config.assigned_ip,
            "peer_registered": registered,
        }

    async def run_once(self) -> None:
        await self.check_all_tunnels()
        await self.reconnect_stale_tunnels()
        await self.check_and_alert()

    async def run(self) -> None:
        """Run health passes until ``stop()`` is called."""
        logger.info(f"VPN monitor started (interval {self.settings.health_check_interval}s)")
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"VPN health pass failed: {e}")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.settings.health_check_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("VPN monitor stopped")

    def stop(self) -> None:
        self._stop.set()
