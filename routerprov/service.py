"""Service facade used by the daemon, the CLI and any outer web layer.

Every collaborator is passed in at construction; nothing here reaches for a
module-level singleton.
"""

import logging
import socket
import uuid
from typing import Any, Dict, List, Optional

from . import orchestrator, provisioning, reconciler
from .config import Config
from .crypto import SecretBox
from .db import Database
from .errors import RouterBusy, RouterNotFound
from .locks import router_lock
from .models import (
    ConnectionConfig,
    FullConfigurationResult,
    ProvisioningResult,
    RouterConfigIntent,
    RouterConfiguration,
    RouterConnection,
    RouterRecord,
    SyncReport,
    VPNProvisioningResult,
    VPNSetupScript,
)
from .provisioning import ProgressCallback
from .routeros import system
from .vpn.concentrator import WireGuardConcentrator
from .vpn.monitor import VPNMonitor
from .vpn.provisioner import VPNProvisioner

logger = logging.getLogger(__name__)


class ProvisioningService:
    """Entry points for router provisioning, drift sync and management VPN."""

    def __init__(
        self,
        db: Database,
        config: Config,
        secrets: SecretBox,
        concentrator: Optional[WireGuardConcentrator] = None,
        owner: Optional[str] = None,
    ):
        self.db = db
        self.config = config
        self.secrets = secrets
        self.concentrator = concentrator or WireGuardConcentrator(config.vpn)
        self.owner = owner or f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"
        self.vpn = VPNProvisioner(db, self.concentrator, secrets, config)
        self.monitor = VPNMonitor(db, self.concentrator, config.vpn)

    def _lock(self, router_id: str):
        return router_lock(self.db, router_id, self.owner, ttl=self.config.locks.ttl)

    async def register_router(
        self,
        name: str,
        address: str,
        username: str,
        password: str,
        port: Optional[int] = None,
        customer_id: Optional[str] = None,
        configuration: Optional[RouterConfiguration] = None,
        prefer_vpn: bool = False,
        router_id: Optional[str] = None,
    ) -> RouterRecord:
        """Store a new router with its password encrypted.

        Raises:
            ValueError: if ``address`` is not an IPv4 address.
        """
        if not system.validate_ip_address(address):
            raise ValueError(f"Invalid router IP address: {address}")
        record = RouterRecord(
            id=router_id or uuid.uuid4().hex,
            name=name,
            customer_id=customer_id,
            connection=RouterConnection(
                address=address,
                port=port or self.config.router.default_port,
                username=username,
                password_encrypted=self.secrets.encrypt(password),
                prefer_vpn=prefer_vpn,
            ),
            configuration=configuration or RouterConfiguration(),
        )
        await self.db.create_router(record)
        logger.info(f"Registered router {record.name} ({record.id}) at {address}")
        return record

    async def list_routers(self) -> List[RouterRecord]:
        return await self.db.list_routers()

    async def get_router(self, router_id: str) -> RouterRecord:
        record = await self.db.get_router(router_id)
        if record is None:
            raise RouterNotFound(f"Router not found: {router_id}")
        return record

    async def connection_for(self, router_id: str) -> ConnectionConfig:
        record = await self.get_router(router_id)
        tunnel = await self.db.get_tunnel(router_id)
        return provisioning.connection_for(record, self.secrets, self.config, tunnel)

    async def configure_router(self, connection: ConnectionConfig,
                               intent: RouterConfigIntent) -> FullConfigurationResult:
        return await orchestrator.configure_router(connection, intent, self.config)

    async def provision_router(self, router_id: str,
                               on_progress: Optional[ProgressCallback] = None) -> ProvisioningResult:
        async with self._lock(router_id):
            return await provisioning.provision_router(self.db, router_id, self.secrets, self.config, on_progress)

    async def retry_failed_steps(self, router_id: str,
                                 on_progress: Optional[ProgressCallback] = None) -> ProvisioningResult:
        async with self._lock(router_id):
            return await provisioning.retry_failed_steps(self.db, router_id, self.secrets, self.config, on_progress)

    async def sync_router_configuration(self, router_id: str) -> SyncReport:
        async with self._lock(router_id):
            return await reconciler.sync_router_configuration(self.db, router_id, self.secrets, self.config)

    async def sync_all_routers(self) -> List[SyncReport]:
        """Reconcile every registered router, skipping ones that are busy."""
        reports = []
        for router_id in await self.db.list_router_ids():
            try:
                reports.append(await self.sync_router_configuration(router_id))
            except RouterBusy as e:
                logger.info(f"Skipping sync: {e}")
            except Exception as e:
                logger.error(f"[{router_id}] Sync failed: {e}")
        return reports

    async def get_deployed_configs_summary(self, router_id: str) -> Dict[str, Any]:
        return await provisioning.get_deployed_configs_summary(self.db, router_id)

    async def provision_router_vpn(
        self,
        router_id: str,
        customer_id: Optional[str] = None,
        local_connection: Optional[ConnectionConfig] = None,
    ) -> VPNProvisioningResult:
        """Build the management tunnel, defaulting to the router's stored local connection."""
        async with self._lock(router_id):
            if local_connection is None:
                record = await self.get_router(router_id)
                local_connection = provisioning.connection_for(record, self.secrets, self.config)
                customer_id = customer_id or record.customer_id
            return await self.vpn.provision_router_vpn(router_id, customer_id, local_connection)

    async def generate_vpn_setup_script(self, router_id: str,
                                        customer_id: Optional[str] = None) -> VPNSetupScript:
        async with self._lock(router_id):
            return await self.vpn.generate_setup_script(router_id, customer_id)

    async def check_tunnel_status(self, router_id: str) -> Dict[str, Any]:
        return await self.vpn.check_tunnel_status(router_id)

    async def get_router_vpn_status(self, router_id: str) -> Dict[str, Any]:
        return await self.monitor.check_router_status(router_id)

    async def check_all_tunnels(self) -> Dict[str, int]:
        return await self.monitor.check_all_tunnels()

    async def get_vpn_statistics(self) -> Dict[str, int]:
        return await self.monitor.get_statistics()

    async def close(self) -> None:
        self.monitor.stop()
        await self.concentrator.close()
