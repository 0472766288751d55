"""Persisted provisioning runs against registered routers.

Each step outcome is written to the router record as soon as it is known, so
an interrupted run leaves an accurate partial record behind.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from . import ledger
from .config import Config
from .crypto import SecretBox
from .db import Database
from .errors import ConnectionTestFailed, RouterNotFound
from .models import (
    ConfigurationResult,
    ConnectionConfig,
    ConnectionTestResult,
    FailedStep,
    ProvisioningPhase,
    ProvisioningResult,
    RouterConfigIntent,
    RouterRecord,
    RouterStatus,
    TunnelStatus,
    VPNTunnel,
    utcnow,
)
from .orchestrator import RUN_BOUNDARY_STEP, PipelineStep, StepRecorder, build_plan, run_plan
from .routeros import cleanup, system

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProvisioningPhase, Optional[str]], Awaitable[None]]

FIRST_PROVISION_WARNING = "Cleanup skipped: First provision - router may have default configurations"


class PersistingRecorder(StepRecorder):
    """Step recorder that mirrors every outcome into the router record and ledger."""

    def __init__(self, db: Database, router_id: str, on_progress: Optional[ProgressCallback] = None):
        super().__init__()
        self.db = db
        self.router_id = router_id
        self.on_progress = on_progress

    async def enter_phase(self, phase: ProvisioningPhase) -> None:
        await super().enter_phase(phase)
        logger.debug(f"[{self.router_id}] Phase: {phase.value}")
        if self.on_progress:
            await self.on_progress(phase, None)

    async def step_completed(self, step: PipelineStep, result: ConfigurationResult) -> None:
        await super().step_completed(step, result)
        await self.db.update_router(self.router_id, add_to_set={"configuration_status.completed_steps": step.name})
        for entry in step.tracks:
            await ledger.track(self.db, self.router_id, entry)
        if self.on_progress:
            await self.on_progress(self.phase, step.name)

    async def step_failed(self, step: PipelineStep, failure: FailedStep) -> None:
        await super().step_failed(step, failure)
        await self.db.update_router(self.router_id, push={"configuration_status.failed_steps": failure})


def connection_for(
    record: RouterRecord,
    secrets: SecretBox,
    settings: Config,
    tunnel: Optional[VPNTunnel] = None,
) -> ConnectionConfig:
    """Build the per-call connection, preferring the management tunnel when asked to."""
    address = record.connection.address
    if (record.connection.prefer_vpn and tunnel is not None
            and tunnel.connection.status in (TunnelStatus.CONNECTED, TunnelStatus.SETUP)):
        address = tunnel.vpn_config.assigned_ip
        logger.debug(f"[{record.id}] Using VPN address {address}")

    return ConnectionConfig(
        address=address,
        port=record.connection.port,
        username=record.connection.username,
        password=secrets.decrypt(record.connection.password_encrypted) if record.connection.password_encrypted else "",
        scheme=settings.router.scheme,
        timeout=settings.router.request_timeout,
        verify_ssl=settings.router.verify_ssl,
    )


def intent_from_record(record: RouterRecord) -> RouterConfigIntent:
    cfg = record.configuration
    return RouterConfigIntent(
        hotspot_enabled=cfg.hotspot_enabled,
        ssid=cfg.wifi_ssid,
        pppoe_enabled=cfg.pppoe_enabled,
        pppoe_interfaces=list(cfg.pppoe_interfaces),
        wan_interface=cfg.wan_interface,
        wlan_interface=cfg.wlan_interface,
        bridge_name=cfg.bridge_name,
        lan_addresses=list(cfg.lan_addresses),
    )


async def update_health(db: Database, router_id: str, test: ConnectionTestResult) -> None:
    await db.update_router(router_id, set={
        "health.is_online": True,
        "health.last_seen": utcnow(),
        "health.uptime": test.uptime,
        "health.cpu_load": test.cpu_load,
        "health.memory_usage": test.memory_usage,
        "health.version": test.version,
        "health.model": test.board_name,
    })


async def provision_router(
    db: Database,
    router_id: str,
    secrets: SecretBox,
    settings: Optional[Config] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> ProvisioningResult:
    """Provision a registered router from its stored configuration.

    Cleanup of vendor defaults only runs when the router was already fully
    configured by an earlier run.

    Raises:
        RouterNotFound: if no record exists for ``router_id``.
    """
    settings = settings or Config()
    record = await db.get_router(router_id)
    if record is None:
        raise RouterNotFound(f"Router not found: {router_id}")

    recorder = PersistingRecorder(db, router_id, on_progress)
    was_configured = record.configuration_status.configured

    try:
        await db.update_router(router_id, set={
            "status": RouterStatus.MAINTENANCE,
            "configuration_status.last_attempt": utcnow(),
            "configuration_status.completed_steps": [],
            "configuration_status.failed_steps": [],
            "configuration_status.warnings": [],
        })

        await recorder.enter_phase(ProvisioningPhase.CONNECTING)
        tunnel = await db.get_tunnel(router_id) if record.connection.prefer_vpn else None
        connection = connection_for(record, secrets, settings, tunnel)
        test = await system.test_connection(connection)
        if not test.success:
            raise ConnectionTestFailed(test.message)
        connection.firmware = test.version
        await update_health(db, router_id, test)

        if was_configured:
            interfaces = list(record.configuration.lan_interfaces)
            if interfaces:
                await recorder.enter_phase(ProvisioningPhase.CLEANING)
                result = await cleanup.perform_full_cleanup(connection, interfaces)
                if not result.success:
                    recorder.warn(f"Cleanup warning: {result.error}")
            else:
                logger.info(f"[{router_id}] No interfaces to clean")
        else:
            logger.info(f"[{router_id}] First provision detected, skipping cleanup")
            recorder.warn(FIRST_PROVISION_WARNING)

        await run_plan(connection, build_plan(intent_from_record(record), settings), recorder)

        await recorder.enter_phase(ProvisioningPhase.FINALIZING)
        await ledger.update_last_synced_at(db, router_id)

        configured = not recorder.failed_steps
        now = utcnow()
        final: Dict[str, Any] = {
            "status": RouterStatus.ACTIVE if configured else RouterStatus.ERROR,
            "configuration_status.configured": configured,
            "configuration_status.completed_steps": recorder.completed_steps,
            "configuration_status.failed_steps": recorder.failed_steps,
            "configuration_status.warnings": recorder.warnings,
            "configuration_status.last_attempt": now,
        }
        if configured:
            final["configuration_status.configured_at"] = now
        await db.update_router(router_id, set=final)

        await recorder.enter_phase(ProvisioningPhase.CONFIGURED if configured else ProvisioningPhase.ERROR)
        logger.info(
            f"[{router_id}] Provisioning finished: {len(recorder.completed_steps)} completed, "
            f"{len(recorder.failed_steps)} failed"
        )
        return ProvisioningResult(
            success=configured,
            router_id=router_id,
            configured=configured,
            completed_steps=recorder.completed_steps,
            failed_steps=recorder.failed_steps,
            warnings=recorder.warnings,
            phase=recorder.phase,
        )

    except Exception as e:
        logger.error(f"[{router_id}] Provisioning aborted during {recorder.phase.value}: {e}")
        recorder.failed_steps.append(FailedStep(step=RUN_BOUNDARY_STEP, error=str(e)))
        await db.update_router(router_id, set={
            "status": RouterStatus.ERROR,
            "configuration_status.configured": False,
            "configuration_status.completed_steps": recorder.completed_steps,
            "configuration_status.failed_steps": recorder.failed_steps,
            "configuration_status.warnings": recorder.warnings,
            "configuration_status.last_attempt": utcnow(),
        })
        recorder.phase = ProvisioningPhase.ERROR
        return ProvisioningResult(
            success=False,
            router_id=router_id,
            configured=False,
            completed_steps=recorder.completed_steps,
            failed_steps=recorder.failed_steps,
            warnings=recorder.warnings,
            error=str(e),
            phase=ProvisioningPhase.ERROR,
        )


async def retry_failed_steps(
    db: Database,
    router_id: str,
    secrets: SecretBox,
    settings: Optional[Config] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> ProvisioningResult:
    """Clear the previous step history and run the whole pipeline again.

    Steps depend on each other's resources, so there is no selective retry.
    """
    if await db.get_router(router_id) is None:
        raise RouterNotFound(f"Router not found: {router_id}")

    await db.update_router(router_id, set={
        "configuration_status.failed_steps": [],
        "configuration_status.completed_steps": [],
    })
    return await provision_router(db, router_id, secrets, settings, on_progress)


async def get_deployed_configs_summary(db: Database, router_id: str) -> Dict[str, Any]:
    record = await db.get_router(router_id)
    return ledger.summarize(record.configuration.deployed_configs if record else None)
