"""Drift detection between the ledger and the live device.

The reconciler only reads from the router. Healing is done by running a
provisioning pass again.
"""

import logging
from typing import Any, Dict, List, Optional

from . import ledger
from .config import Config
from .crypto import SecretBox
from .db import Database
from .errors import GatewayError, RouterNotFound
from .models import Drift, EntryStatus, SyncReport, utcnow
from .provisioning import connection_for, update_health
from .routeros import common, system

logger = logging.getLogger(__name__)

MISSING_ON_DEVICE = "missing on device"


async def sync_router_configuration(
    db: Database,
    router_id: str,
    secrets: SecretBox,
    settings: Optional[Config] = None,
) -> SyncReport:
    """Check every ledger entry of a router against the device.

    One GET is issued per tracked resource type. Matched entries are marked
    active with a fresh ``last_checked``; unmatched ones are marked as errors
    and reported as drifts.

    Raises:
        RouterNotFound: if no record exists for ``router_id``.
    """
    settings = settings or Config()
    record = await db.get_router(router_id)
    if record is None:
        raise RouterNotFound(f"Router not found: {router_id}")

    tunnel = await db.get_tunnel(router_id) if record.connection.prefer_vpn else None
    connection = connection_for(record, secrets, settings, tunnel)

    test = await system.test_connection(connection)
    if not test.success:
        await db.update_router(router_id, set={"health.is_online": False})
        logger.warning(f"[{router_id}] Sync skipped, router offline: {test.message}")
        return SyncReport(router_id=router_id, success=False, error=test.message)
    await update_health(db, router_id, test)

    drifts: List[Drift] = []
    checked = 0
    now = utcnow()

    by_type: Dict[str, List[Any]] = {}
    for entry in record.configuration.deployed_configs.all_entries():
        by_type.setdefault(entry.type, []).append(entry)

    try:
        for config_type, typed_entries in by_type.items():
            kind = ledger.LEDGER_TYPES[config_type]
            items = await common.fetch_list(connection, kind.device_path)
            for entry in typed_entries:
                checked += 1
                if any(kind.matches(entry, item) for item in items):
                    await ledger.mark_checked(db, router_id, config_type, entry.name,
                                              EntryStatus.ACTIVE, now)
                else:
                    logger.warning(f"[{router_id}] Drift: {config_type} {entry.name} {MISSING_ON_DEVICE}")
                    drifts.append(Drift(config_type, entry.name, MISSING_ON_DEVICE))
                    await ledger.mark_checked(db, router_id, config_type, entry.name,
                                              EntryStatus.ERROR, now)
    except GatewayError as e:
        logger.error(f"[{router_id}] Sync failed after {checked} checks: {e}")
        if drifts:
            await db.record_drifts(router_id, drifts)
        return SyncReport(router_id=router_id, success=False, drifts=drifts, checked=checked, error=str(e))

    if drifts:
        await db.record_drifts(router_id, drifts)
    synced_at = await ledger.update_last_synced_at(db, router_id, now)
    logger.info(f"[{router_id}] Sync complete: {checked} checked, {len(drifts)} drifted")
    return SyncReport(
        router_id=router_id,
        success=True,
        drifts=drifts,
        checked=checked,
        last_synced_at=synced_at,
    )
