"""Per-router advisory lock held in the configuration store."""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .db import Database
from .errors import RouterBusy

logger = logging.getLogger(__name__)


@asynccontextmanager
async def router_lock(db: Database, router_id: str, owner: str, ttl: float = 900) -> AsyncIterator[str]:
    """Hold the router's lock for the duration of the block.

    Expired locks are taken over. Only the token issued here is released,
    so a run that outlived its TTL cannot drop a lock someone else now holds.

    Raises:
        RouterBusy: if another live run holds the lock.
    """
    token = uuid.uuid4().hex
    if not await db.try_acquire_lock(router_id, token, owner, ttl, now=time.time()):
        holder = await db.get_lock_owner(router_id)
        raise RouterBusy(f"Router {router_id} is busy ({holder or 'unknown'} holds the lock)")

    logger.debug(f"[{router_id}] Lock acquired by {owner}")
    try:
        yield token
    finally:
        if not await db.release_lock(router_id, token):
            logger.warning(f"[{router_id}] Lock for {owner} expired before release")
