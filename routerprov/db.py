"""SQLite document store for router records, VPN tunnels and the VPN address pool.

Router and tunnel records are stored as JSON documents. Every mutation is a
read-modify-write performed under one lock, which gives the atomic
single-document push/pull/set updates the provisioning pipeline relies on.
"""

import asyncio
import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiosqlite
from pydantic import TypeAdapter

from .errors import RouterNotFound
from .models import Drift, RouterRecord, VPNIPPool, VPNTunnel

logger = logging.getLogger(__name__)

_ANY = TypeAdapter(Any)


def _jsonable(value: Any) -> Any:
    return _ANY.dump_python(value, mode="json")


def _split(path: str) -> List[str]:
    return path.split(".")


def _parent(doc: Dict[str, Any], path: str) -> tuple:
    """Return (container, last_key) for a dotted path, creating dicts on the way."""
    keys = _split(path)
    node = doc
    for key in keys[:-1]:
        if not isinstance(node.get(key), dict):
            node[key] = {}
        node = node[key]
    return node, keys[-1]


def _matches(item: Any, criteria: Any) -> bool:
    if isinstance(criteria, dict) and isinstance(item, dict):
        return all(item.get(k) == v for k, v in criteria.items())
    return item == criteria


def apply_update(
    doc: Dict[str, Any],
    set: Optional[Dict[str, Any]] = None,
    push: Optional[Dict[str, Any]] = None,
    pull: Optional[Dict[str, Any]] = None,
    add_to_set: Optional[Dict[str, Any]] = None,
    set_elements: Optional[Dict[str, Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Apply document-store style field operators to ``doc`` in place.

    ``pull`` runs before ``push`` so a pull and push on the same path replace
    an element in one update. ``set_elements`` maps an array path to
    ``{"match": {...}, "fields": {...}}`` and updates every matching element.
    """
    for path, value in (set or {}).items():
        node, key = _parent(doc, path)
        node[key] = _jsonable(value)

    for path, criteria in (pull or {}).items():
        node, key = _parent(doc, path)
        criteria = _jsonable(criteria)
        node[key] = [item for item in node.get(key) or [] if not _matches(item, criteria)]

    for path, value in (push or {}).items():
        node, key = _parent(doc, path)
        node.setdefault(key, [])
        node[key].append(_jsonable(value))

    for path, value in (add_to_set or {}).items():
        node, key = _parent(doc, path)
        node.setdefault(key, [])
        value = _jsonable(value)
        if value not in node[key]:
            node[key].append(value)

    for path, rule in (set_elements or {}).items():
        node, key = _parent(doc, path)
        criteria = _jsonable(rule.get("match") or {})
        fields = _jsonable(rule.get("fields") or {})
        for item in node.get(key) or []:
            if _matches(item, criteria):
                item.update(fields)

    return doc


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Connect to the database and create tables if needed."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        await self._create_tables()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        async with self._lock:
            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS routers (
                    id TEXT PRIMARY KEY,
                    document TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS vpn_tunnels (
                    router_id TEXT PRIMARY KEY,
                    customer_id TEXT,
                    assigned_ip TEXT NOT NULL UNIQUE,
                    client_public_key TEXT NOT NULL UNIQUE,
                    status TEXT NOT NULL,
                    document TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS vpn_ip_pool (
                    network TEXT PRIMARY KEY,
                    next_available TEXT NOT NULL,
                    used_count INTEGER NOT NULL DEFAULT 0,
                    total_capacity INTEGER NOT NULL DEFAULT 0
                )
            """)

            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS router_locks (
                    router_id TEXT PRIMARY KEY,
                    token TEXT NOT NULL,
                    owner TEXT,
                    expires_at REAL NOT NULL
                )
            """)

            await self._connection.execute("""
                CREATE TABLE IF NOT EXISTS drift_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    router_id TEXT NOT NULL,
                    config_type TEXT NOT NULL,
                    config_name TEXT NOT NULL,
                    issue TEXT NOT NULL,
                    detected_at TIMESTAMP NOT NULL
                )
            """)

            await self._connection.execute("""
                CREATE INDEX IF NOT EXISTS idx_drift_router
                ON drift_log(router_id)
            """)

            await self._connection.commit()

    # -- routers ----------------------------------------------------------

    async def create_router(self, record: RouterRecord) -> None:
        """Insert a new router record."""
        async with self._lock:
            await self._connection.execute(
                "INSERT INTO routers (id, document, updated_at) VALUES (?, ?, ?)",
                (record.id, record.model_dump_json(), _now()),
            )
            await self._connection.commit()

    async def get_router(self, router_id: str) -> Optional[RouterRecord]:
        """Get a router by ID."""
        async with self._lock:
            doc = await self._load_router_doc(router_id)
        if doc is None:
            return None
        return RouterRecord.model_validate(doc)

    async def list_routers(self) -> List[RouterRecord]:
        async with self._lock:
            cursor = await self._connection.execute("SELECT document FROM routers ORDER BY id")
            rows = await cursor.fetchall()
        return [RouterRecord.model_validate_json(row["document"]) for row in rows]

    async def list_router_ids(self) -> List[str]:
        async with self._lock:
            cursor = await self._connection.execute("SELECT id FROM routers ORDER BY id")
            rows = await cursor.fetchall()
        return [row["id"] for row in rows]

    async def update_router(self, router_id: str, **operators) -> RouterRecord:
        """Atomically apply set/push/pull/add_to_set to one router document.

        Raises:
            RouterNotFound: if the router does not exist.
        """
        async with self._lock:
            doc = await self._load_router_doc(router_id)
            if doc is None:
                raise RouterNotFound(f"Router not found: {router_id}")
            apply_update(doc, **operators)
            record = RouterRecord.model_validate(doc)
            await self._connection.execute(
                "UPDATE routers SET document = ?, updated_at = ? WHERE id = ?",
                (record.model_dump_json(), _now(), router_id),
            )
            await self._connection.commit()
        return record

    async def _load_router_doc(self, router_id: str) -> Optional[Dict[str, Any]]:
        cursor = await self._connection.execute(
            "SELECT document FROM routers WHERE id = ?", (router_id,)
        )
        row = await cursor.fetchone()
        return json.loads(row["document"]) if row else None

    # -- VPN tunnels --------------------------------------------------------

    async def insert_tunnel(self, tunnel: VPNTunnel) -> None:
        """Insert a tunnel.

        Raises:
            sqlite3.IntegrityError: if the router already has a tunnel or the
                address/public key is already assigned.
        """
        async with self._lock:
            try:
                await self._connection.execute("""
                    INSERT INTO vpn_tunnels
                    (router_id, customer_id, assigned_ip, client_public_key, status, document, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (
                    tunnel.router_id,
                    tunnel.customer_id,
                    tunnel.vpn_config.assigned_ip,
                    tunnel.vpn_config.client_public_key,
                    tunnel.connection.status.value,
                    tunnel.model_dump_json(),
                    _now(),
                ))
            except sqlite3.IntegrityError:
                await self._connection.rollback()
                raise
            await self._connection.commit()

    async def get_tunnel(self, router_id: str) -> Optional[VPNTunnel]:
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT document FROM vpn_tunnels WHERE router_id = ?", (router_id,)
            )
            row = await cursor.fetchone()
        return VPNTunnel.model_validate_json(row["document"]) if row else None

    async def list_tunnels(self, status: Optional[Iterable[str]] = None) -> List[VPNTunnel]:
        query = "SELECT document FROM vpn_tunnels"
        params: tuple = ()
        if status is not None:
            statuses = [getattr(s, "value", s) for s in status]
            query += f" WHERE status IN ({', '.join('?' for _ in statuses)})"
            params = tuple(statuses)
        async with self._lock:
            cursor = await self._connection.execute(query + " ORDER BY router_id", params)
            rows = await cursor.fetchall()
        return [VPNTunnel.model_validate_json(row["document"]) for row in rows]

    async def update_tunnel(self, router_id: str, **operators) -> Optional[VPNTunnel]:
        """Atomically update one tunnel document. Returns None if it does not exist."""
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT document FROM vpn_tunnels WHERE router_id = ?", (router_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            doc = apply_update(json.loads(row["document"]), **operators)
            tunnel = VPNTunnel.model_validate(doc)
            await self._connection.execute("""
                UPDATE vpn_tunnels SET status = ?, document = ?, updated_at = ?
                WHERE router_id = ?
            """, (tunnel.connection.status.value, tunnel.model_dump_json(), _now(), router_id))
            await self._connection.commit()
        return tunnel

    async def delete_tunnel(self, router_id: str) -> None:
        async with self._lock:
            await self._connection.execute("DELETE FROM vpn_tunnels WHERE router_id = ?", (router_id,))
            await self._connection.commit()

    async def assigned_ips(self) -> List[str]:
        async with self._lock:
            cursor = await self._connection.execute("SELECT assigned_ip FROM vpn_tunnels")
            rows = await cursor.fetchall()
        return [row["assigned_ip"] for row in rows]

    async def is_ip_assigned(self, ip: str) -> bool:
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT 1 FROM vpn_tunnels WHERE assigned_ip = ?", (ip,)
            )
            return await cursor.fetchone() is not None

    # -- VPN address pool ---------------------------------------------------

    async def ensure_ip_pool(self, pool: VPNIPPool) -> VPNIPPool:
        """Create the pool row if missing and return the stored pool."""
        async with self._lock:
            await self._connection.execute("""
                INSERT OR IGNORE INTO vpn_ip_pool (network, next_available, used_count, total_capacity)
                VALUES (?, ?, ?, ?)
            """, (pool.network, pool.next_available, pool.used_count, pool.total_capacity))
            await self._connection.commit()
        return await self.get_ip_pool(pool.network)

    async def get_ip_pool(self, network: str) -> Optional[VPNIPPool]:
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT * FROM vpn_ip_pool WHERE network = ?", (network,)
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        return VPNIPPool(
            network=row["network"],
            next_available=row["next_available"],
            used_count=row["used_count"],
            total_capacity=row["total_capacity"],
        )

    async def compare_and_set_next_available(
        self, network: str, expected: str, new: str, used_delta: int = 0
    ) -> bool:
        """Advance the pool counter only if nobody else moved it first."""
        async with self._lock:
            cursor = await self._connection.execute("""
                UPDATE vpn_ip_pool
                SET next_available = ?, used_count = used_count + ?
                WHERE network = ? AND next_available = ?
            """, (new, used_delta, network, expected))
            await self._connection.commit()
            return cursor.rowcount == 1

    async def adjust_pool_usage(self, network: str, delta: int) -> None:
        async with self._lock:
            await self._connection.execute(
                "UPDATE vpn_ip_pool SET used_count = MAX(used_count + ?, 0) WHERE network = ?",
                (delta, network),
            )
            await self._connection.commit()

    # -- advisory locks -----------------------------------------------------

    async def try_acquire_lock(self, router_id: str, token: str, owner: str, ttl: float,
                               now: float) -> bool:
        """Take the router's lock if it is free or expired."""
        async with self._lock:
            await self._connection.execute(
                "DELETE FROM router_locks WHERE router_id = ? AND expires_at <= ?",
                (router_id, now),
            )
            try:
                await self._connection.execute(
                    "INSERT INTO router_locks (router_id, token, owner, expires_at) VALUES (?, ?, ?, ?)",
                    (router_id, token, owner, now + ttl),
                )
            except sqlite3.IntegrityError:
                await self._connection.commit()
                return False
            await self._connection.commit()
            return True

    async def release_lock(self, router_id: str, token: str) -> bool:
        async with self._lock:
            cursor = await self._connection.execute(
                "DELETE FROM router_locks WHERE router_id = ? AND token = ?",
                (router_id, token),
            )
            await self._connection.commit()
            return cursor.rowcount == 1

    async def get_lock_owner(self, router_id: str) -> Optional[str]:
        async with self._lock:
            cursor = await self._connection.execute(
                "SELECT owner FROM router_locks WHERE router_id = ?", (router_id,)
            )
            row = await cursor.fetchone()
        return row["owner"] if row else None

    # -- drift log ----------------------------------------------------------

    async def record_drifts(self, router_id: str, drifts: List[Drift]) -> None:
        if not drifts:
            return
        detected_at = _now()
        async with self._lock:
            await self._connection.executemany("""
                INSERT INTO drift_log (router_id, config_type, config_name, issue, detected_at)
                VALUES (?, ?, ?, ?, ?)
            """, [(router_id, d.config_type, d.config_name, d.issue, detected_at) for d in drifts])
            await self._connection.commit()

    async def recent_drifts(self, router_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        async with self._lock:
            cursor = await self._connection.execute("""
                SELECT config_type, config_name, issue, detected_at FROM drift_log
                WHERE router_id = ? ORDER BY id DESC LIMIT ?
            """, (router_id, limit))
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# Global database instance (set by main.py / cli.py)
_db: Optional[Database] = None


async def init_db(db_path: str) -> Database:
    """Initialize the global database instance."""
    global _db
    _db = Database(db_path)
    await _db.connect()
    return _db


def get_db() -> Database:
    """Get the global database instance."""
    if _db is None:
        raise RuntimeError("Database not initialized")
    return _db


async def close_db() -> None:
    """Close the global database connection."""
    global _db
    if _db:
        await _db.close()
        _db = None
