"""Shared fixtures: an in-memory RouterOS REST API, a fake concentrator and a scratch store."""

import errno
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from cryptography.fernet import Fernet

from routerprov.config import Config, VPNConfig
from routerprov.crypto import SecretBox
from routerprov.db import Database
from routerprov.errors import ConcentratorError
from routerprov.models import ConnectionConfig, RouterConfiguration, RouterConnection, RouterRecord
from routerprov.routeros import gateway
from routerprov.vpn.concentrator import PeerStatus


def _error(status: int, detail: str) -> Tuple[int, str]:
    return status, json.dumps({"error": status, "message": "Bad Request", "detail": detail})


class FakeRouterOS:
    """Serves ``/rest`` requests from tables keyed by menu path.

    Supports GET listings, ``POST <menu>/add``, PATCH and DELETE on
    ``<menu>/<id>`` and the ``/cli`` bridge for ``add`` and ``remove``.
    A plain ``POST <menu>`` is refused with "no such command", as RouterOS 7 does.
    """

    def __init__(self, version: str = "7.12.1 (stable)"):
        self.resource: Dict[str, Any] = {
            "version": version,
            "board-name": "hAP ac2",
            "platform": "MikroTik",
            "cpu-load": "3",
            "cpu-count": "4",
            "total-memory": "134217728",
            "free-memory": "67108864",
            "uptime": "1w2d3h4m5s",
        }
        self.tables: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.calls: List[Tuple[str, str, Optional[Any]]] = []
        self.failures: Dict[Tuple[str, str], Tuple[int, str]] = {}
        self.unreachable = False
        self.reject_auth = False
        self.identity = "CafeRouter"
        self._next_id = 1

    # -- test helpers --------------------------------------------------------

    def add(self, path: str, **fields: Any) -> Dict[str, Any]:
        item = {".id": self._new_id(), **{k.replace("_", "-"): v for k, v in fields.items()}}
        self.tables[path].append(item)
        return item

    def items(self, path: str) -> List[Dict[str, Any]]:
        return list(self.tables.get(path, []))

    def fail(self, method: str, path: str, status: int = 500, detail: str = "internal error") -> None:
        self.failures[(method, path)] = _error(status, detail)

    def writes(self) -> List[Tuple[str, str, Optional[Any]]]:
        return [call for call in self.calls if call[0] != "GET"]

    def seed_factory_defaults(self) -> None:
        """Roughly what a home router ships with."""
        for name in ("ether1", "ether2", "ether3", "ether4", "ether5", "wlan1"):
            self.add("/interface", name=name, type="ether", mac_address=f"4C:5E:0C:00:00:0{name[-1]}")
        self.add("/interface/wireless", name="wlan1", mode="station", ssid="MikroTik", disabled="true")
        self.add("/interface/bridge", name="bridge")
        for name in ("ether2", "ether3", "ether4", "ether5", "wlan1"):
            self.add("/interface/bridge/port", bridge="bridge", interface=name)
        self.add("/ip/address", address="192.168.88.1/24", interface="bridge")
        self.add("/ip/dhcp-server", name="defconf", interface="bridge", address_pool="default-dhcp")

    # -- transport -----------------------------------------------------------

    def _new_id(self) -> str:
        item_id = f"*{self._next_id:X}"
        self._next_id += 1
        return item_id

    def _create(self, menu: str, fields: Optional[Dict[str, Any]]) -> Tuple[int, str]:
        fields = {k: str(v) for k, v in (fields or {}).items()}
        name = fields.get("name")
        if name is not None and any(item.get("name") == name for item in self.tables[menu]):
            return _error(400, "failure: already have such name")
        item = {".id": self._new_id(), **fields}
        self.tables[menu].append(item)
        return 200, json.dumps({"ret": item[".id"]})

    def _find(self, menu: str, item_id: str) -> Optional[Dict[str, Any]]:
        for item in self.tables.get(menu, []):
            if item[".id"] == item_id:
                return item
        return None

    def _delete(self, menu: str, item_id: str) -> Tuple[int, str]:
        item = self._find(menu, item_id)
        if item is None:
            return _error(404, "no such item")
        self.tables[menu].remove(item)
        return 204, ""

    def _cli(self, tokens: List[str]) -> Tuple[int, str]:
        command, args = tokens[0], {}
        for token in tokens[1:]:
            key, _, value = token[1:].partition("=")
            args[key] = value
        menu, _, action = command.rpartition("/")
        if action == "add":
            return self._create(menu, args)
        if action == "remove":
            return self._delete(menu, args[".id"])
        return _error(400, "no such command")

    async def __call__(self, config: ConnectionConfig, method: str, url: str,
                       body: Optional[Any]) -> Tuple[int, str]:
        path = url.split("/rest", 1)[1]
        self.calls.append((method, path, body))

        if self.unreachable:
            raise ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
        if self.reject_auth:
            return 401, json.dumps({"error": 401, "message": "Unauthorized"})
        if (method, path) in self.failures:
            return self.failures[(method, path)]

        if method == "GET":
            if path == "/system/resource":
                return 200, json.dumps(self.resource)
            if path == "/system/identity":
                return 200, json.dumps({"name": self.identity})
            return 200, json.dumps(self.tables.get(path, []))

        if method == "POST":
            if path == gateway.CLI_PATH:
                return self._cli(body["commands"])
            if path.endswith("/add"):
                return self._create(path[: -len("/add")], body)
            return _error(400, "no such command or directory (add)")

        menu, _, item_id = path.rpartition("/")
        if method == "PATCH":
            item = self._find(menu, item_id)
            if item is None:
                return _error(404, "no such item")
            item.update({k: str(v) for k, v in (body or {}).items()})
            return 200, json.dumps(item)
        if method == "DELETE":
            return self._delete(menu, item_id)
        return _error(400, f"unsupported method {method}")


class FakeConcentrator:
    """Stands in for the SSH-managed WireGuard server."""

    def __init__(self):
        self.peers: Dict[str, str] = {}
        self.reachable: set = set()
        self.status: List[PeerStatus] = []
        self.fail_add = False
        self.fail_remove = False
        self.fail_ping = False
        self.pings: List[str] = []
        self.closed = False

    async def add_peer(self, public_key: str, address: str) -> None:
        if self.fail_add:
            raise ConcentratorError("wg syncconf failed")
        self.peers[public_key] = address

    async def remove_peer(self, public_key: str) -> None:
        if self.fail_remove:
            raise ConcentratorError("ssh: connection lost")
        self.peers.pop(public_key, None)

    async def has_peer(self, public_key: str) -> bool:
        return public_key in self.peers

    async def ping(self, address: str, count: int = 3, wait: int = 2) -> bool:
        self.pings.append(address)
        if self.fail_ping:
            raise ConcentratorError("ping: command not found")
        return address in self.reachable

    async def dump(self) -> List[PeerStatus]:
        return list(self.status)

    async def reload(self) -> None:
        pass

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def routeros(monkeypatch):
    """A factory-default router behind the gateway."""
    fake = FakeRouterOS()
    fake.seed_factory_defaults()
    monkeypatch.setattr(gateway, "_http", fake)
    return fake


@pytest.fixture
def connection():
    return ConnectionConfig(address="192.168.88.1", username="admin", password="secret")


@pytest.fixture
def settings():
    return Config(
        vpn=VPNConfig(
            network="10.99.0.0/16",
            server_ip="10.99.0.1",
            endpoint="vpn.example.net:51820",
            server_public_key="c2VydmVyLXB1YmxpYy1rZXktZm9yLXRlc3RzLTAwMDA=",
            settle_seconds=0,
        ),
    )


@pytest.fixture
def secrets():
    return SecretBox(Fernet.generate_key().decode())


@pytest.fixture
def concentrator():
    return FakeConcentrator()


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(str(tmp_path / "routerprov.db"))
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def make_router(db, secrets):
    """Insert a router record and return it."""

    async def _make(router_id: str = "r1", password: str = "secret", **configuration: Any) -> RouterRecord:
        record = RouterRecord(
            id=router_id,
            name=f"Router {router_id}",
            customer_id="cust-1",
            connection=RouterConnection(
                address="192.168.88.1",
                username="admin",
                password_encrypted=secrets.encrypt(password),
            ),
            configuration=RouterConfiguration(**configuration),
        )
        await db.create_router(record)
        return record

    return _make
