"""Tests for the deployed-config ledger and the store's update operators."""

from datetime import datetime, timedelta, timezone

import pytest

from routerprov import ledger
from routerprov.db import apply_update
from routerprov.errors import RouterNotFound
from routerprov.models import DeployedConfigs, EntryStatus


class TestApplyUpdate:
    """Field operators on plain documents."""

    def test_set_creates_nested_path(self):
        doc = {}
        apply_update(doc, set={"health.is_online": True})
        assert doc == {"health": {"is_online": True}}

    def test_pull_then_push_replaces(self):
        doc = {"items": [{"name": "a", "v": 1}, {"name": "b", "v": 1}]}
        apply_update(doc, pull={"items": {"name": "a"}}, push={"items": {"name": "a", "v": 2}})
        assert doc["items"] == [{"name": "b", "v": 1}, {"name": "a", "v": 2}]

    def test_add_to_set_ignores_duplicates(self):
        doc = {"steps": ["WAN"]}
        apply_update(doc, add_to_set={"steps": "WAN"})
        apply_update(doc, add_to_set={"steps": "WiFi"})
        assert doc["steps"] == ["WAN", "WiFi"]

    def test_set_elements_updates_matching_only(self):
        doc = {"items": [{"name": "a", "status": "active"}, {"name": "b", "status": "active"}]}
        apply_update(doc, set_elements={"items": {"match": {"name": "b"}, "fields": {"status": "error"}}})
        assert [i["status"] for i in doc["items"]] == ["active", "error"]

    def test_values_become_json(self):
        when = datetime(2024, 5, 1, tzinfo=timezone.utc)
        doc = {}
        apply_update(doc, set={"at": when, "status": EntryStatus.ERROR})
        assert doc == {"at": "2024-05-01T00:00:00Z", "status": "error"}

    def test_pushed_models_become_json(self):
        entry = ledger.ip_pool("hotspot-pool", "192.168.10.10-192.168.10.254")
        doc = {}
        apply_update(doc, push={"ip_pools": entry})
        assert doc["ip_pools"][0]["name"] == "hotspot-pool"
        assert doc["ip_pools"][0]["status"] == "active"
        assert isinstance(doc["ip_pools"][0]["created_at"], str)


class TestEntries:
    """Entry builders."""

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            ledger.make_entry("firewall-filter", "x")

    def test_nat_rule_name_and_match(self):
        entry = ledger.nat_rule("srcnat", "192.168.10.0/24", "ether1", "masquerade")
        kind = ledger.LEDGER_TYPES["nat-rule"]

        assert entry.name == "srcnat-192.168.10.0/24-ether1"
        assert kind.matches(entry, {"chain": "srcnat", "src-address": "192.168.10.0/24",
                                    "out-interface": "ether1", "action": "masquerade"})
        assert not kind.matches(entry, {"chain": "srcnat", "src-address": "192.168.10.0/24",
                                        "out-interface": "ether2"})

    def test_bridge_port_matched_on_bridge_and_interface(self):
        entry = ledger.bridge_port("hotspot-bridge", "wlan1")
        kind = ledger.LEDGER_TYPES["bridge-port"]

        assert entry.name == "hotspot-bridge-wlan1"
        assert kind.matches(entry, {"bridge": "hotspot-bridge", "interface": "wlan1"})
        assert not kind.matches(entry, {"bridge": "bridge", "interface": "wlan1"})

    def test_pppoe_server_named_after_service(self):
        entry = ledger.pppoe_server("pppoe-service-ether4", "ether4", "home-basic-5mbps")
        kind = ledger.LEDGER_TYPES["pppoe-server"]

        assert entry.name == "pppoe-service-ether4"
        assert kind.matches(entry, {"service-name": "pppoe-service-ether4", "interface": "ether4"})
        assert not kind.matches(entry, {"service-name": "pppoe-service-ether4", "interface": "ether3"})


class TestStoreOperations:
    """track, mark_checked and summarize against the store."""

    @pytest.mark.asyncio
    async def test_track_replaces_same_name(self, db, make_router):
        await make_router()

        await ledger.track(db, "r1", ledger.ip_pool("hotspot-pool", "10.0.0.2-10.0.0.9"))
        await ledger.track(db, "r1", ledger.ip_pool("hotspot-pool", "10.0.0.2-10.0.0.99"))
        await ledger.track(db, "r1", ledger.ip_pool("pppoe-pool", "10.1.0.2-10.1.0.9"))

        pools = (await db.get_router("r1")).configuration.deployed_configs.ip_pools
        assert [(p.name, p.parameters["ranges"]) for p in pools] == [
            ("hotspot-pool", "10.0.0.2-10.0.0.99"),
            ("pppoe-pool", "10.1.0.2-10.1.0.9"),
        ]

    @pytest.mark.asyncio
    async def test_mark_checked(self, db, make_router):
        await make_router()
        await ledger.track(db, "r1", ledger.bridge("hotspot-bridge", "192.168.10.1/24"))
        later = datetime.now(timezone.utc) + timedelta(hours=1)

        await ledger.mark_checked(db, "r1", "bridge", "hotspot-bridge", EntryStatus.ERROR, later)

        entry = (await db.get_router("r1")).configuration.deployed_configs.bridges[0]
        assert entry.status == EntryStatus.ERROR
        assert entry.last_checked == later

    @pytest.mark.asyncio
    async def test_track_unknown_router(self, db):
        with pytest.raises(RouterNotFound):
            await ledger.track(db, "missing", ledger.wan_interface("ether1"))

    def test_summarize(self):
        old = ledger.ip_pool("a", "x")
        old.last_checked = datetime(2024, 1, 1, tzinfo=timezone.utc)
        new = ledger.nat_rule("srcnat", "10.0.0.0/24", "ether1", "masquerade")
        deployed = DeployedConfigs(ip_pools=[old], nat_rules=[new])

        summary = ledger.summarize(deployed)

        assert summary["total_configs"] == 2
        assert summary["configs_by_type"]["ip_pools"] == 1
        assert summary["configs_by_type"]["bridges"] == 0
        assert summary["oldest_check"] == old.last_checked
        assert summary["newest_check"] == new.last_checked

    def test_summarize_nothing(self):
        summary = ledger.summarize(None)
        assert summary["total_configs"] == 0
        assert summary["oldest_check"] is None
