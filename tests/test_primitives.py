"""Tests for the idempotent RouterOS configuration primitives."""

import pytest

from routerprov.errors import AuthFailure
from routerprov.routeros import network, services, system
from routerprov.routeros.catalog import HOTSPOT_TIERS, PPPOE_TIERS, SPECIAL_PROFILES


class TestSystem:
    """Connection test and value helpers."""

    @pytest.mark.asyncio
    async def test_connection_reports_resources(self, routeros, connection):
        result = await system.test_connection(connection)
        assert result.success
        assert result.version == "7.12.1 (stable)"
        assert result.board_name == "hAP ac2"
        assert result.cpu_load == 3
        assert result.memory_usage == 50
        assert result.uptime == 7 * 86400 + 2 * 86400 + 3 * 3600 + 4 * 60 + 5

    @pytest.mark.asyncio
    async def test_connection_failure_is_reported_not_raised(self, routeros, connection):
        routeros.unreachable = True
        result = await system.test_connection(connection)
        assert not result.success
        assert "Connection refused" in result.message

    @pytest.mark.asyncio
    async def test_wrong_password(self, routeros, connection):
        routeros.reject_auth = True
        result = await system.test_connection(connection)
        assert not result.success
        assert "Authentication failed" in result.message

    def test_uptime_round_trip(self):
        seconds = system.parse_uptime("1w2d3h4m5s")
        assert system.format_uptime(seconds) == "1w 2d 3h 4m"
        assert system.format_uptime(None) == "0m"
        assert system.parse_uptime("") == 0

    def test_validate_ip_address(self):
        assert system.validate_ip_address("192.168.88.1")
        assert not system.validate_ip_address("192.168.88")
        assert not system.validate_ip_address("router.local")

    @pytest.mark.asyncio
    async def test_identity(self, routeros, connection):
        assert await system.get_identity(connection) == "CafeRouter"

    @pytest.mark.asyncio
    async def test_identity_unavailable(self, routeros, connection):
        routeros.fail("GET", "/system/identity")
        assert await system.get_identity(connection) is None

    @pytest.mark.asyncio
    async def test_mac_address(self, routeros, connection):
        assert await system.get_mac_address(connection) == "4C:5E:0C:00:00:01"

    @pytest.mark.asyncio
    async def test_remove_bridge_port_falls_back_to_cli(self, routeros, connection):
        port = routeros.items("/interface/bridge/port")[0]
        routeros.fail("DELETE", f"/interface/bridge/port/{port['.id']}", status=400, detail="not allowed")

        await system.remove_bridge_port(connection, port[".id"])

        assert port not in routeros.items("/interface/bridge/port")
        assert routeros.calls[-1][1] == "/cli"


class TestNetworkPrimitives:
    """WAN, bridge, WiFi, pools, DHCP and NAT."""

    @pytest.mark.asyncio
    async def test_wan_is_idempotent(self, routeros, connection):
        first = await network.configure_wan_interface(connection, "ether1")
        second = await network.configure_wan_interface(connection, "ether1")

        assert first.success and second.success
        assert "already configured" in second.message
        assert len(routeros.items("/ip/dhcp-client")) == 1

    @pytest.mark.asyncio
    async def test_bridge_rehomes_ports(self, routeros, connection):
        result = await network.configure_bridge(
            connection, "hotspot-bridge", "192.168.10.1/24", ["wlan1", "ether2"]
        )

        assert result.success
        assert sorted(result.data["moved"]) == ["ether2", "wlan1"]
        ports = {p["interface"]: p["bridge"] for p in routeros.items("/interface/bridge/port")}
        assert ports["wlan1"] == "hotspot-bridge"
        assert ports["ether2"] == "hotspot-bridge"
        assert ports["ether3"] == "bridge"
        assert any(a["address"] == "192.168.10.1/24" and a["interface"] == "hotspot-bridge"
                   for a in routeros.items("/ip/address"))

    @pytest.mark.asyncio
    async def test_bridge_second_run_writes_nothing(self, routeros, connection):
        await network.configure_bridge(connection, "hotspot-bridge", "192.168.10.1/24", ["wlan1"])
        writes = len(routeros.writes())

        result = await network.configure_bridge(connection, "hotspot-bridge", "192.168.10.1/24", ["wlan1"])

        assert result.success
        assert result.data["moved"] == []
        assert len(routeros.writes()) == writes

    @pytest.mark.asyncio
    async def test_wifi(self, routeros, connection):
        result = await network.configure_wifi(connection, "wlan1", "CafeNet")

        assert result.success
        wlan = routeros.items("/interface/wireless")[0]
        assert wlan["ssid"] == "CafeNet"
        assert wlan["mode"] == "ap-bridge"
        assert wlan["disabled"] == "false"

    @pytest.mark.asyncio
    async def test_wifi_missing_interface(self, routeros, connection):
        result = await network.configure_wifi(connection, "wlan9", "CafeNet")

        assert not result.success
        assert "not found" in result.message
        assert result.error == "Interface not found"
        assert not routeros.writes()

    @pytest.mark.asyncio
    async def test_pools_matched_by_name(self, routeros, connection):
        routeros.add("/ip/pool", name="hotspot-pool", ranges="10.0.0.2-10.0.0.9")
        result = await network.create_ip_pools(connection, [
            {"name": "hotspot-pool", "ranges": "192.168.10.10-192.168.10.254"},
            {"name": "pppoe-pool", "ranges": "192.168.100.10-192.168.100.254"},
        ])

        assert result.success
        assert sorted(p["name"] for p in routeros.items("/ip/pool")) == ["hotspot-pool", "pppoe-pool"]

    @pytest.mark.asyncio
    async def test_dhcp_server(self, routeros, connection):
        server = {"name": "hotspot-dhcp", "interface": "hotspot-bridge", "address-pool": "hotspot-pool"}
        net = {"address": "192.168.10.0/24", "gateway": "192.168.10.1", "dns-server": "8.8.8.8"}

        assert (await network.configure_dhcp_server(connection, server, net)).success
        assert (await network.configure_dhcp_server(connection, server, net)).success
        assert len(routeros.items("/ip/dhcp-server/network")) == 1
        assert [s["name"] for s in routeros.items("/ip/dhcp-server")] == ["defconf", "hotspot-dhcp"]

    @pytest.mark.asyncio
    async def test_nat_matched_on_chain_source_and_interface(self, routeros, connection):
        rule = {"chain": "srcnat", "src-address": "192.168.10.0/24",
                "out-interface": "ether1", "action": "masquerade"}

        await network.configure_nat(connection, [rule])
        await network.configure_nat(connection, [rule])
        await network.configure_nat(connection, [{**rule, "out-interface": "ether5"}])

        assert len(routeros.items("/ip/firewall/nat")) == 2

    @pytest.mark.asyncio
    async def test_lan_interfaces(self, routeros, connection):
        lan = [{"interface": "ether3", "address": "10.10.0.1/24"}]
        assert (await network.configure_lan_interfaces(connection, lan)).success
        assert (await network.configure_lan_interfaces(connection, lan)).success
        assert len([a for a in routeros.items("/ip/address") if a["interface"] == "ether3"]) == 1

    @pytest.mark.asyncio
    async def test_recoverable_error_becomes_failed_result(self, routeros, connection):
        routeros.fail("GET", "/ip/pool")
        result = await network.create_ip_pools(connection, [{"name": "p", "ranges": "10.0.0.2-10.0.0.3"}])
        assert not result.success
        assert "HTTP 500" in result.error

    @pytest.mark.asyncio
    async def test_auth_failure_propagates(self, routeros, connection):
        routeros.reject_auth = True
        with pytest.raises(AuthFailure):
            await network.configure_wan_interface(connection, "ether1")


class TestServicePrimitives:
    """Hotspot, PPPoE and the seeded catalogs."""

    @pytest.mark.asyncio
    async def test_hotspot_user_profiles_seeded_once(self, routeros, connection):
        first = await services.create_hotspot_user_profiles(connection)
        second = await services.create_hotspot_user_profiles(connection)

        assert first.success and second.success
        assert len(first.data["created"]) == len(HOTSPOT_TIERS)
        assert second.data["created"] == []
        assert len(routeros.items("/ip/hotspot/user/profile")) == len(HOTSPOT_TIERS)

    @pytest.mark.asyncio
    async def test_special_profiles(self, routeros, connection):
        result = await services.create_special_profiles(connection)

        assert result.success
        names = [p["name"] for p in routeros.items("/ip/hotspot/user/profile")]
        assert names == [p.name for p in SPECIAL_PROFILES]
        admin = routeros.items("/ip/hotspot/user/profile")[1]
        assert admin["transparent-proxy"] == "no"

    @pytest.mark.asyncio
    async def test_pppoe_user_profiles(self, routeros, connection):
        result = await services.create_pppoe_user_profiles(connection, "192.168.100.1", "pppoe-pool")

        assert result.success
        profiles = routeros.items("/ppp/profile")
        assert [p["name"] for p in profiles] == [t.name for t in PPPOE_TIERS]
        assert all(p["remote-address"] == "pppoe-pool" for p in profiles)

    @pytest.mark.asyncio
    async def test_pppoe_user_profiles_keep_existing(self, routeros, connection):
        first = PPPOE_TIERS[0].name
        routeros.add("/ppp/profile", name=first, rate_limit="1M/1M")

        result = await services.create_pppoe_user_profiles(connection, "192.168.100.1", "pppoe-pool")

        assert result.success
        assert first not in result.data["created"]
        assert len(result.data["created"]) == len(PPPOE_TIERS) - 1
        assert len(routeros.items("/ppp/profile")) == len(PPPOE_TIERS)

    @pytest.mark.asyncio
    async def test_ppp_profile_failure_reported(self, routeros, connection):
        routeros.fail("GET", "/ppp/profile")

        result = await services.create_pppoe_user_profiles(connection, "192.168.100.1", "pppoe-pool")

        assert not result.success
        assert result.message == "Failed to create PPP profiles"

    @pytest.mark.asyncio
    async def test_hotspot_creates_secure_profile(self, routeros, connection):
        profile = {"name": "hotspot-profile", "hotspot-address": "192.168.10.1", "dns-name": "hotspot.local"}
        server = {"name": "hotspot1", "interface": "hotspot-bridge",
                  "address-pool": "hotspot-pool", "profile": "hotspot-profile"}

        result = await services.configure_hotspot(connection, profile, server)

        assert result.success
        stored = routeros.items("/ip/hotspot/profile")[0]
        assert stored["login-by"] == "http-chap"
        assert stored["shared-users"] == "1"
        assert [s["name"] for s in routeros.items("/ip/hotspot")] == ["hotspot1"]

    @pytest.mark.asyncio
    async def test_hotspot_enforces_security_on_existing_profile(self, routeros, connection):
        routeros.add("/ip/hotspot/profile", name="hotspot-profile", login_by="http-pap,cookie", shared_users="5")
        profile = {"name": "hotspot-profile", "hotspot-address": "192.168.10.1", "dns-name": "hotspot.local"}
        server = {"name": "hotspot1", "interface": "hotspot-bridge",
                  "address-pool": "hotspot-pool", "profile": "hotspot-profile"}

        await services.configure_hotspot(connection, profile, server)

        profiles = routeros.items("/ip/hotspot/profile")
        assert len(profiles) == 1
        assert profiles[0]["login-by"] == "http-chap"
        assert profiles[0]["shared-users"] == "1"

    @pytest.mark.asyncio
    async def test_secure_auth_on_server_profile(self, routeros, connection):
        routeros.add("/ip/hotspot/profile", name="legacy", login_by="mac")
        routeros.add("/ip/hotspot", name="hotspot1", profile="legacy")

        result = await services.configure_secure_hotspot_auth(connection, "hotspot1")

        assert result.success
        legacy = routeros.items("/ip/hotspot/profile")[0]
        assert legacy["login-by"] == "http-chap"
        assert legacy["use-radius"] == "no"

    @pytest.mark.asyncio
    async def test_secure_auth_missing_server(self, routeros, connection):
        result = await services.configure_secure_hotspot_auth(connection, "hotspot9")
        assert not result.success
        assert result.error == "Server not found"

    @pytest.mark.asyncio
    async def test_pppoe_servers_per_interface(self, routeros, connection):
        servers = [
            {"service-name": "pppoe-service", "interface": "ether3", "default-profile": "home-standard-10mbps"},
            {"service-name": "pppoe-service-ether4", "interface": "ether4",
             "default-profile": "home-standard-10mbps"},
        ]

        await services.configure_pppoe_servers(connection, servers)
        result = await services.configure_pppoe_servers(connection, servers)

        assert result.success
        assert len(routeros.items("/interface/pppoe-server/server")) == 2
