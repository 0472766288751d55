"""Tests for management VPN provisioning and rollback."""

import pytest

from routerprov.errors import RouterNotFound, VPNProvisioningError
from routerprov.models import TunnelStatus
from routerprov.vpn.keys import public_key_for
from routerprov.vpn.provisioner import VPNProvisioner


@pytest.fixture
def provisioner(db, concentrator, secrets, settings):
    sleeps = []

    async def no_sleep(seconds):
        sleeps.append(seconds)

    vpn = VPNProvisioner(db, concentrator, secrets, settings, sleep=no_sleep)
    vpn.sleeps = sleeps
    return vpn


class TestProvisionRouterVPN:
    """provision_router_vpn end to end."""

    @pytest.mark.asyncio
    async def test_connected(self, db, routeros, connection, concentrator, secrets, provisioner, make_router):
        await make_router()
        concentrator.reachable.add("10.99.0.2")

        result = await provisioner.provision_router_vpn("r1", "cust-1", connection)

        assert result.success
        assert result.status == TunnelStatus.CONNECTED
        assert result.assigned_ip == "10.99.0.2"
        assert result.message == "VPN tunnel connected"
        assert result.completed_steps == [
            "Generate keypair", "Allocate address", "Register peer", "Configure router", "Verify tunnel",
        ]
        assert concentrator.peers == {result.public_key: "10.99.0.2"}
        assert provisioner.sleeps == [0]

        tunnel = await db.get_tunnel("r1")
        assert tunnel.connection.status == TunnelStatus.CONNECTED
        assert tunnel.connection.last_seen is not None
        assert tunnel.customer_id == "cust-1"
        private_key = secrets.decrypt(tunnel.vpn_config.client_private_key)
        assert public_key_for(private_key) == result.public_key

        record = await db.get_router("r1")
        assert record.vpn_tunnel.status == TunnelStatus.CONNECTED
        assert record.vpn_tunnel.assigned_ip == "10.99.0.2"

        assert [i["name"] for i in routeros.items("/interface/wireguard")] == ["wg-mgmt"]
        assert [a["address"] for a in routeros.items("/ip/address") if a["interface"] == "wg-mgmt"] == [
            "10.99.0.2/32"
        ]
        assert routeros.items("/ip/route")[0]["dst-address"] == "10.99.0.0/16"

    @pytest.mark.asyncio
    async def test_no_handshake_yet(self, db, routeros, connection, concentrator, provisioner, make_router):
        await make_router()

        result = await provisioner.provision_router_vpn("r1", None, connection)

        assert result.success
        assert result.status == TunnelStatus.SETUP
        assert result.message == "VPN configured, waiting for first handshake"
        assert "Verify tunnel" not in result.completed_steps
        assert result.public_key in concentrator.peers
        tunnel = await db.get_tunnel("r1")
        assert tunnel.connection.status == TunnelStatus.SETUP
        assert tunnel.connection.last_seen is None

    @pytest.mark.asyncio
    async def test_ping_error_treated_as_unreachable(self, routeros, connection, concentrator, provisioner,
                                                     make_router):
        await make_router()
        concentrator.fail_ping = True

        result = await provisioner.provision_router_vpn("r1", None, connection)

        assert result.success
        assert result.status == TunnelStatus.SETUP

    @pytest.mark.asyncio
    async def test_router_push_failure_rolls_back(self, db, routeros, connection, concentrator, provisioner,
                                                  make_router):
        await make_router()
        routeros.fail("GET", "/interface/wireguard")

        result = await provisioner.provision_router_vpn("r1", None, connection)

        assert not result.success
        assert result.error.startswith("Failed to configure WireGuard on router")
        assert concentrator.peers == {}
        assert await db.get_tunnel("r1") is None
        assert (await db.get_ip_pool("10.99.0.0/16")).used_count == 0

    @pytest.mark.asyncio
    async def test_router_auth_failure_rolls_back(self, db, routeros, connection, concentrator, provisioner,
                                                  make_router):
        await make_router()
        routeros.reject_auth = True

        result = await provisioner.provision_router_vpn("r1", None, connection)

        assert not result.success
        assert concentrator.peers == {}
        assert await db.get_tunnel("r1") is None

    @pytest.mark.asyncio
    async def test_rollback_failure_is_not_raised(self, db, routeros, connection, concentrator, provisioner,
                                                  make_router):
        await make_router()
        routeros.fail("GET", "/interface/wireguard")
        concentrator.fail_remove = True

        result = await provisioner.provision_router_vpn("r1", None, connection)

        assert not result.success
        assert list(concentrator.peers.values()) == ["10.99.0.2"]
        assert await db.get_tunnel("r1") is None

    @pytest.mark.asyncio
    async def test_peer_registration_failure(self, db, routeros, connection, concentrator, provisioner,
                                             make_router):
        await make_router()
        concentrator.fail_add = True

        result = await provisioner.provision_router_vpn("r1", None, connection)

        assert not result.success
        assert result.error.startswith("Failed to add peer to VPN server")
        assert await db.get_tunnel("r1") is None
        assert not routeros.writes()

    @pytest.mark.asyncio
    async def test_existing_tunnel_rejected(self, routeros, connection, concentrator, provisioner, make_router):
        await make_router()
        await provisioner.provision_router_vpn("r1", None, connection)

        again = await provisioner.provision_router_vpn("r1", None, connection)

        assert not again.success
        assert "already has a VPN tunnel" in again.error
        assert len(concentrator.peers) == 1

    @pytest.mark.asyncio
    async def test_second_router_gets_next_address(self, routeros, connection, provisioner, make_router):
        await make_router("r1")
        await make_router("r2")

        first = await provisioner.provision_router_vpn("r1", None, connection)
        second = await provisioner.provision_router_vpn("r2", None, connection)

        assert (first.assigned_ip, second.assigned_ip) == ("10.99.0.2", "10.99.0.3")

    @pytest.mark.asyncio
    async def test_unknown_router(self, connection, provisioner):
        with pytest.raises(RouterNotFound):
            await provisioner.provision_router_vpn("missing", None, connection)


class TestSetupScript:
    """Manual onboarding."""

    @pytest.mark.asyncio
    async def test_script(self, db, concentrator, secrets, provisioner, make_router):
        await make_router()

        bundle = await provisioner.generate_setup_script("r1", "cust-1")

        assert bundle.assigned_ip == "10.99.0.2"
        assert concentrator.peers == {bundle.public_key: "10.99.0.2"}
        tunnel = await db.get_tunnel("r1")
        private_key = secrets.decrypt(tunnel.vpn_config.client_private_key)
        assert f'private-key="{private_key}"' in bundle.script
        assert "/ip address add address=10.99.0.2/32 interface=wg-mgmt" in bundle.script
        assert "endpoint-address=vpn.example.net endpoint-port=51820" in bundle.script
        assert tunnel.connection.note == "awaiting manual setup"
        assert (await db.get_router("r1")).vpn_tunnel.status == TunnelStatus.SETUP

    @pytest.mark.asyncio
    async def test_script_peer_failure(self, db, concentrator, provisioner, make_router):
        await make_router()
        concentrator.fail_add = True

        with pytest.raises(VPNProvisioningError):
            await provisioner.generate_setup_script("r1")
        assert await db.get_tunnel("r1") is None


class TestTunnelStatus:
    """check_tunnel_status."""

    @pytest.mark.asyncio
    async def test_not_found(self, provisioner):
        assert (await provisioner.check_tunnel_status("r1"))["status"] == "not_found"

    @pytest.mark.asyncio
    async def test_recently_seen(self, routeros, connection, concentrator, provisioner, make_router):
        await make_router()
        concentrator.reachable.add("10.99.0.2")
        await provisioner.provision_router_vpn("r1", None, connection)

        status = await provisioner.check_tunnel_status("r1")

        assert status == {
            "status": "connected",
            "last_seen": status["last_seen"],
            "connected": True,
            "assigned_ip": "10.99.0.2",
        }


@pytest.mark.asyncio
async def test_rollback_reports_outcome(provisioner, concentrator):
    concentrator.peers["pk"] = "10.99.0.9"
    assert await provisioner.rollback("pk") is True
    assert concentrator.peers == {}

    concentrator.fail_remove = True
    assert await provisioner.rollback("pk") is False
