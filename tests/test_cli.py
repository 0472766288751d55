"""Tests for the command-line tool."""

import argparse

import pytest
from cryptography.fernet import Fernet

from routerprov import cli
from routerprov.db import get_db
from routerprov.orchestrator import HOTSPOT_POOL_STEP, WAN_STEP


def make_args(tmp_path, **overrides):
    defaults = dict(
        verbose=False,
        config=str(tmp_path / "missing.yaml"),
        db=str(tmp_path / "cli.db"),
        ip="192.168.88.1",
        username="admin",
        password="secret",
        port=None,
        ssid=None,
        no_hotspot=False,
        pppoe=False,
        pppoe_interface=None,
        wan=None,
        wlan=None,
        dry_run=False,
    )
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.mark.asyncio
async def test_configure_dry_run(tmp_path, routeros, capsys):
    await cli.cmd_configure(make_args(tmp_path, dry_run=True, pppoe=True))

    out = capsys.readouterr().out
    assert "configuring_hotspot" in out
    assert HOTSPOT_POOL_STEP in out
    assert "PPPoE Server" in out
    assert routeros.calls == []


@pytest.mark.asyncio
async def test_configure(tmp_path, routeros, capsys):
    await cli.cmd_configure(make_args(tmp_path, no_hotspot=True))

    out = capsys.readouterr().out
    assert WAN_STEP in out
    assert len(routeros.items("/ip/dhcp-client")) == 1


@pytest.mark.asyncio
async def test_connection_test(tmp_path, routeros, capsys):
    await cli.cmd_test(make_args(tmp_path))

    out = capsys.readouterr().out
    assert "hAP ac2" in out
    assert "CafeRouter" in out
    assert "4C:5E:0C:00:00:01" in out
    assert "1w 2d 3h 4m" in out


@pytest.mark.asyncio
async def test_connection_test_failure(tmp_path, routeros):
    routeros.reject_auth = True
    with pytest.raises(SystemExit):
        await cli.cmd_test(make_args(tmp_path))


@pytest.mark.asyncio
async def test_register_and_provision(tmp_path, routeros, capsys, monkeypatch):
    config = tmp_path / "config.yaml"
    config.write_text(f"security:\n  secret_key: {Fernet.generate_key().decode()}\n")
    args = make_args(tmp_path, config=str(config), name="office", ssid="Guest",
                     lan_interface=None, customer=None, prefer_vpn=False)

    await cli.cmd_add_router(args)
    out = capsys.readouterr().out
    router_id = out.split("id=")[1].split()[0]

    await cli.cmd_provision(make_args(tmp_path, config=str(config), router_id=router_id, retry=False))

    out = capsys.readouterr().out
    assert "WiFi Configuration" in out

    monkeypatch.setattr(cli.console, "width", 200)
    await cli.cmd_routers(make_args(tmp_path, config=str(config)))
    out = capsys.readouterr().out
    assert router_id in out
    assert "office" in out
    assert "yes" in out

    with pytest.raises(RuntimeError):
        get_db()
