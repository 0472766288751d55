#!/usr/bin/env python3
"""
CLI tool for manual router provisioning and VPN management.

Usage:
    python -m routerprov.cli add-router office 192.168.88.1 -u admin -p secret --ssid Guest
    python -m routerprov.cli routers
    python -m routerprov.cli test 192.168.88.1 -u admin -p secret
    python -m routerprov.cli configure 192.168.88.1 -u admin -p secret --ssid Guest --dry-run
    python -m routerprov.cli provision <router-id>
    python -m routerprov.cli retry <router-id>
    python -m routerprov.cli sync <router-id>
    python -m routerprov.cli summary <router-id>
    python -m routerprov.cli vpn-provision <router-id>
    python -m routerprov.cli vpn-script <router-id> --output setup.rsc
    python -m routerprov.cli vpn-status <router-id>
    python -m routerprov.cli vpn-check
    python -m routerprov.cli vpn-stats
"""

import argparse
import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .config import Config, load_config, set_config
from .crypto import SecretBox
from .models import (
    ConnectionConfig,
    FailedStep,
    ProvisioningPhase,
    RouterConfigIntent,
    RouterConfiguration,
)

console = Console()


def setup_logging(verbose: bool = False):
    """Setup logging with rich handler."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


def _load(args) -> Config:
    if Path(args.config).exists():
        config = load_config(args.config)
    else:
        config = Config()
    set_config(config)
    return config


@asynccontextmanager
async def open_service(args):
    """Open the store and build a service for one command."""
    from .db import close_db, init_db
    from .service import ProvisioningService

    config = _load(args)
    db = await init_db(args.db or config.logging.db)
    service = ProvisioningService(db, config, SecretBox(config.security.secret_key))
    try:
        yield service
    finally:
        await service.close()
        await close_db()


def _connection(args, config: Config) -> ConnectionConfig:
    return ConnectionConfig(
        address=args.ip,
        username=args.username,
        password=args.password,
        port=args.port or config.router.default_port,
        scheme=config.router.scheme,
        timeout=config.router.request_timeout,
        verify_ssl=config.router.verify_ssl,
    )


def _intent(args, config: Config) -> RouterConfigIntent:
    return RouterConfigIntent(
        hotspot_enabled=not args.no_hotspot,
        ssid=args.ssid,
        pppoe_enabled=args.pppoe,
        pppoe_interfaces=args.pppoe_interface or [],
        wan_interface=args.wan or config.router.default_wan_interface,
        wlan_interface=args.wlan or config.router.default_wlan_interface,
    )


def print_steps(title: str, completed: List[str], failed: List[FailedStep], warnings: List[str]) -> None:
    table = Table(title=title)
    table.add_column("Step", style="cyan")
    table.add_column("Result")

    for name in completed:
        table.add_row(name, "[green]completed[/green]")
    for failure in failed:
        table.add_row(failure.step, f"[red]{failure.error}[/red]")

    console.print(table)
    for warning in warnings:
        console.print(f"[yellow]Warning: {warning}[/yellow]")


async def cmd_add_router(args):
    """Register a router."""
    async with open_service(args) as service:
        configuration = RouterConfiguration(
            wan_interface=args.wan or service.config.router.default_wan_interface,
            wlan_interface=args.wlan or service.config.router.default_wlan_interface,
            lan_interfaces=args.lan_interface or [],
            wifi_ssid=args.ssid,
            hotspot_enabled=not args.no_hotspot,
            pppoe_enabled=args.pppoe,
            pppoe_interfaces=args.pppoe_interface or [],
        )
        record = await service.register_router(
            name=args.name,
            address=args.ip,
            username=args.username,
            password=args.password,
            port=args.port,
            customer_id=args.customer,
            configuration=configuration,
            prefer_vpn=args.prefer_vpn,
        )
    console.print(f"[green]Registered {record.name}[/green] id=[bold]{record.id}[/bold]")


async def cmd_routers(args):
    """List registered routers."""
    async with open_service(args) as service:
        records = await service.list_routers()

    if not records:
        console.print("[dim]No routers registered[/dim]")
        return

    table = Table(title="Routers")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Address")
    table.add_column("Status")
    table.add_column("Configured")
    for record in records:
        configured = record.configuration_status.configured
        table.add_row(
            record.id,
            record.name,
            record.connection.address,
            record.status.value,
            "[green]yes[/green]" if configured else "[red]no[/red]",
        )
    console.print(table)


async def cmd_test(args):
    """Test the REST API connection to a router."""
    from .routeros import system

    config = _load(args)
    console.print(f"[bold]Connecting to {args.ip}...[/bold]")
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task("Querying /system/resource...", total=None)
        connection = _connection(args, config)
        result = await system.test_connection(connection)
        identity = mac = None
        if result.success:
            identity = await system.get_identity(connection)
            mac = await system.get_mac_address(connection)

    if not result.success:
        console.print(f"[red]{result.message}[/red]")
        sys.exit(1)

    table = Table(title=f"Router: {args.ip}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Identity", identity or "Unknown")
    table.add_row("Board", result.board_name or "Unknown")
    table.add_row("MAC", mac or "Unknown")
    table.add_row("RouterOS", result.version or "Unknown")
    table.add_row("Platform", result.platform or "Unknown")
    table.add_row("CPU load", f"{result.cpu_load}%" if result.cpu_load is not None else "-")
    table.add_row("Memory used", f"{result.memory_usage}%" if result.memory_usage is not None else "-")
    table.add_row("Uptime", system.format_uptime(result.uptime))
    console.print(table)


async def cmd_configure(args):
    """Apply a configuration directly, without the store."""
    from . import orchestrator

    config = _load(args)
    intent = _intent(args, config)

    if args.dry_run:
        for phase, steps in orchestrator.plan_summary(orchestrator.build_plan(intent, config)).items():
            console.print(f"[bold]{phase}[/bold]")
            for name in steps:
                console.print(f"  - {name}")
        return

    console.print(f"[bold]Configuring {args.ip}...[/bold]")
    result = await orchestrator.configure_router(_connection(args, config), intent, config)
    print_steps(f"Configuration: {args.ip}", result.completed_steps, result.failed_steps, result.warnings)
    if not result.success:
        sys.exit(1)


async def _report_phase(phase: ProvisioningPhase, step: Optional[str]) -> None:
    if step:
        console.print(f"  [green]✓[/green] {step}")
    else:
        console.print(f"[dim]{phase.value}[/dim]")


async def cmd_provision(args):
    """Provision a registered router."""
    async with open_service(args) as service:
        if args.retry:
            result = await service.retry_failed_steps(args.router_id, on_progress=_report_phase)
        else:
            result = await service.provision_router(args.router_id, on_progress=_report_phase)

    print_steps(f"Provisioning: {args.router_id}", result.completed_steps, result.failed_steps, result.warnings)
    if result.error:
        console.print(f"[red]Error: {result.error}[/red]")
    if result.configured:
        console.print("[bold green]Router configured[/bold green]")
    else:
        console.print("[bold red]Router not fully configured[/bold red]")
        sys.exit(1)


async def cmd_sync(args):
    """Check the ledger against the device."""
    async with open_service(args) as service:
        report = await service.sync_router_configuration(args.router_id)

    if not report.success:
        console.print(f"[red]Sync failed: {report.error}[/red]")
        sys.exit(1)

    console.print(f"Checked {report.checked} entries at {report.last_synced_at}")
    if not report.drifts:
        console.print("[green]No drift detected[/green]")
        return

    table = Table(title="Drift")
    table.add_column("Type", style="cyan")
    table.add_column("Name")
    table.add_column("Issue", style="red")
    for drift in report.drifts:
        table.add_row(drift.config_type, drift.config_name, drift.issue)
    console.print(table)


async def cmd_summary(args):
    """Show the deployed configuration ledger of a router."""
    async with open_service(args) as service:
        summary = await service.get_deployed_configs_summary(args.router_id)
        drifts = await service.db.recent_drifts(args.router_id, limit=10)

    table = Table(title=f"Deployed configuration: {args.router_id}")
    table.add_column("Category", style="cyan")
    table.add_column("Entries", justify="right")
    for category, count in summary["configs_by_type"].items():
        if count:
            table.add_row(category, str(count))
    console.print(table)
    console.print(f"Total: [bold]{summary['total_configs']}[/bold]")
    console.print(f"Oldest check: {summary['oldest_check'] or '-'}  Newest check: {summary['newest_check'] or '-'}")

    if drifts:
        console.print("\n[bold]Recent drift[/bold]")
        for drift in drifts:
            console.print(f"  {drift['detected_at']} {drift['config_type']} {drift['config_name']}: {drift['issue']}")


async def cmd_vpn_provision(args):
    """Build the management VPN tunnel for a registered router."""
    async with open_service(args) as service:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
        ) as progress:
            progress.add_task("Provisioning VPN...", total=None)
            result = await service.provision_router_vpn(args.router_id, args.customer)

    for step in result.completed_steps:
        console.print(f"  [green]✓[/green] {step}")
    if not result.success:
        console.print(f"[red]VPN provisioning failed: {result.error}[/red]")
        sys.exit(1)
    console.print(f"[green]{result.message}[/green] VPN IP: [bold]{result.assigned_ip}[/bold] "
                  f"status: {result.status.value}")


async def cmd_vpn_script(args):
    """Generate a manual VPN setup script."""
    async with open_service(args) as service:
        bundle = await service.generate_vpn_setup_script(args.router_id, args.customer)

    if args.output:
        Path(args.output).write_text(bundle.script)
        console.print(f"[green]Script written to {args.output}[/green]")
    else:
        console.print(bundle.script, markup=False, highlight=False)
    console.print(f"VPN IP: [bold]{bundle.assigned_ip}[/bold]")
    console.print("[dim]Paste the script into the router terminal, then run vpn-check.[/dim]")


async def cmd_vpn_status(args):
    """Show the live tunnel state of one router."""
    async with open_service(args) as service:
        status = await service.get_router_vpn_status(args.router_id)

    table = Table(title=f"VPN tunnel: {args.router_id}")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    for key, value in status.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)
    if not status["connected"]:
        sys.exit(1)


async def cmd_vpn_check(args):
    """Run one VPN health pass."""
    async with open_service(args) as service:
        stats = await service.check_all_tunnels()
        if args.reconnect:
            reconnect = await service.monitor.reconnect_stale_tunnels()
            console.print(f"Reconnect: {reconnect['succeeded']}/{reconnect['attempted']} recovered")
        alerts = await service.monitor.check_and_alert()

    table = Table(title="VPN health")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right")
    for key, value in stats.items():
        table.add_row(key, str(value))
    console.print(table)
    for alert in alerts["routers"]:
        console.print(f"[yellow]{alert['name']} ({alert['assigned_ip']}) down "
                      f"{alert['downtime_minutes']} min[/yellow]")


async def cmd_vpn_stats(args):
    """Show tunnel counts and address pool usage."""
    async with open_service(args) as service:
        stats = await service.get_vpn_statistics()

    table = Table(title="VPN statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    for key, value in stats.items():
        table.add_row(key, str(value))
    console.print(table)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="MikroTik Router Provisioning CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    parser.add_argument("-c", "--config", default="config.yaml", help="Configuration file")
    parser.add_argument("--db", help="Override the database path")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Common router arguments
    def add_router_args(p):
        p.add_argument("ip", help="Router IP address")
        p.add_argument("--username", "-u", default="admin", help="API username")
        p.add_argument("--password", "-p", default="", help="API password")
        p.add_argument("--port", type=int, help="REST API port")

    def add_intent_args(p):
        p.add_argument("--ssid", help="Wireless SSID")
        p.add_argument("--no-hotspot", action="store_true", help="Skip the hotspot block")
        p.add_argument("--pppoe", action="store_true", help="Configure the PPPoE server")
        p.add_argument("--pppoe-interface", action="append", help="PPPoE server interface (repeatable)")
        p.add_argument("--wan", help="WAN interface")
        p.add_argument("--wlan", help="Wireless interface")

    add_parser = subparsers.add_parser("add-router", help="Register a router")
    add_parser.add_argument("name", help="Router name")
    add_router_args(add_parser)
    add_intent_args(add_parser)
    add_parser.add_argument("--lan-interface", action="append", help="Interface to clean on re-provision")
    add_parser.add_argument("--customer", help="Customer id")
    add_parser.add_argument("--prefer-vpn", action="store_true", help="Reach the router over its VPN address")

    subparsers.add_parser("routers", help="List registered routers")

    test_parser = subparsers.add_parser("test", help="Test router API connection")
    add_router_args(test_parser)

    configure_parser = subparsers.add_parser("configure", help="Configure a router directly")
    add_router_args(configure_parser)
    add_intent_args(configure_parser)
    configure_parser.add_argument("--dry-run", action="store_true", help="Print the plan only")

    provision_parser = subparsers.add_parser("provision", help="Provision a registered router")
    provision_parser.add_argument("router_id", help="Router id")
    provision_parser.add_argument("--retry", action="store_true", help="Clear step history first")

    retry_parser = subparsers.add_parser("retry", help="Re-run provisioning from scratch")
    retry_parser.add_argument("router_id", help="Router id")
    retry_parser.set_defaults(retry=True)

    sync_parser = subparsers.add_parser("sync", help="Detect configuration drift")
    sync_parser.add_argument("router_id", help="Router id")

    summary_parser = subparsers.add_parser("summary", help="Show deployed configuration")
    summary_parser.add_argument("router_id", help="Router id")

    vpn_parser = subparsers.add_parser("vpn-provision", help="Provision the management VPN")
    vpn_parser.add_argument("router_id", help="Router id")
    vpn_parser.add_argument("--customer", help="Customer id")

    script_parser = subparsers.add_parser("vpn-script", help="Generate a manual VPN setup script")
    script_parser.add_argument("router_id", help="Router id")
    script_parser.add_argument("--customer", help="Customer id")
    script_parser.add_argument("--output", "-o", help="Write the script to a file")

    status_parser = subparsers.add_parser("vpn-status", help="Show one router's tunnel state")
    status_parser.add_argument("router_id", help="Router id")

    check_parser = subparsers.add_parser("vpn-check", help="Run a VPN health pass")
    check_parser.add_argument("--reconnect", action="store_true", help="Ping disconnected tunnels")

    subparsers.add_parser("vpn-stats", help="Show VPN statistics")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)

    # Map commands to functions
    commands = {
        "add-router": cmd_add_router,
        "routers": cmd_routers,
        "test": cmd_test,
        "configure": cmd_configure,
        "provision": cmd_provision,
        "retry": cmd_provision,
        "sync": cmd_sync,
        "summary": cmd_summary,
        "vpn-provision": cmd_vpn_provision,
        "vpn-script": cmd_vpn_script,
        "vpn-status": cmd_vpn_status,
        "vpn-check": cmd_vpn_check,
        "vpn-stats": cmd_vpn_stats,
    }

    try:
        asyncio.run(commands[args.command](args))
    except KeyboardInterrupt:
        console.print("\n[dim]Interrupted[/dim]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        if args.verbose:
            console.print_exception()
        sys.exit(1)


if __name__ == "__main__":
    main()
