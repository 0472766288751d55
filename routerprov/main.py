#!/usr/bin/env python3
"""
MikroTik Router Provisioning Daemon

Runs the management VPN health monitor and the scheduled drift sync.
"""

import argparse
import asyncio
import logging
import logging.handlers
import signal
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .config import Config, get_config, load_config, set_config
from .crypto import SecretBox
from .db import close_db, get_db, init_db
from .service import ProvisioningService

logger = logging.getLogger(__name__)
console = Console()


class Daemon:
    """Background loops for the VPN monitor and periodic drift reconciliation."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()
        self.service: Optional[ProvisioningService] = None
        self._stop = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    async def setup(self) -> None:
        """Initialize all components."""
        logger.info("Initializing router provisioning daemon...")
        await init_db(self.config.logging.db)
        self.service = ProvisioningService(get_db(), self.config, SecretBox(self.config.security.secret_key))
        logger.info("Daemon initialized successfully")

    async def _sync_loop(self) -> None:
        interval = self.config.sync.interval
        logger.info(f"Drift sync running every {interval}s")
        while not self._stop.is_set():
            reports = await self.service.sync_all_routers()
            drifted = sum(len(r.drifts) for r in reports)
            logger.info(f"Drift sync pass: {len(reports)} routers, {drifted} drifted entries")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def run(self) -> None:
        """Start the daemon loops."""
        self._tasks.append(asyncio.create_task(self.service.monitor.run()))
        if self.config.sync.enabled:
            self._tasks.append(asyncio.create_task(self._sync_loop()))

        console.print(f"[green]Monitoring VPN {self.config.vpn.network} via {self.config.vpn.ssh_host}[/green]")
        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Daemon stopping...")

    async def stop(self) -> None:
        """Stop the daemon."""
        if self._stop.is_set():
            return
        self._stop.set()
        if self.service:
            await self.service.close()
        await close_db()
        logger.info("Daemon stopped")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure logging."""
    handlers = [
        RichHandler(
            console=console,
            show_time=True,
            show_path=False,
            rich_tracebacks=True,
        )
    ]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=50 * 1024 * 1024,  # 50 MB per file
            backupCount=3,
        ))

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=handlers,
    )


async def async_main(config_path: str) -> None:
    """Async main entry point."""
    try:
        config = load_config(config_path)
        set_config(config)
    except Exception as e:
        console.print(f"[red]Failed to load configuration: {e}[/red]")
        sys.exit(1)

    setup_logging(config.logging.level, config.logging.file)

    daemon = Daemon()
    loop = asyncio.get_running_loop()

    def shutdown_handler():
        logger.info("Shutdown signal received")
        if daemon.service:
            daemon.service.monitor.stop()
        for task in daemon._tasks:
            task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_handler)

    try:
        await daemon.setup()
        await daemon.run()
    finally:
        await daemon.stop()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="MikroTik Router Provisioning Daemon",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    args = parser.parse_args()

    console.print("[bold blue]MikroTik Router Provisioning Daemon[/bold blue]")
    console.print()

    asyncio.run(async_main(args.config))


if __name__ == "__main__":
    main()
