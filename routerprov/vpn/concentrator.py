"""WireGuard concentrator control over SSH."""

import logging
import shlex
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import asyncssh

from ..config import VPNConfig
from ..errors import ConcentratorError

logger = logging.getLogger(__name__)


@dataclass
class PeerStatus:
    """One peer line of ``wg show <if> dump``."""
    public_key: str
    endpoint: Optional[str] = None
    allowed_ips: List[str] = field(default_factory=list)
    latest_handshake: Optional[datetime] = None
    bytes_received: int = 0
    bytes_sent: int = 0


def _int(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def parse_dump(output: str) -> List[PeerStatus]:
    """Parse ``wg show <if> dump`` output.

    The first line describes the interface itself and is skipped. Peer lines
    are tab separated: public key, preshared key, endpoint, allowed ips,
    latest handshake (unix seconds, 0 for never), rx bytes, tx bytes,
    keepalive.
    """
    peers = []
    lines = [line for line in output.strip().splitlines() if line.strip()]
    for line in lines[1:]:
        fields = line.split("\t")
        if len(fields) < 7:
            logger.debug(f"Skipping malformed dump line: {line!r}")
            continue
        handshake = _int(fields[4])
        peers.append(PeerStatus(
            public_key=fields[0],
            endpoint=fields[2] if fields[2] != "(none)" else None,
            allowed_ips=[ip for ip in fields[3].split(",") if ip and ip != "(none)"],
            latest_handshake=datetime.fromtimestamp(handshake, tz=timezone.utc) if handshake else None,
            bytes_received=_int(fields[5]),
            bytes_sent=_int(fields[6]),
        ))
    return peers


def peer_block(public_key: str, address: str, keepalive: int) -> str:
    return (
        f"\n# Router Peer - {address}\n"
        f"[Peer]\n"
        f"PublicKey = {public_key}\n"
        f"AllowedIPs = {address}/32\n"
        f"PersistentKeepalive = {keepalive}\n"
    )


class WireGuardConcentrator:
    """Registers router peers on the central WireGuard server."""

    def __init__(self, settings: VPNConfig):
        self.settings = settings
        self._ssh: Optional[asyncssh.SSHClientConnection] = None

    async def _ensure_ssh(self) -> asyncssh.SSHClientConnection:
        if self._ssh is None:
            kwargs = {
                "port": self.settings.ssh_port,
                "username": self.settings.ssh_username,
                "known_hosts": None,
                "connect_timeout": self.settings.ssh_connect_timeout,
            }
            if self.settings.ssh_key_path:
                kwargs["client_keys"] = [self.settings.ssh_key_path]
            else:
                kwargs["client_keys"] = None
                kwargs["password"] = self.settings.ssh_password
            try:
                self._ssh = await asyncssh.connect(self.settings.ssh_host, **kwargs)
            except (OSError, asyncssh.Error) as e:
                raise ConcentratorError(f"Cannot reach VPN server {self.settings.ssh_host}: {e}") from e
            logger.info(f"Connected to VPN server {self.settings.ssh_host}")
        return self._ssh

    async def close(self) -> None:
        if self._ssh:
            self._ssh.close()
            await self._ssh.wait_closed()
            self._ssh = None
            logger.info(f"Disconnected from VPN server {self.settings.ssh_host}")

    def _shell(self, command: str) -> str:
        wrapped = f"bash -c {shlex.quote(command)}"
        return f"sudo {wrapped}" if self.settings.use_sudo else wrapped

    async def execute(self, command: str) -> Tuple[int, str, str]:
        """Run a shell command on the concentrator and return (status, stdout, stderr)."""
        conn = await self._ensure_ssh()
        try:
            result = await conn.run(self._shell(command), check=False)
        except (OSError, asyncssh.Error) as e:
            self._ssh = None
            raise ConcentratorError(f"VPN server command failed: {e}") from e
        status = result.exit_status if result.exit_status is not None else -1
        return status, str(result.stdout or ""), str(result.stderr or "")

    async def _run(self, command: str) -> str:
        status, stdout, stderr = await self.execute(command)
        if status != 0:
            raise ConcentratorError(stderr.strip() or stdout.strip() or f"Command failed: {command}")
        return stdout

    async def reload(self) -> None:
        iface = self.settings.interface
        await self._run(f"wg syncconf {iface} <(wg-quick strip {iface})")

    async def add_peer(self, public_key: str, address: str) -> None:
        block = peer_block(public_key, address, self.settings.keepalive)
        await self._run(f"printf '%s' {shlex.quote(block)} >> {shlex.quote(self.settings.config_path)}")
        await self.reload()
        logger.info(f"Peer added to VPN server: {public_key[:10]}... ({address})")

    async def remove_peer(self, public_key: str) -> None:
        """Delete the peer's whole stanza from the config file and reload."""
        path = shlex.quote(self.settings.config_path)
        await self._run(
            f"awk -v key={shlex.quote(public_key)} "
            f"'BEGIN {{ RS = \"\"; ORS = \"\\n\\n\" }} index($0, \"PublicKey = \" key) == 0' "
            f"{path} > {path}.tmp && cat {path}.tmp > {path} && rm -f {path}.tmp"
        )
        await self.reload()
        logger.info(f"Peer removed from VPN server: {public_key[:10]}...")

    async def has_peer(self, public_key: str) -> bool:
        status, _, _ = await self.execute(
            f"grep -qF {shlex.quote('PublicKey = ' + public_key)} {shlex.quote(self.settings.config_path)}"
        )
        return status == 0

    async def ping(self, address: str, count: int = 3, wait: int = 2) -> bool:
        status, _, _ = await self.execute(f"ping -c {count} -W {wait} {shlex.quote(address)}")
        return status == 0

    async def dump(self) -> List[PeerStatus]:
        return parse_dump(await self._run(f"wg show {self.settings.interface} dump"))
