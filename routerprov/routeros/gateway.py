"""Command gateway for the RouterOS REST API.

``send`` performs one authenticated request and maps every failure onto the
error taxonomy in :mod:`routerprov.errors`. ``hybrid_send`` wraps creation
calls, whose REST surface differs between firmware releases, in a fallback
chain that ends with the CLI bridge endpoint.
"""

import asyncio
import errno
import json
import logging
import re
import socket
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from ..errors import (
    AuthFailure,
    GatewayTimeout,
    ProtocolError,
    ResourceConflict,
    TransportFailure,
    Unreachable,
)
from ..models import ConnectionConfig

logger = logging.getLogger(__name__)

CLI_PATH = "/cli"

# Creation strategies, tried in order.
POST = "post"
POST_ADD = "post_add"
CLI = "cli"

HEURISTIC_ORDER = (POST, POST_ADD, CLI)


@dataclass(frozen=True)
class FirmwareCapabilities:
    """Known-good creation strategies for a range of RouterOS releases."""
    min_version: Tuple[int, int]
    max_version: Optional[Tuple[int, int]]  # exclusive
    strategies: Tuple[str, ...]

    def covers(self, version: Tuple[int, int]) -> bool:
        if version < self.min_version:
            return False
        return self.max_version is None or version < self.max_version


CAPABILITY_TABLE_VERSION = 1

# RouterOS 7 exposes menu commands as POST /<menu>/<command>, so "add" is the
# creation call; the CLI bridge covers menus whose REST mapping is missing.
CAPABILITIES: List[FirmwareCapabilities] = [
    FirmwareCapabilities(min_version=(7, 1), max_version=None, strategies=(POST_ADD, CLI)),
]


def parse_version(version: Optional[str]) -> Optional[Tuple[int, int]]:
    """Extract (major, minor) from strings like ``7.12.1 (stable)``."""
    if not version:
        return None
    match = re.match(r"\s*(\d+)\.(\d+)", version)
    if not match:
        return None
    return int(match.group(1)), int(match.group(2))


def creation_strategies(firmware: Optional[str]) -> Tuple[Tuple[str, ...], bool]:
    """Return (strategy order, from_table) for a firmware version."""
    version = parse_version(firmware)
    if version is not None:
        for caps in CAPABILITIES:
            if caps.covers(version):
                logger.debug(f"RouterOS {firmware}: using capability table v{CAPABILITY_TABLE_VERSION}")
                return caps.strategies, True
    return HEURISTIC_ORDER, False


async def _http(config: ConnectionConfig, method: str, url: str,
                body: Optional[Any]) -> Tuple[int, str]:
    """Perform the HTTP exchange. Returns (status, body text)."""
    timeout = aiohttp.ClientTimeout(total=config.timeout)
    auth = aiohttp.BasicAuth(config.username, config.password)
    kwargs: Dict[str, Any] = {}
    if body is not None:
        kwargs["json"] = body
    if config.scheme == "https" and not config.verify_ssl:
        kwargs["ssl"] = False

    async with aiohttp.ClientSession(timeout=timeout, auth=auth) as session:
        async with session.request(method, url, **kwargs) as response:
            return response.status, await response.text()


def _transport_error(exc: Exception, path: str, method: str) -> TransportFailure:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return GatewayTimeout("Request timed out", path, method)

    os_error = getattr(exc, "os_error", None) or (exc if isinstance(exc, OSError) else None)
    reason = "unreachable"
    if isinstance(os_error, socket.gaierror):
        reason = "not_found"
    elif isinstance(os_error, OSError) and os_error.errno == errno.ECONNREFUSED:
        reason = "refused"
    elif isinstance(os_error, OSError) and os_error.errno == errno.ECONNRESET:
        reason = "reset"
    elif isinstance(exc, aiohttp.ServerDisconnectedError):
        reason = "reset"
    return Unreachable(str(exc) or exc.__class__.__name__, path, method, reason=reason)


async def send(config: ConnectionConfig, path: str, method: str = "GET",
               body: Optional[Any] = None) -> Any:
    """Send one request to ``/rest{path}`` and return the decoded JSON.

    Returns None for an empty response body.

    Raises:
        AuthFailure: on HTTP 401.
        ResourceConflict: when the device reports a duplicate.
        ProtocolError: on any other error status or an unparsable body.
        GatewayTimeout / Unreachable: when no response was received.
    """
    url = f"{config.base_url}{path}"
    try:
        status, text = await _http(config, method, url, body)
    except (asyncio.TimeoutError, TimeoutError, aiohttp.ClientError, OSError) as e:
        error = _transport_error(e, path, method)
        logger.debug(f"{method} {config.address}{path} failed: {error}")
        raise error from e

    if status == 401:
        raise AuthFailure("Authentication failed", path, method)

    if status >= 400:
        if ResourceConflict.matches(text):
            raise ResourceConflict(status, text, path, method)
        raise ProtocolError(status, text, path, method)

    if not text or not text.strip():
        return None

    try:
        return json.loads(text)
    except ValueError:
        raise ProtocolError(status, f"Invalid JSON response: {text[:200]}", path, method)


def cli_tokens(command: str, body: Optional[Dict[str, Any]] = None) -> List[str]:
    """Translate a command path and arguments into CLI bridge tokens."""
    tokens = [command]
    for key, value in (body or {}).items():
        if isinstance(value, bool):
            value = "yes" if value else "no"
        tokens.append(f"={key}={value}")
    return tokens


async def cli_send(config: ConnectionConfig, command: str,
                   body: Optional[Dict[str, Any]] = None) -> Any:
    """Run a CLI command such as ``/ip/pool/add`` through the CLI bridge."""
    return await send(config, CLI_PATH, "POST", {"commands": cli_tokens(command, body)})


def is_fallback_candidate(exc: Exception) -> bool:
    """True when the device understood the request but refused this form of it."""
    return isinstance(exc, ProtocolError) and not isinstance(exc, ResourceConflict)


def _should_fall_back(exc: Exception, next_strategy: str, strict: bool) -> bool:
    """Decide whether a failed creation attempt moves on to ``next_strategy``.

    Transport failures are only retried when the next tier is the CLI bridge.
    With ``strict`` set, a protocol error must be a 4xx or "no such command".
    """
    if isinstance(exc, ResourceConflict):
        return False
    if isinstance(exc, TransportFailure):
        return next_strategy == CLI
    if isinstance(exc, ProtocolError):
        if not strict:
            return True
        return exc.is_client_error or "no such command" in (exc.body or "").lower()
    return False


async def _attempt(config: ConnectionConfig, strategy: str, path: str, body: Dict[str, Any]) -> Any:
    if strategy == POST:
        return await send(config, path, "POST", body)
    if strategy == POST_ADD:
        return await send(config, f"{path}/add", "POST", body)
    if strategy == CLI:
        return await cli_send(config, f"{path}/add", body)
    raise ValueError(f"Unknown creation strategy: {strategy}")


async def hybrid_send(config: ConnectionConfig, path: str, body: Dict[str, Any],
                      strategies: Optional[Sequence[str]] = None) -> Any:
    """Create a resource, falling back across creation strategies.

    When the router's firmware is listed in ``CAPABILITIES`` its strategies are
    used in order and any protocol failure moves to the next one. Otherwise the
    heuristic chain applies: plain POST, then POST with ``/add`` when the first
    attempt fails with a 4xx or "no such command", then the CLI bridge when the
    second attempt fails for any non-auth reason.

    On either path a transport failure moves on only when the next tier is
    the CLI bridge. AuthFailure and ResourceConflict always propagate
    immediately.
    """
    if strategies is None:
        strategies, from_table = creation_strategies(config.firmware)
    else:
        from_table = True

    if not strategies:
        raise ValueError(f"No creation strategies for {path}")

    for index, strategy in enumerate(strategies):
        try:
            return await _attempt(config, strategy, path, body)
        except AuthFailure:
            raise
        except (ProtocolError, TransportFailure) as e:
            if index == len(strategies) - 1:
                raise
            next_strategy = strategies[index + 1]
            if not _should_fall_back(e, next_strategy, strict=index == 0 and not from_table):
                raise
            logger.debug(f"{path}: {strategy} failed ({e}), trying {next_strategy}")
