"""Helpers shared by the configuration and cleanup primitives."""

import logging
from typing import Any, Dict, List, Optional

from ..errors import AuthFailure, GatewayError, TransportFailure
from ..models import ConfigurationResult, ConnectionConfig
from . import gateway

logger = logging.getLogger(__name__)

# Errors no later step of a run can recover from; primitives let these through.
FATAL_ERRORS = (AuthFailure, TransportFailure)

RECOVERABLE_ERRORS = (GatewayError, ValueError, KeyError)


async def fetch_list(config: ConnectionConfig, path: str) -> List[Dict[str, Any]]:
    """GET a RouterOS menu and always return a list of items."""
    data = await gateway.send(config, path, "GET")
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        return [data]
    return []


def find_item(items: List[Dict[str, Any]], **criteria: Any) -> Optional[Dict[str, Any]]:
    """Return the first item whose fields equal every criterion.

    Keyword names use underscores for RouterOS dashes (``src_address``).
    """
    wanted = {key.replace("_", "-"): value for key, value in criteria.items()}
    for item in items:
        if all(item.get(key) == value for key, value in wanted.items()):
            return item
    return None


def failed(step: str, message: str, exc: Exception) -> ConfigurationResult:
    """Build the failure result for a primitive, re-raising fatal errors."""
    if isinstance(exc, FATAL_ERRORS):
        raise exc
    logger.warning(f"{step}: {message}: {exc}")
    return ConfigurationResult(success=False, step=step, message=message, error=str(exc))

