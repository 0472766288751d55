"""Error taxonomy shared by the gateway, primitives and VPN tooling."""

from typing import Optional


class GatewayError(Exception):
    """Base class for failures talking to a router's management API."""

    def __init__(self, message: str, path: Optional[str] = None, method: Optional[str] = None):
        super().__init__(message)
        self.path = path
        self.method = method


class TransportFailure(GatewayError):
    """The request never produced an HTTP response."""


class GatewayTimeout(TransportFailure):
    """The router did not answer within the request timeout."""


class Unreachable(TransportFailure):
    """Connection refused, reset, or the address could not be resolved."""

    def __init__(self, message: str, path: Optional[str] = None, method: Optional[str] = None,
                 reason: str = "unreachable"):
        super().__init__(message, path, method)
        self.reason = reason


class AuthFailure(GatewayError):
    """The router rejected the credentials (HTTP 401)."""


class ProtocolError(GatewayError):
    """Unexpected HTTP status or an unparsable body."""

    def __init__(self, status: int, body: str, path: Optional[str] = None,
                 method: Optional[str] = None):
        super().__init__(f"HTTP {status}: {body}", path, method)
        self.status = status
        self.body = body

    @property
    def is_client_error(self) -> bool:
        return 400 <= self.status < 500


class ResourceConflict(ProtocolError):
    """The device refused a creation because the resource already exists."""

    MARKERS = ("already have", "already exists", "already added", "already in use")

    @classmethod
    def matches(cls, body: str) -> bool:
        lowered = (body or "").lower()
        return any(marker in lowered for marker in cls.MARKERS)


class RouterNotFound(LookupError):
    """No router record exists for the given identifier."""


class RouterBusy(RuntimeError):
    """Another run holds the router's advisory lock."""


class ConcentratorError(RuntimeError):
    """A remote-shell command on the VPN concentrator failed."""


class IPPoolExhausted(RuntimeError):
    """No unassigned address remains in the VPN pool."""


class VPNProvisioningError(RuntimeError):
    """A VPN provisioning step failed."""


class VPNRollbackFailure(RuntimeError):
    """Rolling back a concentrator peer failed."""


def describe_connection_error(exc: BaseException) -> str:
    """Turn a gateway failure into an operator-facing message."""
    if isinstance(exc, GatewayTimeout):
        return "Connection timeout. Router did not respond in time."
    if isinstance(exc, AuthFailure):
        return "Authentication failed. Please check your username and password."
    if isinstance(exc, Unreachable):
        if exc.reason == "refused":
            return "Connection refused. Make sure the router is reachable and REST API is enabled."
        if exc.reason == "not_found":
            return "Router not found. Please verify the IP address."
        if exc.reason == "reset":
            return "Connection reset by router. Check firewall settings."
        return f"Router unreachable: {exc}"
    if isinstance(exc, ProtocolError):
        return f"Router returned an error: {exc}"
    return f"Connection failed: {exc}"


class ConnectionTestFailed(RuntimeError):
    """The pre-flight connection test did not reach the router's API."""
