"""
Error taxonomy shared by the pool, the control service and the CLI.

Every error carries a machine-readable ``code`` and the HTTP status the
control service answers with, so a reachable daemon and the standalone
fallback surface the same kind for the same failure.
"""

from typing import Any, Dict, Optional, Type


class McpsError(Exception):
    """Base class for all mcps errors."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, server: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.server = server

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.server is not None:
            payload["server"] = self.server
        return payload


class ServerNotFound(McpsError):
    """Server name is absent from the configuration or disabled."""

    code = "server_not_found"
    status_code = 404


class ConnectionFailed(McpsError):
    """Connecting to the downstream server failed."""

    code = "connection_failed"
    status_code = 502


class DownstreamError(McpsError):
    """A connected downstream server failed a non-tool request (e.g. listing tools)."""

    code = "downstream_error"
    status_code = 500


class ToolInvocationError(McpsError):
    """The downstream server reported a tool failure."""

    code = "tool_invocation_error"
    status_code = 422


class ConfigValidationError(McpsError):
    """A server definition is malformed."""

    code = "config_invalid"
    status_code = 400


class DaemonUnavailable(McpsError):
    """The broker daemon could not be reached or started."""

    code = "daemon_unavailable"
    status_code = 503


class DaemonNotRunning(DaemonUnavailable):
    """Nothing is listening on the control port (connection refused)."""

    code = "daemon_not_running"


_ERRORS_BY_CODE: Dict[str, Type[McpsError]] = {
    cls.code: cls
    for cls in (
        ServerNotFound,
        ConnectionFailed,
        DownstreamError,
        ToolInvocationError,
        ConfigValidationError,
        DaemonUnavailable,
        DaemonNotRunning,
    )
}


def error_from_payload(payload: Any, status_code: int) -> McpsError:
    """Rebuild the error a daemon response describes."""
    if not isinstance(payload, dict):
        return McpsError(f"Daemon error (HTTP {status_code})")

    message = payload.get("error")
    if message is None:
        # FastAPI validation errors use "detail" instead of our error body
        message = str(payload.get("detail") or f"Daemon error (HTTP {status_code})")

    error_cls = _ERRORS_BY_CODE.get(payload.get("code", ""), McpsError)
    return error_cls(message, server=payload.get("server"))
