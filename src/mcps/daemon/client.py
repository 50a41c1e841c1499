"""
mcps Daemon Client - Client for CLI to communicate with the broker daemon.

Transport failures are reported as structured errors: a refused connection is
DaemonNotRunning (the caller may fall back to a direct connection), any other
transport failure is DaemonUnavailable, and error responses from a reachable
daemon are rebuilt into the error kind the daemon reported.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from mcps.core.errors import DaemonNotRunning, DaemonUnavailable, error_from_payload

logger = logging.getLogger(__name__)


class DaemonStatus(BaseModel):
    """Status information from daemon."""
    running: bool
    uptime_seconds: float = 0.0
    port: Optional[int] = None
    pid: Optional[int] = None
    connections: Dict[str, str] = {}
    error: Optional[str] = None


class DaemonClient:
    """
    Client for the broker daemon's control API.

    Requests go straight to the loopback address; proxy environment variables
    are ignored.
    """

    # Short timeout for health checks
    HEALTH_TIMEOUT = 0.5

    # Listing tools may include the first downstream handshake
    OPERATION_TIMEOUT = 60.0

    # Tool calls run as long as the downstream tool needs
    CALL_TIMEOUT = 300.0

    def __init__(self, url: str = "http://127.0.0.1:4100", transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize daemon client.

        Args:
            url: Daemon URL (default: http://127.0.0.1:4100)
            transport: Optional httpx transport (used by tests)
        """
        self.url = url.rstrip("/")
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, trust_env=False, transport=self._transport)

    async def is_running(self) -> bool:
        """
        Check if the daemon is running.

        Returns:
            True if daemon answered its health check, False otherwise.
        """
        try:
            async with self._client(self.HEALTH_TIMEOUT) as client:
                response = await client.get(f"{self.url}/health")
                return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def get_status(self) -> DaemonStatus:
        """Get detailed daemon status."""
        try:
            async with self._client(self.HEALTH_TIMEOUT * 4) as client:
                response = await client.get(f"{self.url}/health")
                if response.status_code == 200:
                    data = response.json()
                    return DaemonStatus(
                        running=True,
                        uptime_seconds=data.get("uptime_seconds", 0.0),
                        port=data.get("port"),
                        pid=data.get("pid"),
                        connections=data.get("connections", {}),
                    )
                return DaemonStatus(
                    running=False,
                    error=f"Unexpected status code: {response.status_code}",
                )
        except httpx.ConnectError:
            return DaemonStatus(running=False, error="Daemon not running")
        except httpx.TimeoutException:
            return DaemonStatus(running=False, error="Connection timeout")
        except httpx.HTTPError as e:
            return DaemonStatus(running=False, error=str(e))

    async def _post(self, path: str, payload: Dict[str, Any], timeout: float) -> Any:
        try:
            async with self._client(timeout) as client:
                response = await client.post(f"{self.url}{path}", json=payload)
        except httpx.ConnectError as e:
            raise DaemonNotRunning(f"Daemon not running at {self.url}") from e
        except httpx.TimeoutException as e:
            raise DaemonUnavailable(f"Daemon request {path} timed out") from e
        except httpx.HTTPError as e:
            raise DaemonUnavailable(f"Daemon request {path} failed: {e}") from e

        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = None

        if not response.is_success:
            raise error_from_payload(data, response.status_code)
        return data

    async def list_tools(self, server: str) -> List[Dict[str, Any]]:
        """List a server's tools through the daemon's pool."""
        data = await self._post("/list", {"server": server}, self.OPERATION_TIMEOUT)
        return data.get("tools", [])

    async def call_tool(self, server: str, tool: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Call a tool through the daemon's pool."""
        return await self._post(
            "/call",
            {"server": server, "tool": tool, "arguments": arguments or {}},
            self.CALL_TIMEOUT,
        )

    async def restart(self) -> str:
        """Close every pooled connection in the daemon."""
        data = await self._post("/restart", {}, self.OPERATION_TIMEOUT)
        return data.get("message", "Connections restarted")
