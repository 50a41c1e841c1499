"""
Protocol client for a single MCP server.

Wraps the fastmcp Client with the transport selected by the server definition
(stdio process, SSE endpoint or streamable HTTP endpoint). Each instance owns
one downstream session.
"""

import logging
from typing import Any, Dict, List, Optional

from fastmcp import Client
from fastmcp.client.transports import (
    ClientTransport,
    SSETransport,
    StdioTransport,
    StreamableHttpTransport,
)

from mcps.core.errors import ConnectionFailed, DownstreamError, McpsError, ToolInvocationError
from mcps.core.models import ServerDefinition, ServerKind

logger = logging.getLogger(__name__)


def _describe(error: BaseException) -> str:
    # EndOfStream / ClosedResourceError carry no message
    return str(error) or f"{type(error).__name__}: connection closed"


def build_transport(server: ServerDefinition) -> ClientTransport:
    """Create the fastmcp transport for a server definition."""
    kind = server.kind
    if kind == ServerKind.STDIO:
        return StdioTransport(
            command=server.command,
            args=list(server.args),
            env=dict(server.env) if server.env else None,
        )
    if kind == ServerKind.SSE:
        return SSETransport(url=server.url)
    return StreamableHttpTransport(url=server.url)


def _error_text(result: Any) -> str:
    texts = [
        getattr(block, "text", "")
        for block in (getattr(result, "content", None) or [])
        if getattr(block, "type", None) == "text"
    ]
    return "\n".join(t for t in texts if t) or "Tool reported an error"


class ProtocolClient:
    """Connect, list tools, call tools and close one MCP server connection."""

    def __init__(self, server: ServerDefinition, timeout: Optional[float] = None):
        self.server = server
        self.timeout = timeout
        self._client: Optional[Client] = None

    @property
    def name(self) -> str:
        return self.server.name

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> "ProtocolClient":
        if self._client is not None:
            return self

        client = Client(build_transport(self.server), timeout=self.timeout)
        try:
            await client.__aenter__()
        except Exception as e:
            logger.error(f"Failed to connect to {self.server.kind.value} server '{self.name}': {_describe(e)}")
            raise ConnectionFailed(
                f'Failed to connect to server "{self.name}": {_describe(e)}', server=self.name
            ) from e

        self._client = client
        logger.debug(f"Connected to {self.server.kind.value} MCP server: {self.name}")
        return self

    def _session(self) -> Client:
        if self._client is None:
            raise ConnectionFailed(f'Server "{self.name}" is not connected', server=self.name)
        return self._client

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Return the server's tool catalog as JSON-ready dicts."""
        client = self._session()
        try:
            tools = await client.list_tools()
        except McpsError:
            raise
        except Exception as e:
            raise DownstreamError(
                f'Failed to list tools on "{self.name}": {_describe(e)}', server=self.name
            ) from e
        return [tool.model_dump(mode="json", by_alias=True, exclude_none=True) for tool in tools]

    async def call_tool(self, tool: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Invoke a tool and return the raw CallToolResult as a dict."""
        client = self._session()
        try:
            result = await client.call_tool_mcp(tool, arguments or {})
        except McpsError:
            raise
        except Exception as e:
            raise ToolInvocationError(
                f'Tool "{tool}" failed on "{self.name}": {_describe(e)}', server=self.name
            ) from e

        if result.isError:
            raise ToolInvocationError(
                f'Tool "{tool}" failed on "{self.name}": {_error_text(result)}', server=self.name
            )
        return result.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        await client.__aexit__(None, None, None)
        logger.debug(f"Closed connection to {self.name}")

    async def __aenter__(self) -> "ProtocolClient":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
