"""
mcps Daemon Server - FastAPI broker for pooled MCP connections.

This server runs on localhost and provides:
- POST /list - List the tools of a configured server
- POST /call - Call a tool on a configured server
- POST /restart - Close every pooled connection (they reconnect lazily)
- GET /health - Health check

The daemon owns one ConnectionPool for its whole lifetime. Short-lived CLI
invocations talk to it instead of spawning and handshaking with each MCP
server on every call.
"""

import json
import logging
import os
from contextlib import asynccontextmanager
from functools import partial
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from mcps.config import Settings
from mcps.core.client import ProtocolClient
from mcps.core.errors import McpsError
from mcps.core.pool import ClientFactory, ConnectionPool
from mcps.core.store import ConfigStore

logger = logging.getLogger(__name__)


# =============================================================================
# Request/Response Models
# =============================================================================

class ListRequest(BaseModel):
    """Request to list a server's tools."""
    server: str


class ListResponse(BaseModel):
    tools: List[Dict[str, Any]]


class CallRequest(BaseModel):
    """Request to call a tool."""
    server: str
    tool: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class RestartResponse(BaseModel):
    message: str


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    uptime_seconds: float
    port: int
    pid: int
    connections: Dict[str, str]


# =============================================================================
# Daemon State
# =============================================================================

class DaemonState:
    """State owned by one running daemon application."""

    def __init__(self, settings: Settings, store: ConfigStore, pool: ConnectionPool):
        self.start_time: datetime = datetime.now(timezone.utc)
        self.settings = settings
        self.store = store
        self.pool = pool

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()


def get_state(request: Request) -> DaemonState:
    return request.app.state.daemon


# =============================================================================
# Call logging
# =============================================================================

def format_tool_request(server: str, tool: str, arguments: Dict[str, Any]) -> str:
    return f"[Tool Request] Server: {server}, Tool: {tool}, Args: {json.dumps(arguments, ensure_ascii=False)}"


def format_tool_response(server: str, tool: str, result: Any) -> str:
    return f"[Tool Response] Server: {server}, Tool: {tool}, Result: {json.dumps(result, ensure_ascii=False)}"


# =============================================================================
# Application
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[ConfigStore] = None,
    client_factory: Optional[ClientFactory] = None,
) -> FastAPI:
    """
    Build the broker application.

    The pool is created when the app starts and closed when it stops; handlers
    reach it through app.state rather than a module global.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("mcps daemon starting...")
        config_store = store or ConfigStore(settings.config_dir)
        factory = client_factory or partial(ProtocolClient, timeout=settings.connect_timeout)
        pool = ConnectionPool(config_store, client_factory=factory)
        app.state.daemon = DaemonState(settings, config_store, pool)
        logger.info(
            f"mcps daemon started (port: {settings.port}, servers: {len(config_store.list_servers())})"
        )

        yield

        logger.info("mcps daemon shutting down...")
        await pool.close_all()
        logger.info("mcps daemon stopped")

    app = FastAPI(
        title="mcps Daemon",
        description="Connection broker for MCP servers",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(McpsError)
    async def mcps_error_handler(request: Request, exc: McpsError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        """Health check endpoint."""
        state = get_state(request)
        return HealthResponse(
            status="healthy",
            uptime_seconds=state.uptime_seconds,
            port=state.settings.port,
            pid=os.getpid(),
            connections=state.pool.snapshot(),
        )

    @app.post("/list", response_model=ListResponse)
    async def list_tools(body: ListRequest, request: Request):
        """List the tools of a server through its pooled connection."""
        state = get_state(request)
        async with state.pool.lease(body.server) as client:
            tools = await client.list_tools()
        return ListResponse(tools=tools)

    @app.post("/call")
    async def call_tool(body: CallRequest, request: Request):
        """
        Call a tool through the pooled connection.

        The downstream CallToolResult is returned unchanged.
        """
        state = get_state(request)
        verbose = state.settings.verbose
        if verbose:
            logger.info(format_tool_request(body.server, body.tool, body.arguments))

        async with state.pool.lease(body.server) as client:
            result = await client.call_tool(body.tool, body.arguments)

        if verbose:
            logger.info(format_tool_response(body.server, body.tool, result))
        return result

    @app.post("/restart", response_model=RestartResponse)
    async def restart(request: Request):
        """
        Close every pooled connection and reload the configuration.

        Individual close failures are logged by the pool and never fail the
        request; the next call for each server reconnects.
        """
        state = get_state(request)
        closed = len(state.pool)
        await state.pool.close_all()
        state.store.reload()
        return RestartResponse(
            message=f"Restarted all connections ({closed} closed). Servers will reconnect on next use."
        )

    return app


# =============================================================================
# Entry Point
# =============================================================================

def run_server(host: Optional[str] = None, port: Optional[int] = None):
    """Run the daemon server on the configured host and port unless overridden."""
    import uvicorn

    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = Settings()
    overrides = {key: value for key, value in (("host", host), ("port", port)) if value is not None}
    if overrides:
        settings = settings.model_copy(update=overrides)

    # uvicorn turns SIGTERM/SIGINT into a graceful shutdown, which runs the
    # lifespan exit and closes the pool.
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level="info",
        access_log=True,
    )


if __name__ == "__main__":
    run_server()
