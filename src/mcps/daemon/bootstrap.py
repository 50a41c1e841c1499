"""
Daemon bootstrap: route a command through the broker daemon, or connect directly.

Every tools/call command goes through DaemonBootstrap. When the daemon is
reachable (starting it if allowed) the request is forwarded and served from the
pool. When it is not, the request runs over a single-use connection that is
closed right after and never enters a pool. Errors raised by a reachable daemon
are passed through unchanged; only an unreachable daemon triggers the fallback.
"""

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import Any, AsyncIterator, Dict, List, Optional

from mcps.config import Settings
from mcps.core.client import ProtocolClient
from mcps.core.errors import DaemonNotRunning, DaemonUnavailable
from mcps.core.pool import ClientFactory, open_client, resolve_server
from mcps.core.store import ConfigStore

from .client import DaemonClient
from .manager import DaemonManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def open_standalone(
    store: ConfigStore,
    server_name: str,
    client_factory: Optional[ClientFactory] = None,
) -> AsyncIterator[ProtocolClient]:
    """Connect directly to one server for a single request and always close it."""
    server = resolve_server(store, server_name)
    client = await open_client(server, client_factory or ProtocolClient)
    try:
        yield client
    finally:
        try:
            await client.close()
        except Exception as e:
            logger.warning(f"Error closing standalone connection to {server_name}: {e}")


class DaemonBootstrap:
    """Forward requests to the daemon, falling back to direct connections."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        store: Optional[ConfigStore] = None,
        manager: Optional[DaemonManager] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.settings = settings or Settings()
        self._store = store
        self.manager = manager or DaemonManager(self.settings)
        self.client_factory = client_factory or partial(ProtocolClient, timeout=self.settings.connect_timeout)

    @property
    def daemon(self) -> DaemonClient:
        return self.manager.client

    @property
    def store(self) -> ConfigStore:
        # Only the fallback path needs the configuration file
        if self._store is None:
            self._store = ConfigStore(self.settings.config_dir)
        return self._store

    async def _daemon_available(self) -> bool:
        if not self.settings.daemon_enabled:
            return False
        if not self.settings.auto_start:
            return await self.daemon.is_running()
        try:
            await self.manager.ensure_reachable()
        except DaemonUnavailable as e:
            logger.debug(f"Daemon unavailable, using a direct connection: {e}")
            return False
        return True

    async def list_tools(self, server_name: str) -> List[Dict[str, Any]]:
        if await self._daemon_available():
            try:
                return await self.daemon.list_tools(server_name)
            except DaemonNotRunning:
                logger.debug("Daemon went away, using a direct connection")

        async with open_standalone(self.store, server_name, self.client_factory) as client:
            return await client.list_tools()

    async def call_tool(
        self,
        server_name: str,
        tool: str,
        arguments: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        arguments = arguments or {}
        if await self._daemon_available():
            try:
                return await self.daemon.call_tool(server_name, tool, arguments)
            except DaemonNotRunning:
                logger.debug("Daemon went away, using a direct connection")

        async with open_standalone(self.store, server_name, self.client_factory) as client:
            return await client.call_tool(tool, arguments)

    async def restart(self) -> str:
        """
        Close every pooled connection in the daemon.

        There is no pool without a daemon, so DaemonUnavailable propagates.
        """
        await self.manager.ensure_reachable()
        return await self.daemon.restart()
