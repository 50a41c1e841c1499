"""
Connection pool for downstream MCP servers.

The pool keeps at most one entry per server name. Concurrent requests for the
same unconnected server share one connect task stored on the entry, so a
server process is never spawned twice for one name. close_all() takes the pool
exclusively: it waits for requests holding a lease, then closes every client.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional

from mcps.core.client import ProtocolClient
from mcps.core.errors import ConnectionFailed, McpsError, ServerNotFound
from mcps.core.models import EntryState, Lifecycle, PoolEntry, ServerDefinition
from mcps.core.store import ConfigStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ServerDefinition], ProtocolClient]


def resolve_server(store: ConfigStore, server_name: str) -> ServerDefinition:
    """Look up an enabled server definition or raise ServerNotFound."""
    server = store.get_server(server_name)
    if server is None:
        raise ServerNotFound(f'Server "{server_name}" not found in config.', server=server_name)
    if server.disabled:
        raise ServerNotFound(f'Server "{server_name}" is disabled.', server=server_name)
    return server


async def open_client(server: ServerDefinition, client_factory: ClientFactory) -> ProtocolClient:
    """Create and connect a client, normalizing failures to ConnectionFailed."""
    client = client_factory(server)
    try:
        await client.connect()
    except McpsError:
        raise
    except Exception as e:
        raise ConnectionFailed(
            f'Failed to connect to server "{server.name}": {e}', server=server.name
        ) from e
    return client


def _retrieve_exception(task: "asyncio.Task") -> None:
    # Failures reach every waiter; this keeps orphaned attempts from warning.
    if not task.cancelled():
        task.exception()


class ConnectionPool:
    """Lazily connected, shared MCP clients keyed by server name."""

    def __init__(self, store: ConfigStore, client_factory: Optional[ClientFactory] = None):
        self.store = store
        self._client_factory: ClientFactory = client_factory or ProtocolClient
        self._entries: Dict[str, PoolEntry] = {}
        self._cond = asyncio.Condition()
        self._leases = 0
        self._closing = False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, server_name: str) -> bool:
        return server_name in self._entries

    def snapshot(self) -> Dict[str, str]:
        """Current entry states by server name."""
        return {name: entry.state.value for name, entry in self._entries.items()}

    # ------------------------------------------------------------------
    # Shared / exclusive access
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _shared(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._closing)
            self._leases += 1
        try:
            yield
        finally:
            async with self._cond:
                self._leases -= 1
                self._cond.notify_all()

    @asynccontextmanager
    async def _exclusive(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._closing)
            # New leases queue behind us from here on
            self._closing = True
            try:
                await self._cond.wait_for(lambda: self._leases == 0)
            except BaseException:
                # Cancelled while draining: reopen the gate for queued callers
                self._closing = False
                self._cond.notify_all()
                raise
        try:
            yield
        finally:
            async with self._cond:
                self._closing = False
                self._cond.notify_all()

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get(self, server_name: str) -> ProtocolClient:
        """Return the pooled client for a server, connecting it if needed."""
        async with self._shared():
            server = resolve_server(self.store, server_name)
            return await self._acquire(server)

    @asynccontextmanager
    async def lease(self, server_name: str) -> AsyncIterator[ProtocolClient]:
        """
        Hold a client for the duration of one request.

        Keep-alive servers yield the pooled client. On-demand servers get a
        fresh connection that is closed on exit and never stored.
        """
        async with self._shared():
            server = resolve_server(self.store, server_name)
            if server.lifecycle == Lifecycle.ON_DEMAND:
                client = await open_client(server, self._client_factory)
                try:
                    yield client
                finally:
                    await self._close_quietly(server_name, client)
            else:
                yield await self._acquire(server)

    async def _acquire(self, server: ServerDefinition) -> ProtocolClient:
        # No await between the lookup and the insert, so one task per name.
        entry = self._entries.get(server.name)
        if entry is not None and entry.state == EntryState.READY:
            return entry.client

        if entry is None:
            entry = PoolEntry(server_name=server.name)
            entry.task = asyncio.create_task(self._connect(entry, server))
            entry.task.add_done_callback(_retrieve_exception)
            self._entries[server.name] = entry

        # Shielded: a waiter giving up must not cancel the shared attempt.
        return await asyncio.shield(entry.task)

    async def _connect(self, entry: PoolEntry, server: ServerDefinition) -> ProtocolClient:
        logger.info(f"Connecting to server: {server.name}...")
        try:
            client = await open_client(server, self._client_factory)
        except BaseException:
            entry.state = EntryState.FAILED
            if self._entries.get(server.name) is entry:
                del self._entries[server.name]
            raise

        entry.client = client
        entry.state = EntryState.READY
        logger.info(f"Connected to server: {server.name}")
        return client

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    async def close_all(self) -> None:
        """Close every pooled client. Individual close failures are logged, never raised."""
        async with self._exclusive():
            entries: List[PoolEntry] = list(self._entries.values())
            try:
                for entry in entries:
                    # Attempts orphaned by cancelled waiters still finish first
                    if entry.task is not None and not entry.task.done():
                        await asyncio.wait([entry.task])
                    if entry.state == EntryState.READY and entry.client is not None:
                        await self._close_quietly(entry.server_name, entry.client)
            finally:
                self._entries.clear()

    async def _close_quietly(self, server_name: str, client: ProtocolClient) -> None:
        logger.info(f"Closing connection to {server_name}...")
        try:
            await client.close()
        except Exception as e:
            logger.error(f"Error closing {server_name}: {e}")
