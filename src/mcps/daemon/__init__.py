"""
mcps Daemon Package - Connection broker for MCP servers.

The daemon provides:
- A pool of live MCP connections shared by every CLI invocation
- A loopback-only control API (list tools, call tool, restart connections)
- Lazy reconnects after a restart or a failed connection attempt

Key principle: every command still works without the daemon by falling back to
a direct, single-use connection.

Components:
- server.py: FastAPI server running on localhost
- client.py: Client for CLI to communicate with daemon
- manager.py: Process lifecycle management (start/stop/status/ensure_reachable)
- bootstrap.py: Daemon-or-direct routing used by commands
"""

from .bootstrap import DaemonBootstrap, open_standalone
from .client import DaemonClient
from .manager import DaemonManager

__all__ = ["DaemonBootstrap", "DaemonClient", "DaemonManager", "open_standalone"]
