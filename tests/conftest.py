"""Shared fixtures: a temporary config store and an in-memory protocol client."""

import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from mcps.config import Settings
from mcps.core.errors import ConnectionFailed, ToolInvocationError
from mcps.core.models import ServerDefinition
from mcps.core.store import ConfigStore

ALPHA_TOOLS = [
    {
        "name": "echo",
        "description": "Echo the input back",
        "inputSchema": {
            "type": "object",
            "properties": {"text": {"type": "string", "description": "Text to echo"}},
            "required": ["text"],
        },
    },
    {"name": "sometool", "inputSchema": {"type": "object"}},
]


class FakeProtocolClient:
    """Stands in for ProtocolClient; records what the pool does with it."""

    def __init__(self, server: ServerDefinition, registry: "FakeRegistry"):
        self.server = server
        self.registry = registry
        self.connected = False
        self.closed = False
        registry.created.append(self)

    @property
    def name(self) -> str:
        return self.server.name

    async def connect(self) -> "FakeProtocolClient":
        self.registry.connect_attempts[self.name] = self.registry.connect_attempts.get(self.name, 0) + 1
        gate = self.registry.gates.get(self.name)
        if gate is not None:
            await gate.wait()
        if self.name in self.registry.fail_connect:
            raise ConnectionFailed(f'Failed to connect to server "{self.name}": boom', server=self.name)
        self.connected = True
        return self

    async def list_tools(self) -> List[Dict[str, Any]]:
        return list(self.registry.tools.get(self.name, []))

    async def call_tool(self, tool: str, arguments: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.registry.calls.append((self.name, tool, arguments or {}))
        if tool == "explode":
            raise ToolInvocationError(f'Tool "{tool}" failed on "{self.name}": kaboom', server=self.name)
        return {
            "content": [{"type": "text", "text": f"{tool} ok"}],
            "isError": False,
        }

    async def close(self) -> None:
        if self.name in self.registry.fail_close:
            raise RuntimeError(f"close failed for {self.name}")
        self.closed = True
        self.connected = False

    async def __aenter__(self) -> "FakeProtocolClient":
        return await self.connect()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class FakeRegistry:
    """Factory plus bookkeeping for FakeProtocolClient instances."""

    def __init__(self):
        self.created: List[FakeProtocolClient] = []
        self.connect_attempts: Dict[str, int] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.fail_connect: set = set()
        self.fail_close: set = set()
        self.calls: List[tuple] = []
        self.tools: Dict[str, List[Dict[str, Any]]] = {"alpha": ALPHA_TOOLS, "beta": [{"name": "b"}]}

    def __call__(self, server: ServerDefinition) -> FakeProtocolClient:
        return FakeProtocolClient(server, self)

    def clients_for(self, name: str) -> List[FakeProtocolClient]:
        return [c for c in self.created if c.name == name]


@pytest.fixture
def fake_clients() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    config = {
        "mcpServers": {
            "alpha": {"command": "echo", "args": ["hi"]},
            "beta": {"url": "http://localhost:3000/mcp"},
            "gamma": {"command": "node", "args": [], "disabled": True},
            "delta": {"command": "node", "args": ["server.js"], "lifecycle": "on-demand"},
        }
    }
    (tmp_path / "mcp.json").write_text(json.dumps(config))
    return tmp_path


@pytest.fixture
def store(config_dir: Path) -> ConfigStore:
    return ConfigStore(config_dir)


@pytest.fixture
def settings(config_dir: Path) -> Settings:
    return Settings(config_dir=config_dir, port=4999, startup_timeout=0.2, auto_start=True)
