import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ============================================================================
# Server Definitions
# ============================================================================

class ServerKind(str, Enum):
    STDIO = "stdio"
    SSE = "sse"
    HTTP = "http"


class Lifecycle(str, Enum):
    """Connection policy for a server."""
    KEEP_ALIVE = "keep-alive"
    ON_DEMAND = "on-demand"


class ServerDefinition(BaseModel):
    """A named description of how to reach one MCP server."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    name: str
    type: Optional[ServerKind] = None
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    url: Optional[str] = None
    disabled: bool = False
    lifecycle: Lifecycle = Lifecycle.KEEP_ALIVE

    @field_validator("name")
    @classmethod
    def _non_empty_name(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Server name must not be empty")
        return value

    @field_validator("args", mode="before")
    @classmethod
    def _null_args(cls, value: Any) -> Any:
        return [] if value is None else value

    @model_validator(mode="after")
    def _check_transport(self) -> "ServerDefinition":
        if self.command and self.url:
            raise ValueError("Specify either a command (stdio) or a url (sse/http), not both")
        if not self.command and not self.url:
            raise ValueError("Either a command (stdio) or a url (sse/http) is required")
        if self.type == ServerKind.STDIO and not self.command:
            raise ValueError("Command is required for stdio servers")
        if self.type in (ServerKind.SSE, ServerKind.HTTP) and not self.url:
            raise ValueError(f"URL is required for {self.type.value} servers")
        return self

    @property
    def kind(self) -> ServerKind:
        if self.type is not None:
            return self.type
        return detect_server_kind(command=self.command, url=self.url)

    @property
    def target(self) -> str:
        """Command line or URL, for display."""
        if self.command:
            return " ".join([self.command, *self.args])
        return self.url or ""

    def to_config_entry(self) -> Dict[str, Any]:
        """Serialize to an mcpServers entry (the name is the mapping key)."""
        entry = self.model_dump(mode="json", exclude={"name"}, exclude_none=True)
        if not entry.get("disabled"):
            entry.pop("disabled", None)
        if entry.get("lifecycle") == Lifecycle.KEEP_ALIVE.value:
            entry.pop("lifecycle", None)
        if self.url:
            entry.pop("args", None)
        return entry


def detect_server_kind(command: Optional[str] = None, url: Optional[str] = None) -> ServerKind:
    if command:
        return ServerKind.STDIO
    if url and urlparse(url).path.rstrip("/").endswith("/sse"):
        return ServerKind.SSE
    return ServerKind.HTTP


# ============================================================================
# Pool Entries
# ============================================================================

class EntryState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


@dataclass
class PoolEntry:
    """The pool's record of one live or in-progress connection."""
    server_name: str
    state: EntryState = EntryState.CONNECTING
    client: Optional[Any] = None
    task: Optional["asyncio.Task[Any]"] = None
