"""
Configuration store for server definitions.

Definitions live in <config_dir>/mcp.json using the standard MCP layout:

    {"mcpServers": {"<name>": {"command": "...", "args": [...]}}}

The file is read once on construction (and on reload()) and rewritten on every
mutation.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from mcps.core.errors import ConfigValidationError, ServerNotFound
from mcps.core.models import ServerDefinition

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "mcp.json"

# Keys that select the transport; setting one on update drops the others.
_STDIO_KEYS = ("command", "args", "env")
_URL_KEYS = ("url",)


def _validation_message(error: ValidationError) -> str:
    return "; ".join(err["msg"] for err in error.errors())


class ConfigStore:
    """Named server definitions backed by a JSON file."""

    def __init__(self, config_dir: Path):
        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / CONFIG_FILENAME
        self._servers: Dict[str, ServerDefinition] = {}
        self.reload()

    def reload(self) -> None:
        """Re-read the configuration file, replacing in-memory definitions."""
        self._servers = {}
        raw = self._read_file()
        if raw is None:
            return

        if "mcpServers" not in raw:
            if "servers" in raw:
                logger.warning(
                    f"Ignoring {self.config_file}: legacy 'servers' array format is not supported, "
                    "use the standard 'mcpServers' object"
                )
            return

        entries = raw["mcpServers"]
        if not isinstance(entries, dict):
            logger.warning(f"Ignoring {self.config_file}: 'mcpServers' must be an object")
            return

        for name, entry in entries.items():
            if not isinstance(entry, dict):
                logger.warning(f"Skipping server '{name}': definition must be an object")
                continue
            try:
                self._servers[name] = ServerDefinition(**{**entry, "name": name})
            except ValidationError as e:
                logger.warning(f"Skipping invalid server '{name}': {_validation_message(e)}")

    def _read_file(self) -> Optional[Dict[str, Any]]:
        if not self.config_file.exists():
            return None
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read {self.config_file}: {e}")
            return None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring {self.config_file}: top level must be an object")
            return None
        return data

    def save(self) -> None:
        """Write all definitions back to disk."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "mcpServers": {
                name: server.to_config_entry() for name, server in self._servers.items()
            }
        }
        tmp_file = self.config_file.with_suffix(".json.tmp")
        with open(tmp_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        tmp_file.replace(self.config_file)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_server(self, name: str) -> Optional[ServerDefinition]:
        return self._servers.get(name)

    def list_servers(self) -> List[ServerDefinition]:
        """All definitions, disabled ones included."""
        return list(self._servers.values())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_server(self, name: str, fields: Dict[str, Any]) -> ServerDefinition:
        if name in self._servers:
            raise ConfigValidationError(f'Server "{name}" already exists.', server=name)
        server = self._build(name, fields)
        self._servers[name] = server
        self.save()
        return server

    def remove_server(self, name: str) -> None:
        if name not in self._servers:
            raise ServerNotFound(f'Server "{name}" not found.', server=name)
        del self._servers[name]
        self.save()

    def update_server(self, name: str, updates: Dict[str, Any]) -> ServerDefinition:
        current = self._servers.get(name)
        if current is None:
            raise ServerNotFound(f'Server "{name}" not found.', server=name)

        fields = current.model_dump(exclude={"name"})
        if any(updates.get(key) is not None for key in _URL_KEYS):
            for key in _STDIO_KEYS:
                fields.pop(key, None)
            if fields.get("type") == "stdio":
                fields.pop("type")
        elif updates.get("command") is not None:
            for key in _URL_KEYS:
                fields.pop(key, None)
            if fields.get("type") in ("sse", "http"):
                fields.pop("type")
        fields.update({key: value for key, value in updates.items() if value is not None})

        server = self._build(name, fields)
        self._servers[name] = server
        self.save()
        return server

    def set_disabled(self, name: str, disabled: bool) -> ServerDefinition:
        return self.update_server(name, {"disabled": disabled})

    def _build(self, name: str, fields: Dict[str, Any]) -> ServerDefinition:
        try:
            return ServerDefinition(**{**fields, "name": name})
        except ValidationError as e:
            raise ConfigValidationError(
                f'Invalid server "{name}": {_validation_message(e)}', server=name
            ) from e
