"""
mcps Configuration

This module manages CLI and daemon configuration via environment variables and
the ~/.mcps/.env file.

Configuration is loaded from:
1. Environment variables (prefixed with MCPS_)
2. ~/.mcps/.env file

Key settings:
- MCPS_PORT: Port the broker daemon listens on (default: 4100)
- MCPS_CONFIG_DIR: Directory holding mcp.json and the daemon PID/log files
- MCPS_VERBOSE: Log every tool request/response in the daemon ("true" only)
- MCPS_DAEMON_ENABLED: Route commands through the daemon (default: true)
- MCPS_AUTO_START: Start the daemon in the background when it isn't running
"""

import logging
from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".mcps"
DEFAULT_PORT = 4100


class Settings(BaseSettings):
    """mcps configuration settings."""

    app_name: str = "mcps"

    # Broker daemon
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    daemon_enabled: bool = True
    auto_start: bool = True
    startup_timeout: float = 10.0

    # Downstream connections
    connect_timeout: Optional[float] = None

    # Configuration store location
    config_dir: Path = DEFAULT_CONFIG_DIR

    # Logging
    verbose: bool = False
    log_level: str = "WARNING"

    model_config = SettingsConfigDict(
        env_prefix="MCPS_",
        env_file=DEFAULT_CONFIG_DIR / ".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("verbose", mode="before")
    @classmethod
    def _strict_verbose(cls, value) -> bool:
        # Only the literal "true" turns verbose call logging on.
        if isinstance(value, str):
            return value == "true"
        return bool(value)

    @field_validator("config_dir", mode="before")
    @classmethod
    def _expand_config_dir(cls, value) -> Path:
        return Path(value).expanduser()

    @property
    def daemon_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def config_file(self) -> Path:
        return self.config_dir / "mcp.json"

    @property
    def pid_file(self) -> Path:
        return self.config_dir / "daemon.pid"

    @property
    def log_file(self) -> Path:
        return self.config_dir / "daemon.log"

    def ensure_config_dir(self) -> None:
        """Ensure the configuration directory exists."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
