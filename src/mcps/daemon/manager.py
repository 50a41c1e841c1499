"""
mcps Daemon Manager - Process lifecycle management for the broker daemon.

Provides start/stop/status operations for the daemon process and the
ensure_reachable() bootstrap used by every command that talks to it.
The daemon runs as a detached background process and writes its PID to a file
for management.
"""

import asyncio
import logging
import os
import signal
import subprocess
import sys
import time
from typing import Any, Dict, Optional

from mcps.config import Settings
from mcps.core.errors import DaemonUnavailable

from .client import DaemonClient

logger = logging.getLogger(__name__)

# Liveness poll schedule while a freshly spawned daemon starts
POLL_INITIAL_DELAY = 0.1
POLL_MAX_DELAY = 1.0


class DaemonManager:
    """
    Manages the mcps daemon process lifecycle.

    The daemon runs as a background process on localhost. This manager handles:
    - Starting the daemon (with or without foreground mode)
    - Stopping the daemon gracefully
    - Checking daemon status
    - Making sure a daemon answers before a command forwards to it
    """

    def __init__(self, settings: Optional[Settings] = None, client: Optional[DaemonClient] = None):
        """
        Initialize daemon manager.

        Args:
            settings: Settings holding port, config directory and startup timeout
            client: Control API client (defaults to one for settings.daemon_url)
        """
        self.settings = settings or Settings()
        self.port = self.settings.port
        self.pid_file = self.settings.pid_file
        self.log_file = self.settings.log_file
        self.client = client or DaemonClient(self.settings.daemon_url)

    def _read_pid(self) -> Optional[int]:
        """Read PID from file, returns None if not found or invalid."""
        if not self.pid_file.exists():
            return None

        try:
            with open(self.pid_file, "r") as f:
                pid_str = f.read().strip()
                if pid_str:
                    return int(pid_str)
        except (ValueError, IOError) as e:
            logger.debug(f"Error reading PID file: {e}")

        return None

    def _write_pid(self, pid: int) -> None:
        """Write PID to file."""
        self.settings.ensure_config_dir()
        with open(self.pid_file, "w") as f:
            f.write(str(pid))

    def _remove_pid(self) -> None:
        """Remove PID file."""
        if self.pid_file.exists():
            try:
                self.pid_file.unlink()
            except IOError as e:
                logger.debug(f"Error removing PID file: {e}")

    def _is_process_running(self, pid: int) -> bool:
        """Check if a process with given PID is running."""
        try:
            os.kill(pid, 0)  # Signal 0 doesn't kill, just checks
            return True
        except OSError:
            return False

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    def _spawn(self) -> subprocess.Popen:
        """Start the daemon server module as a detached background process."""
        cmd = [sys.executable, "-m", "mcps.daemon.server"]
        env = {
            **os.environ,
            "MCPS_HOST": self.settings.host,
            "MCPS_PORT": str(self.port),
            "MCPS_CONFIG_DIR": str(self.settings.config_dir),
        }

        self.settings.ensure_config_dir()
        with open(self.log_file, "a") as log:
            log.write(f"\n{'=' * 60}\n")
            log.write(f"Starting daemon at {time.strftime('%Y-%m-%d %H:%M:%S')}\n")
            log.write(f"Command: {' '.join(cmd)}\n")
            log.write(f"{'=' * 60}\n")
            log.flush()

            process = subprocess.Popen(
                cmd,
                stdout=log,
                stderr=log,
                stdin=subprocess.DEVNULL,
                start_new_session=True,  # Detach from parent
                cwd=str(self.settings.config_dir),
                env=env,
            )

        logger.debug(f"Spawned daemon process {process.pid} on port {self.port}")
        return process

    async def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Poll the health endpoint with backoff until it answers or the timeout elapses."""
        timeout = self.settings.startup_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        delay = POLL_INITIAL_DELAY

        while True:
            if await self.client.is_running():
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, POLL_MAX_DELAY)

    async def _wait_and_record_pid(self) -> bool:
        """
        Wait for a daemon to answer, then record the PID it reports.

        Concurrent spawns race for the port and the losers exit, so the PID
        file names whichever process answers /health, not the one we started.
        """
        if not await self.wait_until_ready():
            return False
        status = await self.client.get_status()
        if status.pid:
            self._write_pid(status.pid)
        return True

    async def ensure_reachable(self) -> None:
        """
        Make sure a daemon answers on the control port.

        Starts one in the background when nothing is listening.

        Raises:
            DaemonUnavailable: the daemon could not be started or did not answer in time.
        """
        if await self.client.is_running():
            return

        try:
            self._spawn()
        except OSError as e:
            raise DaemonUnavailable(f"Failed to start daemon: {e}") from e

        if not await self._wait_and_record_pid():
            raise DaemonUnavailable(
                f"Daemon did not answer on port {self.port} within "
                f"{self.settings.startup_timeout:.0f}s. Check {self.log_file}"
            )

    # ------------------------------------------------------------------
    # Lifecycle commands
    # ------------------------------------------------------------------

    def start(self, foreground: bool = False) -> Dict[str, Any]:
        """
        Start the daemon process.

        Args:
            foreground: If True, run in foreground (blocking). If False, run as background process.

        Returns:
            Dict with success, message, and pid (if background).
        """
        # Check if already running
        if asyncio.run(self.client.is_running()):
            return {
                "success": False,
                "message": f"Daemon is already running on port {self.port}",
                "pid": self._read_pid(),
            }

        # Check for stale PID file
        old_pid = self._read_pid()
        if old_pid and not self._is_process_running(old_pid):
            logger.info(f"Removing stale PID file (process {old_pid} not running)")
            self._remove_pid()

        self.settings.ensure_config_dir()

        if foreground:
            return self._run_foreground()
        return self._run_background()

    def _run_foreground(self) -> Dict[str, Any]:
        """Run daemon in foreground mode (blocking)."""
        from .server import run_server

        try:
            self._write_pid(os.getpid())

            # This blocks until the server is stopped
            run_server(host=self.settings.host, port=self.port)

            return {
                "success": True,
                "message": "Daemon stopped",
                "pid": None,
            }
        except KeyboardInterrupt:
            return {
                "success": True,
                "message": "Daemon stopped by user",
                "pid": None,
            }
        finally:
            self._remove_pid()

    def _run_background(self) -> Dict[str, Any]:
        """Run daemon as background process."""
        try:
            process = self._spawn()
        except OSError as e:
            return {
                "success": False,
                "message": f"Failed to start daemon: {e}",
                "pid": None,
            }

        if asyncio.run(self._wait_and_record_pid()):
            return {
                "success": True,
                "message": f"Daemon started on port {self.port}",
                "pid": self._read_pid(),
            }

        return {
            "success": False,
            "message": f"Daemon started but not responding. Check {self.log_file}",
            "pid": process.pid,
        }

    def stop(self) -> Dict[str, Any]:
        """
        Stop the daemon process.

        Returns:
            Dict with success and message.
        """
        pid = self._read_pid()

        if not pid:
            return {
                "success": False,
                "message": "No PID file found - daemon may not be running",
            }

        if not self._is_process_running(pid):
            self._remove_pid()
            return {
                "success": True,
                "message": "Daemon was not running (cleaned up stale PID file)",
            }

        # Try graceful shutdown with SIGTERM
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as e:
            self._remove_pid()
            return {
                "success": False,
                "message": f"Failed to send SIGTERM: {e}",
            }

        # Wait for process to exit
        for _ in range(30):  # Wait up to 3 seconds
            if not self._is_process_running(pid):
                self._remove_pid()
                return {
                    "success": True,
                    "message": "Daemon stopped gracefully",
                }
            time.sleep(0.1)

        # Force kill if still running
        try:
            os.kill(pid, signal.SIGKILL)
            time.sleep(0.1)
            self._remove_pid()
            return {
                "success": True,
                "message": "Daemon force killed (SIGKILL)",
            }
        except OSError as e:
            return {
                "success": False,
                "message": f"Failed to kill daemon: {e}",
            }

    def status(self) -> Dict[str, Any]:
        """
        Get daemon status.

        Returns:
            Dict with running state and details.
        """
        pid = self._read_pid()
        daemon_status = asyncio.run(self.client.get_status())

        if daemon_status.running:
            return {
                "running": True,
                "pid": daemon_status.pid or pid,
                "port": self.port,
                "uptime_seconds": daemon_status.uptime_seconds,
                "connections": daemon_status.connections,
            }

        # Check if process exists but isn't responding
        if pid and self._is_process_running(pid):
            return {
                "running": False,
                "pid": pid,
                "port": self.port,
                "message": "Process exists but not responding",
                "error": daemon_status.error,
            }

        if pid:
            self._remove_pid()
        return {
            "running": False,
            "pid": None,
            "port": self.port,
            "message": "Daemon not running",
        }

    def restart(self) -> Dict[str, Any]:
        """
        Restart the daemon process.

        Returns:
            Dict with success and message.
        """
        stop_result = self.stop()
        if not stop_result.get("success", False) and "not running" not in stop_result.get("message", "").lower():
            return stop_result

        # Small delay before restart
        time.sleep(0.5)

        return self.start(foreground=False)
