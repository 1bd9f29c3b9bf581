"""
Daemon Process Module

Start, stop and inspect the background sync daemon through a PID file.
Liveness is checked with psutil so a PID file left behind by a crashed
daemon is detected and removed instead of blocking a new start.
"""

import logging
import os
import signal
import subprocess
import sys
from pathlib import Path
from typing import List, Optional

import psutil

from ..core.errors import DaemonError
from ..utils.file_utils import FileUtils

logger = logging.getLogger(__name__)

STOP_TIMEOUT_SECS = 10


class DaemonProcess:
    """
    PID-file based control of the sync daemon.

    Features:
    - Stale PID detection and cleanup
    - Detached start in a new session
    - Graceful SIGTERM stop with a bounded wait
    """

    def __init__(self, pid_file: Path):
        """
        Initialize daemon process control.

        Args:
            pid_file: Where the running daemon records its PID
        """
        self.pid_file = Path(pid_file)

    def read_pid(self) -> Optional[int]:
        try:
            return int(self.pid_file.read_text(encoding='utf-8').strip())
        except (FileNotFoundError, ValueError):
            return None

    def status(self) -> Optional[int]:
        """
        PID of the running daemon.

        Returns:
            The PID, or None when not running (a stale PID file is removed)
        """
        pid = self.read_pid()
        if pid is None:
            return None

        if self._is_alive(pid):
            return pid

        logger.warning(f"Removing stale daemon PID file for process {pid}")
        FileUtils.remove_if_exists(self.pid_file)
        return None

    def start(self, extra_args: Optional[List[str]] = None,
              global_args: Optional[List[str]] = None) -> int:
        """
        Spawn ``tina-session daemon run`` detached from this terminal.

        Args:
            extra_args: Options for ``daemon run`` itself
            global_args: Options placed before the ``daemon`` subcommand

        Returns:
            int: PID of the new daemon

        Raises:
            DaemonError: if a daemon is already running or spawn fails
        """
        running = self.status()
        if running is not None:
            raise DaemonError(f"Daemon already running (pid {running})")

        command = [sys.executable, '-m', 'tina_session.cli.commands']
        command.extend(global_args or [])
        command.extend(['daemon', 'run'])
        command.extend(extra_args or [])

        # The daemon writes its own log file once logging is configured
        try:
            process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        except OSError as e:
            raise DaemonError(f"Failed to start daemon: {e}") from e

        logger.info(f"Started daemon (pid {process.pid})")
        return process.pid

    def stop(self, timeout: float = STOP_TIMEOUT_SECS) -> bool:
        """
        Send SIGTERM and wait for the daemon to exit.

        Returns:
            bool: False if no daemon was running

        Raises:
            DaemonError: if the daemon is still alive after ``timeout``
        """
        pid = self.status()
        if pid is None:
            return False

        try:
            process = psutil.Process(pid)
            process.send_signal(signal.SIGTERM)
            process.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            pass
        except psutil.TimeoutExpired:
            raise DaemonError(f"Daemon (pid {pid}) did not exit within {timeout}s")
        except psutil.AccessDenied as e:
            raise DaemonError(f"Not allowed to stop daemon (pid {pid}): {e}") from e

        FileUtils.remove_if_exists(self.pid_file)
        logger.info(f"Stopped daemon (pid {pid})")
        return True

    def run_foreground(self, sync, interval_secs: float) -> None:
        """
        Run the sync loop in this process until SIGINT/SIGTERM.

        Args:
            sync: DaemonSync instance
            interval_secs: Seconds between cycles
        """
        def _signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, shutting down gracefully...")
            sync.stop()

        self.write_pid()
        signal.signal(signal.SIGINT, _signal_handler)
        signal.signal(signal.SIGTERM, _signal_handler)
        try:
            sync.run(interval_secs)
        finally:
            self.clear_pid()

    def write_pid(self) -> None:
        """Record the current process as the running daemon."""
        running = self.status()
        if running is not None and running != os.getpid():
            raise DaemonError(f"Daemon already running (pid {running})")
        FileUtils.write_text_atomic(self.pid_file, f"{os.getpid()}\n")

    def clear_pid(self) -> None:
        if self.read_pid() == os.getpid():
            FileUtils.remove_if_exists(self.pid_file)

    @staticmethod
    def _is_alive(pid: int) -> bool:
        if not psutil.pid_exists(pid):
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True
