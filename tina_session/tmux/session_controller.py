"""
Tmux Session Controller Module

Thin process-control layer over tmux: create, inspect, feed input to and
tear down the named sessions that host each phase's agents.
"""

import logging
import subprocess
from pathlib import Path
from typing import List, Optional

from ..core.errors import ProcessControlError, SessionAlreadyExists

logger = logging.getLogger(__name__)

# stderr fragments that mean "there was nothing to kill"
_ALREADY_GONE = ("no server running", "session not found", "can't find session")


class ProcessController:
    """
    Capability interface for session control.

    The orchestration core only talks to this interface so it can run
    against an in-memory fake in tests.
    """

    def exists(self, name: str) -> bool:
        raise NotImplementedError

    def create(self, name: str, cwd: Path, command: Optional[str] = None) -> None:
        raise NotImplementedError

    def attach(self, name: str) -> None:
        raise NotImplementedError

    def send_keys(self, name: str, text: str) -> None:
        raise NotImplementedError

    def send_raw(self, name: str, text: str) -> None:
        raise NotImplementedError

    def capture(self, name: str, max_lines: int = 100) -> str:
        raise NotImplementedError

    def kill(self, name: str) -> None:
        raise NotImplementedError

    def list_sessions(self) -> List[str]:
        raise NotImplementedError


class TmuxSessionController(ProcessController):
    """
    Controls tmux sessions by shelling out to the ``tmux`` binary.

    Every failing command raises ProcessControlError carrying tmux's stderr;
    nothing is retried here.
    """

    def __init__(self, tmux_binary: str = 'tmux'):
        """
        Initialize tmux session controller.

        Args:
            tmux_binary: tmux executable name or path
        """
        self.tmux_binary = tmux_binary

    def exists(self, name: str) -> bool:
        """
        Check if a tmux session exists.

        Args:
            name: Session name to check

        Returns:
            bool: True if session exists
        """
        try:
            result = subprocess.run(
                [self.tmux_binary, 'has-session', '-t', name],
                capture_output=True, text=True
            )
        except OSError as e:
            raise ProcessControlError('has-session', str(e)) from e
        return result.returncode == 0

    def create(self, name: str, cwd: Path, command: Optional[str] = None) -> None:
        """
        Create a detached session rooted at ``cwd``.

        Args:
            name: Session name
            cwd: Working directory for the first window
            command: Optional command to run instead of the default shell

        Raises:
            SessionAlreadyExists: if tmux reports a duplicate session
        """
        args = ['new-session', '-d', '-s', name, '-c', str(cwd)]
        if command:
            args.append(command)
        try:
            self._run(args)
        except ProcessControlError as e:
            if 'duplicate session' in e.stderr.lower():
                raise SessionAlreadyExists(name) from e
            raise
        logger.info(f"Created tmux session {name} in {cwd}")

    def attach(self, name: str) -> None:
        """Attach the current terminal to a session; returns when the user detaches."""
        try:
            result = subprocess.run([self.tmux_binary, 'attach-session', '-t', name])
        except OSError as e:
            raise ProcessControlError('attach-session', str(e)) from e
        if result.returncode != 0:
            raise ProcessControlError('attach-session', f"exit status {result.returncode}")

    def send_keys(self, name: str, text: str) -> None:
        """Type ``text`` into the session and press Enter."""
        self._run(['send-keys', '-t', name, text, 'Enter'])

    def send_raw(self, name: str, text: str) -> None:
        """Type ``text`` into the session without pressing Enter."""
        self._run(['send-keys', '-t', name, text])

    def capture(self, name: str, max_lines: int = 100) -> str:
        """
        Capture recent pane output.

        Args:
            name: Session name
            max_lines: Scrollback lines to include

        Returns:
            str: Captured text
        """
        return self._run(['capture-pane', '-p', '-t', name, '-S', f'-{max_lines}'])

    def kill(self, name: str) -> None:
        """Kill a session. A session that is already gone is not an error."""
        try:
            self._run(['kill-session', '-t', name])
        except ProcessControlError as e:
            if any(marker in e.stderr.lower() for marker in _ALREADY_GONE):
                logger.debug(f"Session {name} already gone")
                return
            raise
        logger.info(f"Killed tmux session {name}")

    def list_sessions(self) -> List[str]:
        """
        List active session names.

        Returns:
            List of names; empty when no tmux server is running
        """
        try:
            output = self._run(['list-sessions', '-F', '#{session_name}'])
        except ProcessControlError:
            return []
        return [line for line in output.splitlines() if line.strip()]

    def _run(self, args: List[str]) -> str:
        try:
            result = subprocess.run(
                [self.tmux_binary] + args, capture_output=True, text=True
            )
        except OSError as e:
            raise ProcessControlError(args[0], str(e)) from e

        if result.returncode != 0:
            raise ProcessControlError(args[0], result.stderr or f"exit status {result.returncode}")
        return result.stdout
