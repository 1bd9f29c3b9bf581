"""
Error Taxonomy Module

Exception hierarchy shared by every tina-session component. Callers catch
``TinaError`` for anything raised deliberately by this package and
``NotFoundError`` when an absent feature/session/record needs its own exit code.
"""

from typing import Optional


class TinaError(Exception):
    """Base class for all tina-session errors."""


class ProcessControlError(TinaError):
    """A tmux command failed or could not be spawned."""

    def __init__(self, command: str, stderr: str):
        self.command = command
        self.stderr = stderr.strip()
        super().__init__(f"tmux {command} failed: {self.stderr}")


class WaitTimeout(TinaError):
    """A bounded wait exceeded its budget."""

    def __init__(self, seconds: float, message: Optional[str] = None):
        self.seconds = seconds
        super().__init__(message or f"Timed out after {_format_secs(seconds)} seconds")


class ClaudeNotReady(WaitTimeout):
    """The agent prompt never appeared in the session."""

    def __init__(self, seconds: float):
        super().__init__(seconds, f"Claude not ready after {_format_secs(seconds)} seconds")


class InvalidTransition(TinaError):
    """Requested status change is not in the transition table."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid status transition: cannot go from '{from_status}' to '{to_status}'"
        )


class InvalidStatus(TinaError):
    """A status string does not name a known status."""

    def __init__(self, value: str, valid: str):
        self.value = value
        super().__init__(f"Invalid status value: '{value}'. Valid values: {valid}")


class InvalidName(TinaError):
    """Feature or phase token rejected by validation."""


class NotFoundError(TinaError):
    """Something the caller asked for does not exist."""


class NotInitialized(NotFoundError):
    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Feature '{feature}' not initialized. Run 'init' first")


class SessionNotFound(NotFoundError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Session '{name}' not found")


class PhaseNotFound(NotFoundError):
    def __init__(self, phase: str, total: int):
        self.phase = phase
        self.total = total
        super().__init__(f"Phase {phase} does not exist (total phases: {total})")


class ArtifactNotFound(NotFoundError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"File not found: {path}")


class DesignNotFound(NotFoundError):
    def __init__(self, design_id: str):
        super().__init__(f"Design '{design_id}' not found")


class TicketNotFound(NotFoundError):
    def __init__(self, ticket_id: str):
        super().__init__(f"Ticket '{ticket_id}' not found")


class AlreadyInitialized(TinaError):
    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(f"Feature '{feature}' already initialized. Run 'cleanup' first")


class SessionAlreadyExists(TinaError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Session '{name}' already exists")


class RemoteStoreError(TinaError):
    """The remote orchestration store rejected a call or was unreachable."""


class GitError(TinaError):
    """A git query or worktree operation failed."""


class ConfigError(TinaError):
    """Configuration file missing required values or malformed."""


class DaemonError(TinaError):
    """Daemon could not be started, stopped, or located."""


def _format_secs(seconds: float) -> str:
    if float(seconds).is_integer():
        return str(int(seconds))
    return f"{seconds:g}"
