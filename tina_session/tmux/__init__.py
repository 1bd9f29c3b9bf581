"""tmux session control and agent readiness detection."""

__all__ = ["readiness", "session_controller"]
