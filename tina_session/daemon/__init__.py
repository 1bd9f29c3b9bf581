"""Background sync of local orchestration state into the remote store."""

__all__ = ["process", "sync_loop"]
