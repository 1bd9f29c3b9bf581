"""Phase status watching."""

__all__ = ["status_watcher"]
