"""Clock, configuration and file helpers."""

__all__ = ["clock", "config_loader", "file_utils"]
