"""Command-line interface."""

__all__ = ["commands"]
