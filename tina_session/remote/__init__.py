"""Remote orchestration store: interface, HTTP client and in-memory fake."""

__all__ = ["http_store", "memory_store", "store"]
