"""Buffered, batching row writer for ClickHouse over its HTTP interface."""

__version__ = "0.1.0"

__all__ = ["connection", "metrics", "storage", "structmap"]