from .registry import SqliteRegistry

__all__ = ["SqliteRegistry"]
