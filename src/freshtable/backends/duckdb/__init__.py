from .backend import DuckDBBackend

__all__ = ["DuckDBBackend"]
