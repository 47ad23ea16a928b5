from . import _compat as _compat  # noqa: F401  -- Python 3.14 sqlglot workaround

from .core import AggFunction, DType, DynamicTable, Field, RawTable, Schema
from .errors import (
    DependencyError,
    FreshtableError,
    QueryError,
    RecordValidationError,
    RefreshError,
    StalenessWarning,
)
from .pipeline import Pipeline, connect
from .refresh import RefreshAction, RefreshState

__all__ = [
    # core
    "RawTable",
    "DynamicTable",
    "Schema",
    "Field",
    "DType",
    "AggFunction",
    # errors
    "FreshtableError",
    "RecordValidationError",
    "DependencyError",
    "QueryError",
    "RefreshError",
    "StalenessWarning",
    # refresh
    "RefreshAction",
    "RefreshState",
    # pipeline
    "Pipeline",
    "connect",
]
