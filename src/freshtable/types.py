"""Column type vocabulary shared by schemas, ingestion and the compiler.

PyArrow is the interchange format for every freshtable operation; ibis
types are only used when building expressions.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import Literal

import pyarrow as pa

DType = Literal[
    "int64",
    "int32",
    "float64",
    "string",
    "bool",
    "datetime",
    "date",
]

# microsecond precision, matching what DuckDB hands back through ibis
ARROW_TYPES: dict[str, pa.DataType] = {
    "int64": pa.int64(),
    "int32": pa.int32(),
    "float64": pa.float64(),
    "string": pa.string(),
    "bool": pa.bool_(),
    "datetime": pa.timestamp("us"),
    "date": pa.date32(),
}

IBIS_TYPES: dict[str, str] = {
    "int64": "int64",
    "int32": "int32",
    "float64": "float64",
    "string": "string",
    "bool": "boolean",
    "datetime": "timestamp",
    "date": "date",
}

PYTHON_TYPES: dict[str, type] = {
    "int64": int,
    "int32": int,
    "float64": float,
    "string": str,
    "bool": bool,
    "datetime": datetime,
    "date": date,
}
