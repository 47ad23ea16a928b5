"""Record validation for raw table ingestion.

Each raw table's Schema is turned into a pydantic model; every incoming
record is validated against it, then primary key and ``unique`` columns are
checked against the store and the rest of the batch. Validation is all or
nothing: one bad record rejects the whole batch.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any, Literal, Optional

import pyarrow as pa
import pydantic as pdt

import freshtable.core as core
import freshtable.errors as errors
import freshtable.types as types

Records = pa.Table | Iterable[Mapping[str, Any]]

_NUMERIC = {"int64", "int32", "float64"}


def build_record_model(table: core.RawTable) -> type[pdt.BaseModel]:
    """Create a pydantic model enforcing the raw table's Field constraints."""
    definitions: dict[str, Any] = {}
    for name, f in table.schema_.fields():
        annotation: Any = types.PYTHON_TYPES[f.dtype]
        if f.allowed_values is not None:
            annotation = Literal[tuple(f.allowed_values)]
        # A closed set of values never includes null.
        required = f.not_null or f.allowed_values is not None
        if not required:
            annotation = Optional[annotation]

        bounds: dict[str, Any] = {}
        if f.dtype in _NUMERIC:
            bounds = {"gt": f.gt, "ge": f.ge, "lt": f.lt, "le": f.le}
        if f.dtype == "float64":
            bounds["allow_inf_nan"] = False
        default = ... if required else None
        definitions[name] = (annotation, pdt.Field(default, **bounds))

    return pdt.create_model(
        f"{table.name}_record",
        __config__=pdt.ConfigDict(extra="forbid"),
        **definitions,
    )


def unique_columns(table: core.RawTable) -> list[str]:
    """Primary key first, then any other ``unique`` fields."""
    columns = [table.primary_key] if table.primary_key else []
    columns.extend(
        name
        for name, f in table.schema_.fields()
        if f.unique and name not in columns
    )
    return columns


def validate_records(
    table: core.RawTable,
    records: Records,
    existing: pa.Table | None = None,
) -> pa.Table:
    """Validate a batch and return it as an Arrow table in schema order.

    Args:
        table: Raw table the records are destined for.
        records: Mappings or an Arrow table.
        existing: Rows already in the store, used for uniqueness checks.

    Raises:
        RecordValidationError: If any record is invalid. Lists every
            offending row; nothing from the batch should be written.
    """
    rows = records.to_pylist() if isinstance(records, pa.Table) else list(records)
    model = build_record_model(table)

    seen: dict[str, set] = {}
    for column in unique_columns(table):
        values = (
            existing.column(column).to_pylist()
            if existing is not None and column in existing.column_names
            else []
        )
        seen[column] = {v for v in values if v is not None}

    issues: list[tuple[int, str]] = []
    valid: list[dict[str, Any]] = []
    for idx, raw in enumerate(rows):
        try:
            record = model.model_validate(dict(raw))
        except pdt.ValidationError as exc:
            issues.append((idx, _format_validation_errors(exc)))
            continue

        row = record.model_dump()
        duplicate = False
        for column, values in seen.items():
            value = row.get(column)
            if value is None:
                continue
            if value in values:
                issues.append((idx, f"{column}: duplicate value {value!r}"))
                duplicate = True
        if duplicate:
            continue
        for column, values in seen.items():
            if row.get(column) is not None:
                values.add(row[column])
        valid.append(row)

    if issues:
        raise errors.RecordValidationError(table.name, issues)

    return pa.Table.from_pylist(valid, schema=table.arrow_schema())


def _format_validation_errors(error: pdt.ValidationError) -> str:
    """Collapse pydantic errors for one record into a single line."""
    parts = []
    for err in error.errors():
        loc = ".".join(str(x) for x in err["loc"]) or "(record)"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)
