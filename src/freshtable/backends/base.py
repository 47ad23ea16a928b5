"""Base classes for freshtable backends.

A registry stores definitions, refresh history and scheduling status. A
backend stores table snapshots and executes ibis expressions. Each
environment in freshtable.yaml picks one of each.
"""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

import pyarrow as pa
import pydantic as pdt

import freshtable.formats as formats

if TYPE_CHECKING:
    import ibis

    import freshtable.registry as registry
    import freshtable.snapshot as snapshot


class BaseRegistry(pdt.BaseModel, strict=True, frozen=True, extra="forbid"):
    """Registry backend interface.

    Methods raise NotImplementedError so configuration can be loaded
    for kinds that only implement a subset.
    """

    def initialize(self) -> None:
        """Create tables if they don't exist. Idempotent."""
        raise NotImplementedError("Registry.initialize() not implemented")

    def get_object(self, kind: str, name: str) -> "registry.ObjectRecord | None":
        """Fetch a single definition by kind and name."""
        raise NotImplementedError("Registry.get_object() not implemented")

    def list_objects(self, kind: str | None = None) -> "list[registry.ObjectRecord]":
        """List all definitions, optionally filtered by kind."""
        raise NotImplementedError("Registry.list_objects() not implemented")

    def put_object(self, obj: "registry.ObjectRecord", applied_by: str) -> None:
        """Upsert a definition and log the change.

        If the object exists (same kind/name), increments version and logs
        "update". Otherwise sets version=1 and logs "create".
        """
        raise NotImplementedError("Registry.put_object() not implemented")

    def delete_object(self, kind: str, name: str, applied_by: str) -> None:
        """Delete a definition and log the change."""
        raise NotImplementedError("Registry.delete_object() not implemented")

    def get_meta(self, key: str) -> str | None:
        raise NotImplementedError("Registry.get_meta() not implemented")

    def set_meta(self, key: str, value: str) -> None:
        raise NotImplementedError("Registry.set_meta() not implemented")

    def get_changelog(self, limit: int = 100) -> "list[registry.ChangelogEntry]":
        """Get recent changelog entries, newest first."""
        raise NotImplementedError("Registry.get_changelog() not implemented")

    def put_refresh_record(self, record: "registry.RefreshRecord") -> None:
        """Store one refresh attempt."""
        raise NotImplementedError("Registry.put_refresh_record() not implemented")

    def get_refresh_history(
        self, table_name: str | None = None, limit: int = 20
    ) -> "list[registry.RefreshRecord]":
        """Get recent refresh records, newest first, optionally for one table."""
        raise NotImplementedError("Registry.get_refresh_history() not implemented")

    def get_latest_refresh(self, table_name: str) -> "registry.RefreshRecord | None":
        """Get the most recent refresh record for a table."""
        raise NotImplementedError("Registry.get_latest_refresh() not implemented")

    def get_status(self, table_name: str) -> "registry.TableStatus | None":
        """Get the scheduling status of a dynamic table."""
        raise NotImplementedError("Registry.get_status() not implemented")

    def put_status(self, status: "registry.TableStatus") -> None:
        """Upsert the scheduling status of a dynamic table."""
        raise NotImplementedError("Registry.put_status() not implemented")


class BaseBackend(pdt.BaseModel, strict=True, frozen=True, extra="forbid"):
    """Backend interface -- storage and compute for one deployment target.

    The backend wraps an ibis connection (compute) and delegates snapshot
    I/O to a format (storage). The ``format`` field accepts a string
    shorthand (``format: parquet``) or a dict with options.
    """

    kind: str
    format: formats.FormatKind = formats.ParquetFormat()

    @pdt.model_validator(mode="before")
    @classmethod
    def _coerce_format_string(cls, data: Any) -> Any:
        """Coerce ``format: "parquet"`` shorthand to ``{"kind": "parquet"}``."""
        if isinstance(data, dict) and isinstance(data.get("format"), str):
            data = {**data, "format": {"kind": data["format"]}}
        return data

    def connect(self) -> "ibis.BaseBackend":
        """Create and return an ibis backend connection."""
        raise NotImplementedError("Backend.connect() not implemented")

    def execute(self, conn: "ibis.BaseBackend", expr: "ibis.Expr") -> pa.Table:
        """Execute an ibis expression and return a PyArrow table."""
        raise NotImplementedError("Backend.execute() not implemented")

    def read_source(
        self, conn: "ibis.BaseBackend", path: str, format: str
    ) -> pa.Table:
        """Read an external file (csv, json, parquet) into a PyArrow table."""
        raise NotImplementedError("Backend.read_source() not implemented")

    def run_sql(
        self, conn: "ibis.BaseBackend", tables: dict[str, pa.Table], query: str
    ) -> pa.Table:
        """Run a SQL query with ``tables`` exposed under their names."""
        raise NotImplementedError("Backend.run_sql() not implemented")

    def read_snapshot(
        self, table_name: str
    ) -> "tuple[pa.Table, snapshot.TableSnapshot] | None":
        """Read a table's rows and snapshot header, None if never written."""
        raise NotImplementedError("Backend.read_snapshot() not implemented")

    def read_header(self, table_name: str) -> "snapshot.TableSnapshot | None":
        """Read only the snapshot header, None if never written."""
        raise NotImplementedError("Backend.read_header() not implemented")

    def read_schema(self, table_name: str) -> pa.Schema | None:
        """Read the stored Arrow schema (header included), None if never written."""
        raise NotImplementedError("Backend.read_schema() not implemented")

    def write_snapshot(
        self,
        table_name: str,
        data: pa.Table,
        header: "snapshot.TableSnapshot",
    ) -> None:
        """Atomically replace a table's rows and header."""
        raise NotImplementedError("Backend.write_snapshot() not implemented")

    def drop_table(self, table_name: str) -> None:
        """Remove a table and its data."""
        raise NotImplementedError("Backend.drop_table() not implemented")

    def table_exists(self, table_name: str) -> bool:
        raise NotImplementedError("Backend.table_exists() not implemented")
