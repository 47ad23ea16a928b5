"""DuckDB backend -- wraps an ibis DuckDB connection with Parquet snapshots.

Each raw or dynamic table lives in ``{path}/{catalog}/{table_name}.parquet``.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Literal

from typing_extensions import override

import pyarrow as pa
import pydantic as pdt

import freshtable.backends.base as base
import freshtable.errors as errors
import freshtable.formats as formats
import freshtable.snapshot as snapshot

if TYPE_CHECKING:
    import ibis


class DuckDBBackend(base.BaseBackend):
    """DuckDB backend for local pipelines.

    Configuration example:
        DuckDBBackend(path=".freshtable/data", catalog="fraud_demo")
    """

    kind: Literal["duckdb"] = "duckdb"
    database: str = ":memory:"
    extensions: list[str] = pdt.Field(default_factory=list)
    path: str
    catalog: str
    format: formats.FormatKind = formats.ParquetFormat()

    def _table_path(self, table_name: str) -> Path:
        """Resolve the file holding a table: {path}/{catalog}/{table_name}.parquet"""
        return Path(self.path) / self.catalog / f"{table_name}.parquet"

    @override
    def connect(self) -> "ibis.BaseBackend":
        """Create an ibis DuckDB connection with requested extensions loaded."""
        import ibis

        conn = ibis.duckdb.connect(database=self.database)
        for ext in self.extensions:
            conn.raw_sql(f"INSTALL {ext}")
            conn.raw_sql(f"LOAD {ext}")
        return conn

    @override
    def execute(self, conn: "ibis.BaseBackend", expr: "ibis.Expr") -> pa.Table:
        return conn.to_pyarrow(expr)

    @override
    def read_source(
        self, conn: "ibis.BaseBackend", path: str, format: str
    ) -> pa.Table:
        """Read a source file through DuckDB's readers.

        Args:
            conn: Active ibis DuckDB connection.
            path: File path or glob.
            format: One of "csv", "json", "parquet".
        """
        if format == "parquet":
            expr = conn.read_parquet(path)
        elif format == "csv":
            expr = conn.read_csv(path)
        elif format == "json":
            expr = conn.read_json(path)
        else:
            msg = f"Unsupported source format: {format}"
            raise ValueError(msg)
        return conn.to_pyarrow(expr)

    @override
    def run_sql(
        self, conn: "ibis.BaseBackend", tables: dict[str, pa.Table], query: str
    ) -> pa.Table:
        """Run ``query`` with each of ``tables`` registered under its name.

        Raises:
            QueryError: If DuckDB cannot parse, bind or execute the query.
        """
        import duckdb
        import ibis.common.exceptions as ibis_exc

        for name, data in tables.items():
            conn.create_table(name, obj=data, overwrite=True)
        try:
            return conn.to_pyarrow(conn.sql(query))
        except (duckdb.Error, ibis_exc.IbisError) as exc:
            raise errors.QueryError(query, str(exc)) from exc

    @override
    def read_snapshot(
        self, table_name: str
    ) -> tuple[pa.Table, snapshot.TableSnapshot] | None:
        table_path = self._table_path(table_name)
        if not table_path.exists():
            return None
        data = self.format.read(table_path)
        header = snapshot.TableSnapshot.from_arrow(data)
        if header is None:
            raise errors.StorageError(
                context=f"Reading table '{table_name}'",
                cause=f"'{table_path}' has no freshtable snapshot header",
                fix="Remove the file or rewrite it through freshtable.",
            )
        return snapshot.strip_header(data), header

    @override
    def read_header(self, table_name: str) -> snapshot.TableSnapshot | None:
        table_path = self._table_path(table_name)
        if not table_path.exists():
            return None
        return snapshot.TableSnapshot.from_arrow(self.format.read_schema(table_path))

    @override
    def read_schema(self, table_name: str) -> pa.Schema | None:
        table_path = self._table_path(table_name)
        if not table_path.exists():
            return None
        return self.format.read_schema(table_path)

    @override
    def write_snapshot(
        self,
        table_name: str,
        data: pa.Table,
        header: snapshot.TableSnapshot,
    ) -> None:
        try:
            self.format.write(self._table_path(table_name), header.attach(data))
        except OSError as exc:
            raise errors.StorageError(
                context=f"Writing table '{table_name}'",
                cause=str(exc),
                fix=f"Check that '{self.path}' is writable.",
            ) from exc

    @override
    def drop_table(self, table_name: str) -> None:
        table_path = self._table_path(table_name)
        if table_path.is_file():
            table_path.unlink()

    @override
    def table_exists(self, table_name: str) -> bool:
        return self._table_path(table_name).exists()
