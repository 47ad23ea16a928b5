"""Ibis-based compiler for dynamic table definitions.

Turns a DynamicTable into an ibis expression over its source. The compiler
is backend-agnostic: it builds expressions, the backend executes them.

Execution order inside a view: source -> derived columns -> filters ->
projection | (group_by -> aggregates -> metrics).
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

import ibis
import ibis.expr.types as ir

import freshtable.errors as errors
import freshtable.types as types

if TYPE_CHECKING:
    import freshtable.core as core


# Map aggregate names to ibis column methods
_AGG_METHODS: dict[str, str] = {
    "sum": "sum",
    "count": "count",
    "avg": "mean",
    "min": "min",
    "max": "max",
    "count_distinct": "nunique",
}


@dataclasses.dataclass(frozen=True)
class CompiledView:
    """Result of compiling a DynamicTable against its source schema."""

    sql: str
    ibis_expr: ir.Table
    table_name: str
    source_tables: list[str]


class ViewCompiler:
    """Compiles DynamicTable definitions to ibis expressions and SQL.

    Stateless -- does not manage backend connections. ``build`` accepts
    any ibis table with the source's columns, so the same definition
    compiles against an unbound table (for SQL and hashing), the full
    upstream snapshot (full refresh) or only the new rows (incremental).
    """

    def compile_table(self, table: core.DynamicTable) -> CompiledView:
        """Compile a DynamicTable against an unbound source table.

        Raises:
            DefinitionError: If the decorator-registered parts are inconsistent.
            DependencyError: If the definition references columns the
                source does not provide.
        """
        source = ibis.table(self.source_schema(table), name=table.source_name)
        expr = self.build(table, source)
        return CompiledView(
            sql=str(ibis.to_sql(expr, dialect="duckdb")),
            ibis_expr=expr,
            table_name=table.name,
            source_tables=[table.source_name],
        )

    def source_schema(self, table: core.DynamicTable) -> ibis.Schema:
        """Schema of the relation a dynamic table reads from."""
        import freshtable.core as core

        source = table.source
        if isinstance(source, core.RawTable):
            return ibis.schema(
                {
                    name: types.IBIS_TYPES[f.dtype]
                    for name, f in source.schema_.fields()
                }
            )
        return self.output_schema(source)

    def output_schema(self, table: core.DynamicTable) -> ibis.Schema:
        """Schema the dynamic table produces."""
        return self.compile_table(table).ibis_expr.schema()

    def build(self, table: core.DynamicTable, source: ir.Table) -> ir.Table:
        """Build the full view expression over ``source``."""
        table.validate_definition()
        expr = self._prepare(table, source)
        if table.is_aggregate:
            return self._aggregate(table, expr)
        if table.columns is not None:
            self._require_columns(table, expr, table.columns)
            return expr.select(*table.columns)
        return expr

    def build_keys(self, table: core.DynamicTable, delta: ir.Table) -> ir.Table:
        """Distinct group keys touched by ``delta`` rows."""
        expr = self._prepare(table, delta)
        keys = list(table.group_by or [])
        self._require_columns(table, expr, keys)
        return expr.select(*keys).distinct()

    def build_groups(
        self,
        table: core.DynamicTable,
        source: ir.Table,
        keys: ir.Table,
    ) -> ir.Table:
        """Recompute only the groups listed in ``keys`` from ``source``."""
        expr = self._prepare(table, source)
        expr = expr.semi_join(keys, list(table.group_by or []))
        return self._aggregate(table, expr)

    def _prepare(self, table: core.DynamicTable, source: ir.Table) -> ir.Table:
        expr = source
        try:
            for name, func in table._derived.items():
                expr = expr.mutate(**{name: func(expr)})
            for predicate in table._filters:
                expr = expr.filter(predicate(expr))
        except errors.FreshtableError:
            raise
        except Exception as exc:
            raise errors.DependencyError(
                context=f"Compiling dynamic table '{table.name}'",
                cause=f"Row logic failed against source '{table.source_name}': {exc}",
                fix="Check derived columns and filters only reference columns of the source.",
            ) from exc
        return expr

    def _aggregate(self, table: core.DynamicTable, expr: ir.Table) -> ir.Table:
        keys = list(table.group_by or [])
        self._require_columns(
            table, expr, keys + [agg["column"] for agg in table._aggregates]
        )

        metrics = {}
        for agg in table._aggregates:
            column = expr[agg["column"]]
            method = getattr(column, _AGG_METHODS[agg["function"]])
            where = agg["where"]
            if where is None:
                value = method()
            else:
                value = method(where=where(expr))
                if agg["function"] == "sum":
                    # SUM over zero matching rows is NULL; CASE WHEN ... ELSE 0 semantics
                    value = value.coalesce(0)
            metrics[agg["name"]] = value

        result = expr.group_by(keys).aggregate(**metrics)

        try:
            for name, func in table._metrics.items():
                result = result.mutate(**{name: func(result)})
        except Exception as exc:
            raise errors.DependencyError(
                context=f"Compiling dynamic table '{table.name}'",
                cause=f"Metric logic failed: {exc}",
                fix="Metrics may only reference group keys and aggregate outputs.",
            ) from exc
        return result

    def _require_columns(
        self, table: core.DynamicTable, expr: ir.Table, columns: list[str]
    ) -> None:
        available = set(expr.columns)
        missing = [c for c in columns if c not in available]
        if missing:
            raise errors.DependencyError(
                context=f"Compiling dynamic table '{table.name}'",
                cause=(
                    f"Column(s) {', '.join(missing)} not provided by source "
                    f"'{table.source_name}'"
                ),
                fix=f"Available columns: {', '.join(expr.columns)}.",
            )
