"""Pipeline handle for freshtable projects.

Provides the freshtable.connect() entry point. A Pipeline holds the applied
raw and dynamic table definitions together with the backend that stores
their snapshots and the registry that records definitions, refresh history
and scheduling status.

Usage:
    import freshtable

    pipeline = freshtable.connect()
    pipeline.insert("transactions_raw", records)
    pipeline.refresh()
    pipeline.read("daily_transaction_summary")
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

import pyarrow as pa

import freshtable.compiler as compiler_mod
import freshtable.core as core
import freshtable.dag as dag_mod
import freshtable.diff as diff
import freshtable.discovery as discovery
import freshtable.errors as errors
import freshtable.freshness as freshness
import freshtable.ingest as ingest
import freshtable.refresh as refresh
import freshtable.registry as registry_types
import freshtable.settings as settings
import freshtable.snapshot as snapshot

if TYPE_CHECKING:
    import freshtable.backends as backends
    import freshtable.scheduler as scheduler_mod

logger = logging.getLogger(__name__)

_FILE_FORMATS = {".csv": "csv", ".json": "json", ".ndjson": "json", ".parquet": "parquet"}


def _columns(schema: pa.Schema) -> list[tuple[str, pa.DataType]]:
    return [(f.name, f.type) for f in schema]


def _describe_columns(schema: pa.Schema) -> str:
    return "(" + ", ".join(f"{f.name}: {f.type}" for f in schema) + ")"


@dataclass(frozen=True)
class TableInfo:
    """One row of ``Pipeline.show()``."""

    name: str
    source: str
    target_lag: timedelta | str
    effective_lag: timedelta | None
    refresh_mode: str
    scheduling_state: str
    data_timestamp: datetime | None
    staleness: timedelta | None
    row_count: int | None
    last_refresh_state: str | None
    last_refresh_action: str | None
    last_refresh_at: datetime | None


class Pipeline:
    """Runtime handle for a freshtable project.

    Created via freshtable.connect() or directly from a backend and an
    optional registry. Not a Pydantic model -- this is a runtime handle,
    not configuration.

    Writes and refreshes are serialized by one re-entrant lock. Snapshots
    are replaced atomically, so reads never block on writers.
    """

    def __init__(
        self,
        freshtable_settings: settings.FreshtableSettings | None = None,
        *,
        backend: backends.BackendKind | None = None,
        registry: backends.RegistryKind | None = None,
        scheduler_settings: settings.SchedulerSettings | None = None,
    ) -> None:
        self._settings = freshtable_settings
        if freshtable_settings is not None:
            env_config = freshtable_settings.active_environment
            backend = backend or env_config.backend
            registry = registry or env_config.registry
            scheduler_settings = scheduler_settings or freshtable_settings.scheduler
        if backend is None:
            raise errors.ConfigurationError(
                context="Creating pipeline",
                cause="No backend configured",
                fix="Pass backend=... or load settings from freshtable.yaml.",
            )

        self._backend = backend
        self._registry = registry
        self._scheduler_settings = scheduler_settings or settings.SchedulerSettings()
        self._engine = refresh.RefreshEngine(
            backend=backend,
            registry=registry,
            max_retries=self._scheduler_settings.max_retries,
            retry_backoff_seconds=self._scheduler_settings.retry_backoff_seconds,
            max_consecutive_failures=self._scheduler_settings.max_consecutive_failures,
        )
        self._lock = threading.RLock()
        self._tables: dict[str, core.RawTable | core.DynamicTable] = {}
        self._dag = dag_mod.DAG()
        self._listeners: list[Callable[[str], None]] = []

        if registry is not None:
            registry.initialize()

    @property
    def name(self) -> str | None:
        """Project name from freshtable.yaml."""
        return self._settings.name if self._settings else None

    @property
    def backend(self) -> backends.BackendKind:
        return self._backend

    @property
    def registry(self) -> backends.RegistryKind | None:
        return self._registry

    @property
    def dag(self) -> dag_mod.DAG:
        return self._dag

    @property
    def tables(self) -> list[core.RawTable | core.DynamicTable]:
        """Registered definitions in dependency order."""
        return [self._dag.get_table(name) for name in self._dag.topological_sort()]

    # -------------------------------------------------------------------------
    # Definitions
    # -------------------------------------------------------------------------

    def register(self, tables: list[core.RawTable | core.DynamicTable]) -> None:
        """Load definitions into this handle without touching the registry.

        Raises:
            DefinitionError: On duplicate names or inconsistent definitions.
            DependencyError: On missing upstreams, cycles or unknown columns.
        """
        dag = self._build_dag(tables)
        with self._lock:
            self._install(dag)

    def _build_dag(self, tables: list[core.RawTable | core.DynamicTable]) -> dag_mod.DAG:
        dag = dag_mod.DAG()
        dag.add_tables(tables)
        dag.validate()

        view_compiler = compiler_mod.ViewCompiler()
        for table in dag.dynamic_tables():
            view_compiler.compile_table(table)
        return dag

    def _install(self, dag: dag_mod.DAG) -> None:
        self._dag = dag
        self._tables = {name: dag.get_table(name) for name in dag.topological_sort()}

    def _reshaped_raw_header(self, table: core.RawTable) -> snapshot.TableSnapshot | None:
        """Header of a stored raw table whose columns differ from its definition.

        Only empty tables may change shape; they are rewritten by ``apply``.

        Raises:
            DefinitionError: If the stored table has rows and different columns.
        """
        stored = self._backend.read_schema(table.name)
        if stored is None:
            return None
        declared = table.arrow_schema()
        if _columns(stored) == _columns(declared):
            return None

        header = snapshot.TableSnapshot.from_arrow(stored) or snapshot.TableSnapshot(
            table_name=table.name
        )
        if header.row_count > 0:
            raise errors.DefinitionError(
                context=f"Applying raw table '{table.name}'",
                cause=(
                    f"Stored data has columns {_describe_columns(stored)} but the "
                    f"definition declares {_describe_columns(declared)}"
                ),
                fix=(
                    "Keep the stored columns, or declare the new schema under a "
                    "new table name."
                ),
            )
        return header

    def apply(
        self,
        tables: list[core.RawTable | core.DynamicTable],
        *,
        initial_refresh: bool = True,
        applied_by: str = "freshtable",
    ) -> diff.DiffResult:
        """Declare the full set of tables and sync the registry to it.

        New and changed dynamic tables are refreshed right away (trigger
        CREATION). Definitions missing from ``tables`` are removed from
        the registry and their derived data dropped; raw data is kept.

        Raises:
            DefinitionError: If a raw table with rows is redeclared with
                different columns. Nothing is applied.
        """
        dag = self._build_dag(tables)

        with self._lock:
            reshaped: dict[str, snapshot.TableSnapshot] = {}
            for name in dag.topological_sort():
                table = dag.get_table(name)
                if isinstance(table, core.RawTable):
                    header = self._reshaped_raw_header(table)
                    if header is not None:
                        reshaped[name] = header

            self._install(dag)
            all_tables = self.tables

            if self._registry is None:
                result = diff.DiffResult(
                    changes=[
                        diff.Change(diff.ChangeOperation.CREATE, t.kind, t.name)
                        for t in all_tables
                    ]
                )
            else:
                result = diff.compute_diff(all_tables, self._registry)
                for change in result.changes:
                    if change.operation in (
                        diff.ChangeOperation.CREATE,
                        diff.ChangeOperation.UPDATE,
                    ):
                        self._registry.put_object(
                            registry_types.ObjectRecord(
                                kind=change.kind,
                                name=change.name,
                                spec_hash=change.new_hash,
                                spec_json=change.spec_json,
                                version=0,
                            ),
                            applied_by=applied_by,
                        )
                    elif change.operation == diff.ChangeOperation.DELETE:
                        self._registry.delete_object(change.kind, change.name, applied_by)
                        if change.kind == "dynamic_table":
                            self._backend.drop_table(change.name)

            now = datetime.now(timezone.utc)
            for table in all_tables:
                if not isinstance(table, core.RawTable):
                    continue
                if table.name in reshaped:
                    previous = reshaped[table.name]
                    header = previous.advance(
                        data_version=previous.data_version + 1,
                        generation=previous.generation + 1,
                        row_count=0,
                        data_timestamp=now,
                    )
                    logger.info("Rewrote empty raw table '%s' with new columns", table.name)
                elif not self._backend.table_exists(table.name):
                    header = snapshot.TableSnapshot(table_name=table.name, data_timestamp=now)
                else:
                    continue
                self._backend.write_snapshot(
                    table.name, table.arrow_schema().empty_table(), header
                )

            logger.info("Applied definitions: %s", result.summary())

            if initial_refresh:
                targets = [
                    c.name
                    for c in result.creates + result.updates
                    if c.kind == "dynamic_table"
                ]
                if targets:
                    self._engine.refresh(
                        all_tables,
                        targets=targets,
                        trigger=refresh.RefreshTrigger.CREATION,
                    )

        return result

    def table(self, name: str) -> core.RawTable | core.DynamicTable:
        """Look up a registered definition.

        Raises:
            TableNotFoundError: If no table with this name is registered.
        """
        if name not in self._tables:
            raise errors.TableNotFoundError(name, list(self._tables))
        return self._tables[name]

    def _raw_table(self, name: str, operation: str) -> core.RawTable:
        table = self.table(name)
        if not isinstance(table, core.RawTable):
            raise errors.DefinitionError(
                context=f"{operation} '{name}'",
                cause=f"'{name}' is a dynamic table; its contents are derived",
                fix=f"Write to its source '{table.source_name}' instead.",
            )
        return table

    def _dynamic_table(self, name: str, operation: str) -> core.DynamicTable:
        table = self.table(name)
        if not isinstance(table, core.DynamicTable):
            raise errors.DefinitionError(
                context=f"{operation} '{name}'",
                cause=f"'{name}' is a raw table",
                fix="Only dynamic tables are refreshed, suspended or resumed.",
            )
        return table

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    def subscribe(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(table_name)`` after every write to a raw table."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[str], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def insert(self, name: str, records: ingest.Records) -> int:
        """Validate and append a batch of records to a raw table.

        Returns:
            Number of rows appended.

        Raises:
            RecordValidationError: If any record is invalid. The batch is
                rejected as a whole.
            DefinitionError: If the stored columns differ from the
                registered definition.
        """
        raw = self._raw_table(name, "Inserting into")

        with self._lock:
            existing, header = self._read_raw(raw)
            batch = ingest.validate_records(raw, records, existing)
            if batch.num_rows == 0:
                return 0
            if _columns(existing.schema) != _columns(batch.schema):
                raise errors.DefinitionError(
                    context=f"Inserting into '{name}'",
                    cause=(
                        f"Stored data has columns {_describe_columns(existing.schema)} "
                        f"but the definition declares {_describe_columns(batch.schema)}"
                    ),
                    fix="Apply the definitions first (freshtable up).",
                )

            data = pa.concat_tables([existing.cast(batch.schema), batch])
            self._backend.write_snapshot(
                name,
                data,
                header.advance(
                    data_version=header.data_version + 1,
                    row_count=data.num_rows,
                    data_timestamp=datetime.now(timezone.utc),
                ),
            )
            logger.info("Inserted %d record(s) into '%s'", batch.num_rows, name)

        self._notify(name)
        return batch.num_rows

    def load(self, name: str, path: Path | str, format: str | None = None) -> int:
        """Bulk load a CSV, JSON or Parquet file into a raw table.

        The file goes through the same validation as ``insert``.
        """
        path = Path(path)
        if format is None:
            format = _FILE_FORMATS.get(path.suffix.lower())
            if format is None:
                raise errors.FreshtableError(
                    context=f"Loading '{path}' into '{name}'",
                    cause=f"Cannot infer the file format from suffix '{path.suffix}'",
                    fix="Pass format='csv', 'json' or 'parquet'.",
                )
        if not path.exists():
            raise errors.StorageError(
                context=f"Loading '{path}' into '{name}'",
                cause="File not found",
                fix="Check the path and try again.",
            )
        self._raw_table(name, "Loading into")

        conn = self._backend.connect()
        data = self._backend.read_source(conn, str(path), format)
        return self.insert(name, data)

    def truncate(self, name: str) -> None:
        """Remove every row of a raw table.

        Dependants see a non-append change and fully refresh next time.
        """
        raw = self._raw_table(name, "Truncating")

        with self._lock:
            _, header = self._read_raw(raw)
            self._backend.write_snapshot(
                name,
                raw.arrow_schema().empty_table(),
                header.advance(
                    data_version=header.data_version + 1,
                    generation=header.generation + 1,
                    row_count=0,
                    data_timestamp=datetime.now(timezone.utc),
                ),
            )
            logger.info("Truncated '%s'", name)

        self._notify(name)

    def _read_raw(self, raw: core.RawTable) -> tuple[pa.Table, snapshot.TableSnapshot]:
        stored = self._backend.read_snapshot(raw.name)
        if stored is None:
            return raw.arrow_schema().empty_table(), snapshot.TableSnapshot(table_name=raw.name)
        return stored

    def _notify(self, name: str) -> None:
        for listener in list(self._listeners):
            listener(name)

    # -------------------------------------------------------------------------
    # Refresh
    # -------------------------------------------------------------------------

    def refresh(
        self,
        targets: list[str] | str | None = None,
        *,
        trigger: refresh.RefreshTrigger = refresh.RefreshTrigger.MANUAL,
        now: datetime | None = None,
    ) -> refresh.RefreshResult:
        """Refresh dynamic tables (all, or ``targets`` and their upstreams)."""
        if isinstance(targets, str):
            targets = [targets]
        for target in targets or []:
            self.table(target)

        with self._lock:
            return self._engine.refresh(
                self.tables, targets=targets, trigger=trigger, now=now
            )

    def scheduler(
        self,
        *,
        tick_interval_seconds: float | None = None,
        refresh_fraction: float | None = None,
    ) -> scheduler_mod.Scheduler:
        """Create a scheduler keeping this pipeline within its target lags."""
        import freshtable.scheduler as scheduler_mod

        return scheduler_mod.Scheduler(
            self,
            tick_interval_seconds=(
                tick_interval_seconds
                if tick_interval_seconds is not None
                else self._scheduler_settings.tick_interval_seconds
            ),
            refresh_fraction=(
                refresh_fraction
                if refresh_fraction is not None
                else self._scheduler_settings.refresh_fraction
            ),
        )

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def read(self, name: str) -> pa.Table:
        """Current contents of a raw or dynamic table.

        A dynamic table that was never refreshed reads as empty.
        """
        table = self.table(name)
        stored = self._backend.read_snapshot(name)
        if stored is not None:
            return stored[0]
        if isinstance(table, core.RawTable):
            return table.arrow_schema().empty_table()
        schema = compiler_mod.ViewCompiler().output_schema(table)
        return schema.to_pyarrow().empty_table()

    def read_header(self, name: str) -> snapshot.TableSnapshot | None:
        self.table(name)
        return self._backend.read_header(name)

    def sql(self, query: str) -> pa.Table:
        """Run SQL over the current contents of every registered table.

        Raises:
            QueryError: If the query cannot be parsed, bound or executed.
        """
        data = {name: self.read(name) for name in self._tables}
        conn = self._backend.connect()
        return self._backend.run_sql(conn, data, query)

    def effective_lags(self) -> dict[str, timedelta | None]:
        return freshness.resolve_target_lags(self._dag)

    def show(self, now: datetime | None = None) -> list[TableInfo]:
        """Status of every dynamic table, in refresh order."""
        now = now or datetime.now(timezone.utc)
        lags = self.effective_lags()

        rows: list[TableInfo] = []
        for table in self._dag.dynamic_tables():
            header = self._backend.read_header(table.name)
            last = self._registry.get_latest_refresh(table.name) if self._registry else None
            data_timestamp = header.data_timestamp if header else None
            rows.append(
                TableInfo(
                    name=table.name,
                    source=table.source_name,
                    target_lag=table.target_lag,
                    effective_lag=lags.get(table.name),
                    refresh_mode=table.refresh_mode,
                    scheduling_state=self.scheduling_state(table.name),
                    data_timestamp=data_timestamp,
                    staleness=now - data_timestamp if data_timestamp else None,
                    row_count=header.row_count if header else None,
                    last_refresh_state=last.state if last else None,
                    last_refresh_action=last.refresh_action if last else None,
                    last_refresh_at=last.refresh_end_time if last else None,
                )
            )
        return rows

    def describe(self, name: str) -> dict[str, Any]:
        """Definition, lineage and snapshot details of one table."""
        table = self.table(name)
        header = self._backend.read_header(name)
        info: dict[str, Any] = {
            "name": name,
            "kind": table.kind,
            "definition": discovery.serialize_to_spec(table),
            "upstream": self._dag.get_upstream(name, include_self=False),
            "downstream": self._dag.get_downstream(name, include_self=False),
            "snapshot": None,
        }
        if header is not None:
            info["snapshot"] = {
                "data_version": header.data_version,
                "generation": header.generation,
                "row_count": header.row_count,
                "data_timestamp": header.data_timestamp,
            }
        if isinstance(table, core.DynamicTable):
            info["effective_lag"] = self.effective_lags().get(name)
            info["scheduling_state"] = self.scheduling_state(name)
        if self._registry is not None:
            record = self._registry.get_object(table.kind, name)
            info["version"] = record.version if record else None
        return info

    def refresh_history(
        self, name: str | None = None, limit: int = 20
    ) -> list[registry_types.RefreshRecord]:
        """Refresh records, newest first."""
        if name is not None:
            self.table(name)
        return self._require_registry("Reading refresh history").get_refresh_history(
            name, limit=limit
        )

    def check_freshness(
        self, now: datetime | None = None, *, warn: bool = True
    ) -> freshness.FreshnessResult:
        """Compare every dynamic table's staleness with its target lag."""
        tables = self._dag.dynamic_tables()
        headers = {t.name: self._backend.read_header(t.name) for t in tables}
        return freshness.check_freshness(
            tables, self.effective_lags(), headers, now, warn=warn
        )

    # -------------------------------------------------------------------------
    # Scheduling state
    # -------------------------------------------------------------------------

    def scheduling_state(self, name: str) -> str:
        if self._registry is None:
            return refresh.ACTIVE
        status = self._registry.get_status(name)
        return status.scheduling_state if status else refresh.ACTIVE

    def suspend(self, name: str) -> None:
        """Stop scheduled refreshes of a dynamic table."""
        self._set_state(name, refresh.SUSPENDED, "Suspending")

    def resume(self, name: str) -> None:
        """Re-enable scheduled refreshes and reset the failure count."""
        self._set_state(name, refresh.ACTIVE, "Resuming")

    def _set_state(self, name: str, state: str, operation: str) -> None:
        self._dynamic_table(name, operation)
        registry = self._require_registry(f"{operation} '{name}'")
        status = registry.get_status(name)
        with self._lock:
            registry.put_status(
                registry_types.TableStatus(
                    table_name=name,
                    scheduling_state=state,
                    consecutive_failures=(
                        0 if state == refresh.ACTIVE or status is None
                        else status.consecutive_failures
                    ),
                    updated_at=datetime.now(timezone.utc),
                )
            )
        logger.info("%s '%s'", operation, name)

    def _require_registry(self, operation: str) -> backends.RegistryKind:
        if self._registry is None:
            raise errors.RegistryError(
                context=operation,
                cause="No registry is configured for this pipeline",
                fix="Pass registry=SqliteRegistry(path=...) or configure one in freshtable.yaml.",
            )
        return self._registry


def connect(
    path: Path | str = Path("freshtable.yaml"),
    env: str | None = None,
) -> Pipeline:
    """Open the pipeline described by a freshtable.yaml.

    Definitions are discovered and registered but not applied; run
    ``Pipeline.apply`` (or ``freshtable up``) to sync the registry.
    """
    freshtable_settings = settings.load_freshtable_settings(path, env)
    pipeline = Pipeline(freshtable_settings)
    discovered = discovery.discover_definitions(freshtable_settings)
    pipeline.register([obj.obj for obj in discovered])
    return pipeline
