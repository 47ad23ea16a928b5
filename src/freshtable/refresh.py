"""Refresh engine keeping dynamic tables in sync with their sources.

Refreshes run in DAG order. Each dynamic table compares the position of its
source (generation, row count, data version) with the frontier stored in its
own snapshot and picks an action:

- NO_DATA: the source did not change; only the data timestamp advances.
- REINITIALIZE: first refresh, or the definition changed.
- FULL: the source changed other than by appending, or the table is
  configured ``refresh_mode="full"``.
- INCREMENTAL: only rows appended past the frontier are processed. Filter
  views append their output; aggregate views recompute the groups those
  rows touch and replace them.

A failed refresh keeps the previous snapshot and marks its dependants in
the same run as skipped. Output checks run after compute and before write.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import ibis
import pyarrow as pa
import pydantic as pdt

import freshtable.backends as backends
import freshtable.compiler as compiler_mod
import freshtable.dag as dag_mod
import freshtable.discovery as discovery
import freshtable.errors as errors
import freshtable.quality as quality
import freshtable.registry as registry_types
import freshtable.snapshot as snapshot

if TYPE_CHECKING:
    import freshtable.core as core

logger = logging.getLogger(__name__)

ACTIVE = "ACTIVE"
SUSPENDED = "SUSPENDED"


class RefreshAction(str, enum.Enum):
    NO_DATA = "NO_DATA"
    REINITIALIZE = "REINITIALIZE"
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class RefreshState(str, enum.Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class RefreshTrigger(str, enum.Enum):
    MANUAL = "MANUAL"
    SCHEDULED = "SCHEDULED"
    CREATION = "CREATION"


@dataclass(frozen=True)
class TableRefreshResult:
    """Result of refreshing a single dynamic table."""

    table_name: str
    state: RefreshState
    action: RefreshAction | None = None
    error: str | None = None
    row_count: int | None = None
    rows_changed: int | None = None
    data_timestamp: datetime | None = None
    attempts: int = 0
    duration_ms: float | None = None
    check_warnings: int = 0


@dataclass
class RefreshResult:
    """Aggregate result of a refresh run."""

    table_results: list[TableRefreshResult] = field(default_factory=list)

    def _count(self, state: RefreshState) -> int:
        return sum(1 for r in self.table_results if r.state == state)

    @property
    def success_count(self) -> int:
        return self._count(RefreshState.SUCCEEDED)

    @property
    def failed_count(self) -> int:
        return self._count(RefreshState.FAILED)

    @property
    def skipped_count(self) -> int:
        """Number of tables skipped due to upstream failure or suspension."""
        return self._count(RefreshState.SKIPPED)

    @property
    def is_success(self) -> bool:
        """True if every table refreshed (no failures or skips)."""
        return self.failed_count == 0 and self.skipped_count == 0

    def get(self, table_name: str) -> TableRefreshResult | None:
        for r in self.table_results:
            if r.table_name == table_name:
                return r
        return None


@dataclass(frozen=True)
class _Outcome:
    action: RefreshAction
    row_count: int
    rows_changed: int
    data_timestamp: datetime | None
    check_warnings: int = 0


class RefreshEngine(pdt.BaseModel, strict=True, frozen=True, extra="forbid"):
    """Incremental view maintenance for dynamic tables.

    Snapshots live in the backend; refresh history and scheduling status
    are recorded in the registry when one is configured.

    Example:
        engine = RefreshEngine(backend=env.backend, registry=env.registry)
        result = engine.refresh([transactions_raw, transactions_clean])
    """

    backend: backends.BackendKind = pdt.Field(..., discriminator="kind")
    registry: backends.RegistryKind | None = pdt.Field(
        default=None, discriminator="kind"
    )
    max_retries: int = 2
    retry_backoff_seconds: float = 1.0
    max_consecutive_failures: int = 5

    def refresh(
        self,
        tables: list[core.RawTable | core.DynamicTable],
        *,
        targets: list[str] | None = None,
        trigger: RefreshTrigger = RefreshTrigger.MANUAL,
        now: datetime | None = None,
    ) -> RefreshResult:
        """Refresh dynamic tables in DAG order.

        Args:
            tables: All raw and dynamic table definitions to consider.
            targets: Optional table names to refresh. Their upstream
                dynamic tables are refreshed first.
            trigger: Recorded in the refresh history.
            now: Override the refresh time, defaults to UTC now.

        Returns:
            RefreshResult with per-table state.
        """
        import freshtable.core as core

        dag = dag_mod.DAG()
        dag.add_tables(tables)
        dag.validate()

        order = dag.topological_sort()
        if targets:
            wanted: set[str] = set()
            for target in targets:
                wanted.update(dag.get_upstream(target, include_self=True))
            order = [name for name in order if name in wanted]

        view_compiler = compiler_mod.ViewCompiler()
        conn = self.backend.connect()
        refresh_time = now or datetime.now(timezone.utc)

        result = RefreshResult()
        failed_tables: set[str] = set()

        for table_name in order:
            table = dag.get_table(table_name)
            if not isinstance(table, core.DynamicTable):
                continue

            if self.is_suspended(table_name):
                logger.info("Skipping '%s': table is suspended", table_name)
                result.table_results.append(
                    TableRefreshResult(
                        table_name=table_name,
                        state=RefreshState.SKIPPED,
                        error="Table is suspended",
                    )
                )
                continue

            upstream_failed = [
                dep
                for dep in dag.get_upstream(table_name, include_self=False)
                if dep in failed_tables
            ]
            if upstream_failed:
                table_result = TableRefreshResult(
                    table_name=table_name,
                    state=RefreshState.SKIPPED,
                    error=f"Upstream table(s) failed: {', '.join(upstream_failed)}",
                )
                logger.warning(
                    "Skipping '%s': upstream table(s) failed: %s",
                    table_name,
                    ", ".join(upstream_failed),
                )
                self._persist_refresh_record(table_result, trigger, refresh_time)
                result.table_results.append(table_result)
                failed_tables.add(table_name)
                continue

            table_result = self._refresh_with_retries(
                table, conn, view_compiler, refresh_time, trigger
            )
            result.table_results.append(table_result)
            if table_result.state == RefreshState.FAILED:
                failed_tables.add(table_name)

        return result

    def is_suspended(self, table_name: str) -> bool:
        if self.registry is None:
            return False
        status = self.registry.get_status(table_name)
        return status is not None and status.scheduling_state == SUSPENDED

    def _refresh_with_retries(
        self,
        table: core.DynamicTable,
        conn: ibis.BaseBackend,
        view_compiler: compiler_mod.ViewCompiler,
        now: datetime,
        trigger: RefreshTrigger,
    ) -> TableRefreshResult:
        """Run one table's refresh, retrying transient failures."""
        start_time = datetime.now(timezone.utc)
        attempts = 0

        while True:
            attempts += 1
            try:
                outcome = self._refresh_table(table, conn, view_compiler, now)
                break
            except errors.RefreshError as exc:
                error = exc
            except (errors.DefinitionError, errors.DependencyError) as exc:
                error = errors.RefreshError(table.name, exc.cause, transient=False)
            except Exception as exc:
                error = errors.RefreshError(table.name, str(exc))

            if not error.transient or attempts > self.max_retries:
                elapsed_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
                logger.error(
                    "Refresh of '%s' failed after %d attempt(s): %s",
                    table.name,
                    attempts,
                    error.cause,
                )
                table_result = TableRefreshResult(
                    table_name=table.name,
                    state=RefreshState.FAILED,
                    error=error.cause,
                    attempts=attempts,
                    duration_ms=elapsed_ms,
                )
                self._persist_refresh_record(table_result, trigger, start_time)
                self._record_failure(table.name)
                return table_result

            logger.warning(
                "Refresh of '%s' failed (attempt %d of %d), retrying in %.1fs: %s",
                table.name,
                attempts,
                self.max_retries + 1,
                self.retry_backoff_seconds,
                error.cause,
            )
            time.sleep(self.retry_backoff_seconds)

        elapsed_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
        logger.info(
            "Refreshed '%s': %s, %d row(s) changed",
            table.name,
            outcome.action.value,
            outcome.rows_changed,
        )
        table_result = TableRefreshResult(
            table_name=table.name,
            state=RefreshState.SUCCEEDED,
            action=outcome.action,
            row_count=outcome.row_count,
            rows_changed=outcome.rows_changed,
            data_timestamp=outcome.data_timestamp,
            attempts=attempts,
            duration_ms=elapsed_ms,
            check_warnings=outcome.check_warnings,
        )
        self._persist_refresh_record(table_result, trigger, start_time)
        self._record_success(table.name)
        return table_result

    def _refresh_table(
        self,
        table: core.DynamicTable,
        conn: ibis.BaseBackend,
        view_compiler: compiler_mod.ViewCompiler,
        now: datetime,
    ) -> _Outcome:
        """Plan and apply one refresh, writing the new snapshot."""
        source_data, position, data_timestamp = self._read_source(table, now)
        definition_hash = discovery.definition_hash(table)
        previous = self.backend.read_snapshot(table.name)

        action = self._plan(table, previous, position, definition_hash)

        if action == RefreshAction.NO_DATA:
            old_data, header = previous
            self.backend.write_snapshot(
                table.name,
                old_data,
                header.advance(data_timestamp=data_timestamp),
            )
            return _Outcome(action, header.row_count, 0, data_timestamp)

        data: pa.Table | None = None
        rows_changed = 0
        rewritten = True
        if action == RefreshAction.INCREMENTAL:
            old_data, header = previous
            consumed = header.frontier[table.source_name]
            delta = source_data.slice(consumed.row_count)
            if table.is_aggregate:
                data, rows_changed = self._merge_groups(
                    table, conn, view_compiler, old_data, source_data, delta
                )
            else:
                added = self.backend.execute(
                    conn, view_compiler.build(table, ibis.memtable(delta))
                )
                data = pa.concat_tables([old_data, added.cast(old_data.schema)])
                rows_changed = added.num_rows
                rewritten = False
            if data is None:
                # null group keys cannot be matched, recompute everything
                logger.info("Falling back to full refresh of '%s'", table.name)
                action = RefreshAction.FULL

        if data is None:
            data = self.backend.execute(
                conn, view_compiler.build(table, ibis.memtable(source_data))
            )
            rows_changed = data.num_rows
            if table.is_aggregate:
                data = data.sort_by([(name, "ascending") for name in table.group_by])

        check_warnings = 0
        if table.checks:
            check_result = quality.check_table(table.name, data, table.checks)
            if not check_result.passed:
                failures = [
                    f"{r.field_name}.{r.constraint}: expected {r.expected}, "
                    f"{r.rows_failed} row(s) failed"
                    for r in check_result.failures("error")
                ]
                raise errors.RefreshError(
                    table.name,
                    f"Output check(s) failed: {'; '.join(failures)}",
                    transient=False,
                )
            check_warnings = len(check_result.failures("warn"))
            if check_warnings:
                logger.warning(
                    "Output checks passed with %d warning(s) for '%s'",
                    check_warnings,
                    table.name,
                )

        if previous is None:
            header = snapshot.TableSnapshot(table_name=table.name)
        else:
            header = previous[1]
        changed = rows_changed > 0 or action != RefreshAction.INCREMENTAL
        header = header.advance(
            data_version=header.data_version + 1 if changed else header.data_version,
            generation=header.generation + 1 if rewritten and changed else header.generation,
            row_count=data.num_rows,
            spec_hash=definition_hash,
            data_timestamp=data_timestamp,
            frontier={table.source_name: position},
        )
        self.backend.write_snapshot(table.name, data, header)
        return _Outcome(action, data.num_rows, rows_changed, data_timestamp, check_warnings)

    def _plan(
        self,
        table: core.DynamicTable,
        previous: tuple[pa.Table, snapshot.TableSnapshot] | None,
        position: snapshot.SourceFrontier,
        definition_hash: str,
    ) -> RefreshAction:
        if previous is None:
            return RefreshAction.REINITIALIZE
        header = previous[1]
        consumed = header.frontier.get(table.source_name)
        if header.spec_hash != definition_hash or consumed is None:
            return RefreshAction.REINITIALIZE
        if consumed.data_version == position.data_version:
            return RefreshAction.NO_DATA
        if (
            table.refresh_mode == "full"
            or consumed.generation != position.generation
            or position.row_count < consumed.row_count
        ):
            return RefreshAction.FULL
        return RefreshAction.INCREMENTAL

    def _merge_groups(
        self,
        table: core.DynamicTable,
        conn: ibis.BaseBackend,
        view_compiler: compiler_mod.ViewCompiler,
        old_data: pa.Table,
        source_data: pa.Table,
        delta: pa.Table,
    ) -> tuple[pa.Table | None, int]:
        """Replace the groups touched by ``delta`` in ``old_data``.

        Returns ``(None, 0)`` when the delta carries a null group key.
        """
        keys = self.backend.execute(
            conn, view_compiler.build_keys(table, ibis.memtable(delta))
        )
        if keys.num_rows == 0:
            return old_data, 0
        if any(keys.column(name).null_count for name in keys.column_names):
            return None, 0

        groups = self.backend.execute(
            conn,
            view_compiler.build_groups(
                table, ibis.memtable(source_data), ibis.memtable(keys)
            ),
        )
        group_by = list(table.group_by or [])
        kept = old_data.join(
            keys.cast(old_data.select(group_by).schema),
            keys=group_by,
            join_type="left anti",
        )
        merged = pa.concat_tables(
            [kept.select(old_data.column_names).cast(old_data.schema),
             groups.select(old_data.column_names).cast(old_data.schema)]
        )
        if group_by:
            merged = merged.sort_by([(name, "ascending") for name in group_by])
        return merged, groups.num_rows

    def _read_source(
        self, table: core.DynamicTable, now: datetime
    ) -> tuple[pa.Table, snapshot.SourceFrontier, datetime | None]:
        """Current source rows, their position and the resulting data timestamp.

        Tables over raw data reflect every write up to ``now``. Tables over
        other dynamic tables are only as fresh as their source.
        """
        stored = self.backend.read_snapshot(table.source_name)
        if stored is None:
            if table.is_derived:
                raise errors.RefreshError(
                    table.name,
                    f"Upstream dynamic table '{table.source_name}' has never been refreshed",
                    transient=False,
                )
            empty = table.source.arrow_schema().empty_table()
            return empty, snapshot.SourceFrontier(0, 0, 0), now

        data, header = stored
        timestamp = header.data_timestamp if table.is_derived else now
        return data, header.position, timestamp

    def _record_success(self, table_name: str) -> None:
        if self.registry is None:
            return
        status = self.registry.get_status(table_name)
        if status is not None and status.consecutive_failures == 0:
            return
        self.registry.put_status(
            registry_types.TableStatus(
                table_name=table_name,
                scheduling_state=ACTIVE,
                consecutive_failures=0,
                updated_at=datetime.now(timezone.utc),
            )
        )

    def _record_failure(self, table_name: str) -> None:
        if self.registry is None:
            return
        status = self.registry.get_status(table_name)
        failures = (status.consecutive_failures if status else 0) + 1
        state = ACTIVE
        if failures >= self.max_consecutive_failures:
            state = SUSPENDED
            logger.error(
                "Suspending '%s' after %d consecutive failed refreshes",
                table_name,
                failures,
            )
        self.registry.put_status(
            registry_types.TableStatus(
                table_name=table_name,
                scheduling_state=state,
                consecutive_failures=failures,
                updated_at=datetime.now(timezone.utc),
            )
        )

    def _persist_refresh_record(
        self,
        table_result: TableRefreshResult,
        trigger: RefreshTrigger,
        start_time: datetime,
    ) -> None:
        """Persist a refresh record to the registry."""
        if self.registry is None:
            return

        record = registry_types.RefreshRecord(
            id=None,
            table_name=table_result.table_name,
            state=table_result.state.value,
            refresh_action=table_result.action.value if table_result.action else None,
            refresh_trigger=RefreshTrigger(trigger).value,
            refresh_start_time=start_time,
            refresh_end_time=datetime.now(timezone.utc),
            data_timestamp=table_result.data_timestamp,
            row_count=table_result.row_count,
            rows_changed=table_result.rows_changed,
            attempts=table_result.attempts,
            error=table_result.error,
        )

        try:
            self.registry.put_refresh_record(record)
        except Exception:
            logger.warning(
                "Could not save refresh record for '%s'"
                " (run 'freshtable up' to enable full tracking)",
                table_result.table_name,
            )
