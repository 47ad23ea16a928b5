"""Freshness monitoring for dynamic tables.

Staleness is the time since a table's data timestamp: the instant up to
which its contents reflect every source write. A table is stale when its
staleness exceeds its effective target lag.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Literal

import freshtable.errors as errors

if TYPE_CHECKING:
    import freshtable.core as core
    import freshtable.dag as dag_mod
    import freshtable.snapshot as snapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableFreshness:
    """Freshness status for a single dynamic table."""

    table_name: str
    target_lag: timedelta | str  # As declared, may be "downstream"
    effective_lag: timedelta | None  # None: downstream with no dependants
    data_timestamp: datetime | None
    staleness: timedelta | None
    status: Literal["fresh", "warn", "unknown"]
    row_count: int | None = None


@dataclass(frozen=True)
class FreshnessResult:
    """Aggregate freshness status across tables."""

    tables: list[TableFreshness]
    has_stale: bool  # Any table exceeds its target lag
    has_unknown: bool  # Any table was never refreshed

    def get(self, table_name: str) -> TableFreshness | None:
        for t in self.tables:
            if t.table_name == table_name:
                return t
        return None


def resolve_target_lags(dag: dag_mod.DAG) -> dict[str, timedelta | None]:
    """Effective lag of every dynamic table in ``dag``.

    A ``"downstream"`` lag takes the smallest effective lag among the
    dynamic tables reading from it, recursively. Without dependants it
    resolves to None and the table is refreshed only on demand.
    """
    import freshtable.core as core

    lags: dict[str, timedelta | None] = {}
    for name in reversed(dag.topological_sort()):
        table = dag.get_table(name)
        if not isinstance(table, core.DynamicTable):
            continue
        if isinstance(table.target_lag, timedelta):
            lags[name] = table.target_lag
            continue
        candidates = [
            lags[child]
            for child in dag.nodes[name].downstream
            if lags.get(child) is not None
        ]
        lags[name] = min(candidates) if candidates else None
    return lags


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def is_due(
    effective_lag: timedelta | None,
    data_timestamp: datetime | None,
    now: datetime,
    refresh_fraction: float = 0.5,
) -> bool:
    """True when a table should be refreshed to stay within its lag."""
    if effective_lag is None:
        return False
    if data_timestamp is None:
        return True
    return now - _aware(data_timestamp) >= effective_lag * refresh_fraction


def check_freshness(
    tables: list[core.DynamicTable],
    lags: dict[str, timedelta | None],
    headers: dict[str, snapshot.TableSnapshot | None],
    now: datetime | None = None,
    *,
    warn: bool = True,
) -> FreshnessResult:
    """Check dynamic tables against their target lags.

    Args:
        tables: Dynamic tables to check.
        lags: Effective lags from ``resolve_target_lags``.
        headers: Snapshot header per table name (None if never refreshed).
        now: Override current time for testing. Defaults to UTC now.
        warn: Emit a StalenessWarning for every stale table.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    results: list[TableFreshness] = []
    has_stale = False
    has_unknown = False

    for table in tables:
        header = headers.get(table.name)
        effective_lag = lags.get(table.name)

        if header is None or header.data_timestamp is None:
            results.append(
                TableFreshness(
                    table_name=table.name,
                    target_lag=table.target_lag,
                    effective_lag=effective_lag,
                    data_timestamp=None,
                    staleness=None,
                    status="unknown",
                )
            )
            has_unknown = True
            continue

        data_timestamp = _aware(header.data_timestamp)
        staleness = now - data_timestamp

        status: Literal["fresh", "warn", "unknown"] = "fresh"
        if effective_lag is not None and staleness > effective_lag:
            status = "warn"
            has_stale = True
            message = (
                f"Dynamic table '{table.name}' is {staleness} stale, "
                f"beyond its target lag of {effective_lag}"
            )
            logger.warning(message)
            if warn:
                warnings.warn(message, errors.StalenessWarning, stacklevel=2)

        results.append(
            TableFreshness(
                table_name=table.name,
                target_lag=table.target_lag,
                effective_lag=effective_lag,
                data_timestamp=data_timestamp,
                staleness=staleness,
                status=status,
                row_count=header.row_count,
            )
        )

    return FreshnessResult(tables=results, has_stale=has_stale, has_unknown=has_unknown)
