"""Tests for target lag resolution and freshness checks."""

from __future__ import annotations

import warnings
from datetime import datetime, timedelta, timezone

import pytest

import freshtable.core as core
import freshtable.dag as dag_mod
import freshtable.errors as errors
import freshtable.freshness as freshness_mod
import freshtable.snapshot as snapshot

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _dag(*tables):
    dag = dag_mod.DAG()
    dag.add_tables(list(tables))
    return dag


def _header(name: str, age: timedelta | None, row_count: int = 3):
    return snapshot.TableSnapshot(
        table_name=name,
        row_count=row_count,
        data_timestamp=NOW - age if age is not None else None,
    )


class TestResolveTargetLags:
    def test_fixed_lags(self, payment_tables):
        lags = freshness_mod.resolve_target_lags(_dag(*payment_tables))

        assert lags == {
            "ok_payments": timedelta(minutes=1),
            "spend_by_customer": timedelta(minutes=5),
        }

    def test_downstream_takes_smallest_dependant_lag(self, payments_raw):
        base = core.DynamicTable(name="base", source=payments_raw, target_lag="downstream")
        fast = core.DynamicTable(name="fast", source=base, target_lag="2 minutes")
        slow = core.DynamicTable(name="slow", source=base, target_lag="1 hour")

        lags = freshness_mod.resolve_target_lags(_dag(base, fast, slow))

        assert lags["base"] == timedelta(minutes=2)

    def test_downstream_chain(self, payments_raw):
        first = core.DynamicTable(name="first", source=payments_raw, target_lag="downstream")
        second = core.DynamicTable(name="second", source=first, target_lag="downstream")
        third = core.DynamicTable(name="third", source=second, target_lag="10 minutes")

        lags = freshness_mod.resolve_target_lags(_dag(first, second, third))

        assert lags["first"] == timedelta(minutes=10)
        assert lags["second"] == timedelta(minutes=10)

    def test_downstream_without_dependants(self, payments_raw):
        leaf = core.DynamicTable(name="leaf", source=payments_raw, target_lag="downstream")

        assert freshness_mod.resolve_target_lags(_dag(leaf)) == {"leaf": None}


class TestIsDue:
    def test_never_refreshed(self):
        assert freshness_mod.is_due(timedelta(minutes=1), None, NOW)

    def test_no_lag_is_never_due(self):
        assert not freshness_mod.is_due(None, None, NOW)

    @pytest.mark.parametrize(
        "age, expected",
        [(timedelta(seconds=10), False), (timedelta(seconds=30), True), (timedelta(minutes=2), True)],
    )
    def test_half_lag(self, age, expected):
        assert freshness_mod.is_due(timedelta(minutes=1), NOW - age, NOW, 0.5) is expected

    def test_naive_timestamp_treated_as_utc(self):
        naive = (NOW - timedelta(minutes=2)).replace(tzinfo=None)

        assert freshness_mod.is_due(timedelta(minutes=1), naive, NOW)


class TestCheckFreshness:
    def test_fresh(self, ok_payments):
        result = freshness_mod.check_freshness(
            [ok_payments],
            {"ok_payments": timedelta(minutes=1)},
            {"ok_payments": _header("ok_payments", timedelta(seconds=20))},
            now=NOW,
        )

        entry = result.get("ok_payments")
        assert entry.status == "fresh"
        assert entry.staleness == timedelta(seconds=20)
        assert entry.row_count == 3
        assert not result.has_stale
        assert not result.has_unknown

    def test_stale_emits_warning(self, ok_payments):
        with pytest.warns(errors.StalenessWarning, match="ok_payments"):
            result = freshness_mod.check_freshness(
                [ok_payments],
                {"ok_payments": timedelta(minutes=1)},
                {"ok_payments": _header("ok_payments", timedelta(minutes=3))},
                now=NOW,
            )

        assert result.get("ok_payments").status == "warn"
        assert result.has_stale

    def test_warning_can_be_disabled(self, ok_payments):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            result = freshness_mod.check_freshness(
                [ok_payments],
                {"ok_payments": timedelta(minutes=1)},
                {"ok_payments": _header("ok_payments", timedelta(minutes=3))},
                now=NOW,
                warn=False,
            )

        assert result.has_stale

    def test_never_refreshed_is_unknown(self, ok_payments):
        result = freshness_mod.check_freshness(
            [ok_payments], {"ok_payments": timedelta(minutes=1)}, {"ok_payments": None}, now=NOW
        )

        assert result.get("ok_payments").status == "unknown"
        assert result.has_unknown
        assert not result.has_stale

    def test_unresolved_lag_is_never_stale(self, payments_raw):
        leaf = core.DynamicTable(name="leaf", source=payments_raw, target_lag="downstream")

        result = freshness_mod.check_freshness(
            [leaf], {"leaf": None}, {"leaf": _header("leaf", timedelta(days=3))}, now=NOW
        )

        assert result.get("leaf").status == "fresh"
        assert result.get("leaf").target_lag == "downstream"
