"""Tests for dynamic table output checks."""

from __future__ import annotations

import pyarrow as pa

import freshtable.core as core
import freshtable.quality as quality


def _data():
    return pa.table(
        {
            "total": [10.0, -1.0, None],
            "rate": [0.5, 1.5, 0.2],
            "country": ["UK", "FR", "XX"],
        }
    )


class TestCheckTable:
    def test_all_pass(self):
        result = quality.check_table(
            "summary", _data(), {"rate": core.Field(dtype="float64", ge=0)}
        )

        assert result.passed
        assert result.rows_checked == 3
        assert not result.has_warnings

    def test_range_failure(self):
        result = quality.check_table(
            "summary", _data(), {"total": core.Field(dtype="float64", ge=0)}
        )

        assert not result.passed
        [failure] = result.failures()
        assert failure.constraint == "ge"
        assert failure.rows_failed == 1
        assert failure.expected == ">= 0.0"

    def test_not_null(self):
        result = quality.check_table(
            "summary", _data(), {"total": core.Field(dtype="float64", not_null=True)}
        )

        [failure] = result.failures()
        assert failure.constraint == "not_null"
        assert failure.rows_failed == 1

    def test_allowed_values(self):
        result = quality.check_table(
            "summary",
            _data(),
            {"country": core.Field(dtype="string", allowed_values=["UK", "FR"])},
        )

        [failure] = result.failures()
        assert failure.constraint == "allowed_values"
        assert failure.rows_failed == 1

    def test_unique(self):
        data = pa.table({"id": [1, 1, 2]})

        result = quality.check_table("t", data, {"id": core.Field(dtype="int64", unique=True)})

        assert result.failures()[0].rows_failed == 1

    def test_warn_severity_does_not_fail(self):
        result = quality.check_table(
            "summary",
            _data(),
            {"rate": core.Field(dtype="float64", le=1, severity="warn")},
        )

        assert result.passed
        assert result.has_warnings
        assert result.failures("warn")[0].rows_failed == 1

    def test_missing_column(self):
        result = quality.check_table(
            "summary", _data(), {"missing": core.Field(dtype="float64")}
        )

        assert not result.passed
        assert result.failures()[0].constraint == "exists"
