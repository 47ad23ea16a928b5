"""Output checks for dynamic tables.

Evaluates Field constraints (not_null, ge, gt, le, lt, allowed_values,
unique) against a freshly computed result using PyArrow compute. Checks run
after compute and before write, so a failing error-severity check leaves
the previous snapshot in place.
"""

from __future__ import annotations

from dataclasses import dataclass

import pyarrow as pa
import pyarrow.compute as pc

import freshtable.core as core

_COMPARISONS = {
    "ge": (pc.less, ">="),
    "gt": (pc.less_equal, ">"),
    "le": (pc.greater, "<="),
    "lt": (pc.greater_equal, "<"),
}


@dataclass(frozen=True)
class ConstraintResult:
    """Result of a single constraint check."""

    field_name: str
    constraint: str
    passed: bool
    severity: str  # "warn" or "error"
    expected: str
    rows_failed: int


@dataclass(frozen=True)
class CheckResult:
    """All constraint results for one computed table."""

    table_name: str
    results: list[ConstraintResult]
    rows_checked: int

    @property
    def passed(self) -> bool:
        """True if no error-severity constraint failed."""
        return not any(
            not r.passed and r.severity == "error" for r in self.results
        )

    @property
    def has_warnings(self) -> bool:
        return any(not r.passed and r.severity == "warn" for r in self.results)

    def failures(self, severity: str = "error") -> list[ConstraintResult]:
        return [
            r for r in self.results if not r.passed and r.severity == severity
        ]


def check_table(
    table_name: str,
    data: pa.Table,
    checks: dict[str, core.Field],
) -> CheckResult:
    """Run every declared check against ``data``.

    A check on a column missing from ``data`` fails with all rows counted.
    """
    results: list[ConstraintResult] = []
    rows = data.num_rows

    for name, field in checks.items():
        if name not in data.column_names:
            results.append(
                ConstraintResult(name, "exists", False, field.severity, "column present", rows)
            )
            continue
        column = data.column(name)

        if field.not_null:
            nulls = column.null_count
            results.append(
                ConstraintResult(name, "not_null", nulls == 0, field.severity, "no nulls", nulls)
            )

        valid = pc.drop_null(column)
        for constraint, (violates, symbol) in _COMPARISONS.items():
            threshold = getattr(field, constraint)
            if threshold is None:
                continue
            failed = 0
            if len(valid):
                failed = pc.sum(violates(valid, threshold)).as_py() or 0
            results.append(
                ConstraintResult(
                    name, constraint, failed == 0, field.severity, f"{symbol} {threshold}", failed
                )
            )

        if field.allowed_values is not None:
            allowed = pa.array(field.allowed_values, type=valid.type)
            inside = pc.is_in(valid, value_set=allowed)
            failed = len(valid) - (pc.sum(inside).as_py() or 0)
            results.append(
                ConstraintResult(
                    name,
                    "allowed_values",
                    failed == 0,
                    field.severity,
                    f"in {field.allowed_values}",
                    failed,
                )
            )

        if field.unique:
            failed = len(valid) - len(pc.unique(valid))
            results.append(
                ConstraintResult(name, "unique", failed == 0, field.severity, "unique", failed)
            )

    return CheckResult(table_name=table_name, results=results, rows_checked=rows)
