"""Global test configuration and fixtures.

Applies workarounds that must be in place before any test module imports,
and provides small payment pipelines used across the refresh, pipeline
and scheduler tests.
"""

from __future__ import annotations

import decimal

# ---------------------------------------------------------------------------
# Python 3.14 workaround for sqlglot / ibis
# ---------------------------------------------------------------------------
# sqlglot's Oracle compiler triggers decimal.InvalidOperation when parsing
# the literal "binary_double_nan" during ibis backend initialization. On
# Python 3.14+ this crashes the import of ibis.backends.sql.compilers,
# leaving the module in a permanently broken state for the rest of the
# test session.
# ---------------------------------------------------------------------------
decimal.getcontext().traps[decimal.InvalidOperation] = False

from datetime import datetime  # noqa: E402

import pytest  # noqa: E402

import freshtable.backends.duckdb as duckdb  # noqa: E402
import freshtable.backends.sqlite as sqlite  # noqa: E402
import freshtable.core as core  # noqa: E402
import freshtable.pipeline as pipeline_mod  # noqa: E402
import freshtable.settings as settings  # noqa: E402


class PaymentSchema(core.Schema):
    payment_id = core.Field(dtype="int64", not_null=True)
    paid_at = core.Field(dtype="datetime")
    customer = core.Field(dtype="string")
    amount = core.Field(dtype="float64", ge=0)
    status = core.Field(dtype="string", allowed_values=["OK", "REFUSED"])


def payment(payment_id: int, customer: str, amount: float, status: str = "OK", day: int = 1) -> dict:
    return {
        "payment_id": payment_id,
        "paid_at": datetime(2024, 1, day, 12, 0),
        "customer": customer,
        "amount": amount,
        "status": status,
    }


@pytest.fixture
def backend(tmp_path):
    return duckdb.DuckDBBackend(path=str(tmp_path / "data"), catalog="test")


@pytest.fixture
def registry(tmp_path):
    reg = sqlite.SqliteRegistry(path=str(tmp_path / "registry.db"))
    reg.initialize()
    return reg


@pytest.fixture
def payments_raw():
    return core.RawTable(name="payments", schema=PaymentSchema, primary_key="payment_id")


@pytest.fixture
def ok_payments(payments_raw):
    """Filter view: accepted payments only."""
    table = core.DynamicTable(
        name="ok_payments",
        source=payments_raw,
        target_lag="1 minute",
        columns=["payment_id", "paid_at", "customer", "amount"],
    )

    @table.filter()
    def accepted(t):
        return t.status == "OK"

    return table


@pytest.fixture
def spend_by_customer(ok_payments):
    """Aggregate view over the filter view."""
    table = core.DynamicTable(
        name="spend_by_customer",
        source=ok_payments,
        target_lag="5 minutes",
        group_by=["customer"],
    )
    table.aggregate("payments", column="payment_id", function="count")
    table.aggregate("total", column="amount", function="sum")
    table.aggregate("largest", column="amount", function="max")
    return table


@pytest.fixture
def payment_tables(payments_raw, ok_payments, spend_by_customer):
    return [payments_raw, ok_payments, spend_by_customer]


@pytest.fixture
def scheduler_settings():
    return settings.SchedulerSettings(
        tick_interval_seconds=0.05,
        retry_backoff_seconds=0.0,
        max_retries=1,
        max_consecutive_failures=3,
    )


@pytest.fixture
def pipeline(backend, registry, scheduler_settings):
    return pipeline_mod.Pipeline(
        backend=backend, registry=registry, scheduler_settings=scheduler_settings
    )


@pytest.fixture
def payments_pipeline(pipeline, payment_tables):
    pipeline.apply(payment_tables)
    return pipeline


@pytest.fixture
def fraud_pipeline(pipeline):
    import freshtable.fraud_demo as fraud_demo

    pipeline.apply(fraud_demo.TABLES)
    return pipeline


@pytest.fixture
def make_payment():
    return payment
