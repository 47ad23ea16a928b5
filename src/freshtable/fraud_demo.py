"""Bank fraud detection pipeline.

Three layers over one stream of card and account transactions:

- ``transactions_raw``: every transaction as ingested.
- ``transactions_clean``: approved, non-fraudulent transactions (1 minute lag).
- ``daily_transaction_summary``: daily metrics per merchant category and
  country over the clean layer (5 minute lag).
- ``fraud_risk_summary``: daily fraud metrics per country over all
  transactions (2 minute lag).

Used by ``freshtable demo`` and as the definitions of examples/fraud-demo.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from freshtable.core import DynamicTable, Field, RawTable, Schema


class TransactionSchema(Schema):
    transaction_id = Field(dtype="int64", not_null=True, unique=True)
    transaction_ts = Field(dtype="datetime")
    account_id = Field(dtype="int64")
    customer_id = Field(dtype="int64")
    amount = Field(dtype="float64", ge=0)
    transaction_type = Field(dtype="string")
    merchant_name = Field(dtype="string")
    merchant_category = Field(dtype="string")
    location_city = Field(dtype="string")
    location_country = Field(dtype="string")
    device_id = Field(dtype="string")
    ip_address = Field(dtype="string")
    fraud_flag = Field(dtype="bool", not_null=True)
    risk_score = Field(dtype="float64", ge=0, le=1, description="0.0 low to 1.0 high risk")
    status = Field(
        dtype="string",
        not_null=True,
        allowed_values=["APPROVED", "DECLINED", "PENDING_REVIEW"],
    )


transactions_raw = RawTable(
    name="transactions_raw",
    description="Transaction data captured for fraud monitoring",
    schema=TransactionSchema,
    primary_key="transaction_id",
    timestamp_field="transaction_ts",
)


# --- Clean layer -------------------------------------------------------------

transactions_clean = DynamicTable(
    name="transactions_clean",
    description="Approved, non-fraudulent transactions for analytics",
    source=transactions_raw,
    target_lag="1 minute",
    columns=[
        name
        for name in TransactionSchema.field_names()
        if name not in ("fraud_flag", "status")
    ],
)


@transactions_clean.filter()
def approved_and_legitimate(t):
    return (t.status == "APPROVED") & ~t.fraud_flag


# --- Aggregation layer -------------------------------------------------------

daily_transaction_summary = DynamicTable(
    name="daily_transaction_summary",
    description="Daily transaction metrics per merchant category and country",
    source=transactions_clean,
    target_lag="5 minutes",
    group_by=["transaction_date", "merchant_category", "location_country"],
    checks={
        "total_amount": Field(dtype="float64", ge=0),
        "max_risk_score": Field(dtype="float64", le=1),
    },
)


@daily_transaction_summary.derive("transaction_date")
def daily_transaction_date(t):
    return t.transaction_ts.date()


daily_transaction_summary.aggregate("total_transactions", column="transaction_id", function="count")
daily_transaction_summary.aggregate("total_amount", column="amount", function="sum")
daily_transaction_summary.aggregate("avg_amount", column="amount", function="avg")
daily_transaction_summary.aggregate("avg_risk_score", column="risk_score", function="avg")
daily_transaction_summary.aggregate("max_risk_score", column="risk_score", function="max")
daily_transaction_summary.aggregate("unique_customers", column="customer_id", function="count_distinct")


fraud_risk_summary = DynamicTable(
    name="fraud_risk_summary",
    description="Daily fraud metrics per country across all statuses",
    source=transactions_raw,
    target_lag="2 minutes",
    group_by=["transaction_date", "location_country"],
    checks={
        "fraud_rate_percentage": Field(dtype="float64", ge=0, le=100),
    },
)


@fraud_risk_summary.derive("transaction_date")
def risk_transaction_date(t):
    return t.transaction_ts.date()


fraud_risk_summary.aggregate("total_transactions", column="transaction_id", function="count")
fraud_risk_summary.aggregate(
    "fraud_count", column="transaction_id", function="count", where=lambda t: t.fraud_flag
)
fraud_risk_summary.aggregate(
    "declined_count",
    column="transaction_id",
    function="count",
    where=lambda t: t.status == "DECLINED",
)
fraud_risk_summary.aggregate(
    "pending_review_count",
    column="transaction_id",
    function="count",
    where=lambda t: t.status == "PENDING_REVIEW",
)
fraud_risk_summary.aggregate("avg_risk_score", column="risk_score", function="avg")
fraud_risk_summary.aggregate(
    "fraud_amount_blocked", column="amount", function="sum", where=lambda t: t.fraud_flag
)


@fraud_risk_summary.metric("fraud_rate_percentage")
def fraud_rate_percentage(t):
    return (t.fraud_count * 100.0 / t.total_transactions).round(2)


TABLES = [
    transactions_raw,
    transactions_clean,
    daily_transaction_summary,
    fraud_risk_summary,
]


# --- Sample data -------------------------------------------------------------

_COLUMNS = TransactionSchema.field_names()


def _rows(values: list[tuple]) -> list[dict[str, Any]]:
    return [dict(zip(_COLUMNS, row)) for row in values]


SAMPLE_TRANSACTIONS: list[dict[str, Any]] = _rows(
    [
        # legitimate
        (1001, datetime(2024, 1, 1, 9, 15), 50001, 101, 45.99, "PURCHASE", "Starbucks", "FOOD_BEVERAGE", "New York", "USA", "DEV001", "192.168.1.100", False, 0.12, "APPROVED"),
        (1002, datetime(2024, 1, 1, 10, 30), 50002, 102, 125.50, "PURCHASE", "Amazon", "RETAIL", "Seattle", "USA", "DEV002", "192.168.1.101", False, 0.08, "APPROVED"),
        (1003, datetime(2024, 1, 1, 11, 45), 50001, 101, 2500.00, "ATM_WITHDRAWAL", "Chase Bank ATM", "BANKING", "New York", "USA", "DEV001", "192.168.1.100", False, 0.25, "APPROVED"),
        # suspicious, not confirmed fraud
        (1004, datetime(2024, 1, 1, 12, 0), 50003, 103, 8500.00, "WIRE_TRANSFER", "Unknown Recipient", "TRANSFER", "Lagos", "Nigeria", "DEV003", "41.203.45.22", False, 0.78, "PENDING_REVIEW"),
        (1005, datetime(2024, 1, 1, 12, 15), 50002, 102, 3200.00, "PURCHASE", "Luxury Watches Ltd", "JEWELRY", "Hong Kong", "China", "DEV999", "103.45.67.89", False, 0.82, "PENDING_REVIEW"),
        # confirmed fraud
        (1006, datetime(2024, 1, 1, 13, 0), 50004, 104, 15000.00, "WIRE_TRANSFER", "Offshore Account", "TRANSFER", "Unknown", "Cayman Islands", "DEV888", "185.220.101.45", True, 0.95, "DECLINED"),
        (1007, datetime(2024, 1, 1, 13, 30), 50001, 101, 5000.00, "PURCHASE", "Electronics Depot", "ELECTRONICS", "Moscow", "Russia", "DEV777", "95.142.33.78", True, 0.91, "DECLINED"),
        (1008, datetime(2024, 1, 1, 14, 0), 50005, 105, 9999.99, "ATM_WITHDRAWAL", "Street ATM", "BANKING", "Unknown", "Romania", "DEV666", "89.47.201.33", True, 0.98, "DECLINED"),
    ]
)


def refresh_batch(ts: datetime) -> list[dict[str, Any]]:
    """Three approved transactions stamped ``ts``, used to show a refresh."""
    return _rows(
        [
            (1009, ts, 50006, 106, 50.75, "PURCHASE", "Target Store", "RETAIL", "Chicago", "USA", "DEV004", "192.168.1.105", False, 0.15, "APPROVED"),
            (1010, ts, 50006, 106, 1250.35, "GASOLINE", "North East Gas", "RETAIL", "Austin", "USA", "DEV004", "197.128.1.102", False, 0.15, "APPROVED"),
            (1011, ts, 50006, 106, 25.15, "AIRTIME", "Starlink", "INTERNET", "Seattle", "USA", "DEV004", "192.148.1.101", False, 0.15, "APPROVED"),
        ]
    )


# --- Analytics queries -------------------------------------------------------

ANALYTICS_QUERIES: dict[str, str] = {
    "daily_summary": """
        SELECT *
        FROM daily_transaction_summary
        ORDER BY transaction_date DESC, total_amount DESC
    """,
    "fraud_by_country": """
        SELECT *
        FROM fraud_risk_summary
        WHERE fraud_count > 0
        ORDER BY fraud_rate_percentage DESC
    """,
    "high_risk_countries": """
        SELECT
            location_country,
            SUM(total_transactions) AS total_txns,
            SUM(fraud_count) AS total_fraud,
            AVG(fraud_rate_percentage) AS avg_fraud_rate,
            SUM(fraud_amount_blocked) AS total_blocked_amount
        FROM fraud_risk_summary
        GROUP BY location_country
        HAVING SUM(fraud_count) > 0
        ORDER BY avg_fraud_rate DESC
    """,
}
