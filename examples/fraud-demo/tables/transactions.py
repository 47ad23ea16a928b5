"""Fraud detection pipeline: raw, clean and aggregation layers."""

from freshtable.fraud_demo import (
    daily_transaction_summary,
    fraud_risk_summary,
    transactions_clean,
    transactions_raw,
)

__all__ = [
    "transactions_raw",
    "transactions_clean",
    "daily_transaction_summary",
    "fraud_risk_summary",
]
