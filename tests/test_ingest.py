"""Tests for raw table record validation."""

from __future__ import annotations

import pyarrow as pa
import pytest

import freshtable.errors as errors
import freshtable.ingest as ingest


class TestValidateRecords:
    def test_valid_batch(self, payments_raw, make_payment):
        batch = ingest.validate_records(
            payments_raw, [make_payment(1, "ann", 10.0), make_payment(2, "bob", 0.0)]
        )

        assert batch.num_rows == 2
        assert batch.schema == payments_raw.arrow_schema()

    def test_optional_fields_may_be_missing(self, payments_raw):
        batch = ingest.validate_records(payments_raw, [{"payment_id": 1, "status": "OK"}])

        assert batch.to_pylist()[0]["amount"] is None

    def test_arrow_input(self, payments_raw, make_payment):
        data = pa.Table.from_pylist([make_payment(1, "ann", 10.0)])

        assert ingest.validate_records(payments_raw, data).num_rows == 1

    def test_collects_every_invalid_row(self, payments_raw, make_payment):
        records = [
            make_payment(1, "ann", 10.0),
            make_payment(2, "ann", -5.0),
            make_payment(3, "bob", 1.0, status="LOST"),
            {"customer": "carl"},
        ]

        with pytest.raises(errors.RecordValidationError) as exc_info:
            ingest.validate_records(payments_raw, records)

        rows = [idx for idx, _ in exc_info.value.issues]
        assert rows == [1, 2, 3]
        assert "amount" in exc_info.value.issues[0][1]
        assert "status" in exc_info.value.issues[1][1]
        assert "payment_id" in exc_info.value.issues[2][1]

    def test_unknown_field_rejected(self, payments_raw, make_payment):
        record = {**make_payment(1, "ann", 10.0), "country": "UK"}

        with pytest.raises(errors.RecordValidationError, match="country"):
            ingest.validate_records(payments_raw, [record])

    def test_wrong_type_rejected(self, payments_raw, make_payment):
        record = {**make_payment(1, "ann", 10.0), "amount": "lots"}

        with pytest.raises(errors.RecordValidationError, match="amount"):
            ingest.validate_records(payments_raw, [record])

    @pytest.mark.parametrize("status", [None, "missing"])
    def test_allowed_values_field_is_required(self, payments_raw, make_payment, status):
        record = make_payment(1, "ann", 10.0)
        if status == "missing":
            del record["status"]
        else:
            record["status"] = status

        with pytest.raises(errors.RecordValidationError, match="status"):
            ingest.validate_records(payments_raw, [record])

    @pytest.mark.parametrize("amount", [float("nan"), float("inf")])
    def test_non_finite_float_rejected(self, payments_raw, make_payment, amount):
        with pytest.raises(errors.RecordValidationError, match="amount"):
            ingest.validate_records(payments_raw, [make_payment(1, "ann", amount)])


class TestFraudTransactions:
    def _transaction(self, **overrides):
        import freshtable.fraud_demo as fraud_demo

        return {**fraud_demo.SAMPLE_TRANSACTIONS[0], **overrides}

    def test_sample_transaction_is_valid(self):
        import freshtable.fraud_demo as fraud_demo

        batch = ingest.validate_records(fraud_demo.transactions_raw, [self._transaction()])

        assert batch.num_rows == 1

    def test_null_status_rejected(self, fraud_pipeline):
        with pytest.raises(errors.RecordValidationError, match="status"):
            fraud_pipeline.insert("transactions_raw", [self._transaction(status=None)])

        assert fraud_pipeline.read("transactions_raw").num_rows == 0

    def test_nan_risk_score_rejected(self, fraud_pipeline):
        with pytest.raises(errors.RecordValidationError, match="risk_score"):
            fraud_pipeline.insert(
                "transactions_raw", [self._transaction(risk_score=float("nan"))]
            )

        assert fraud_pipeline.read("transactions_raw").num_rows == 0


class TestUniqueness:
    def test_duplicate_primary_key_in_batch(self, payments_raw, make_payment):
        records = [make_payment(1, "ann", 10.0), make_payment(1, "bob", 5.0)]

        with pytest.raises(errors.RecordValidationError) as exc_info:
            ingest.validate_records(payments_raw, records)

        assert exc_info.value.issues == [(1, "payment_id: duplicate value 1")]

    def test_duplicate_against_existing(self, payments_raw, make_payment):
        existing = ingest.validate_records(payments_raw, [make_payment(7, "ann", 1.0)])

        with pytest.raises(errors.RecordValidationError, match="duplicate value 7"):
            ingest.validate_records(
                payments_raw, [make_payment(7, "bob", 2.0)], existing
            )

    def test_unique_columns(self, payments_raw):
        assert ingest.unique_columns(payments_raw) == ["payment_id"]


def test_record_model_enforces_bounds(payments_raw):
    model = ingest.build_record_model(payments_raw)

    assert model.model_fields["amount"].is_required() is False
    assert model.model_fields["payment_id"].is_required() is True
    assert model.model_fields["status"].is_required() is True
