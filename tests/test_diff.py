"""Tests for the definition diff engine."""

from __future__ import annotations

import freshtable.core as core
import freshtable.diff as diff
import freshtable.discovery as discovery
import freshtable.registry as registry_types


def _store(registry, table) -> None:
    spec_json = discovery.spec_to_json(discovery.serialize_to_spec(table))
    registry.put_object(
        registry_types.ObjectRecord(
            kind=table.kind,
            name=table.name,
            spec_hash=registry_types.compute_spec_hash(spec_json),
            spec_json=spec_json,
            version=0,
        ),
        applied_by="test",
    )


class TestComputeDiff:
    def test_everything_new(self, registry, payment_tables):
        result = diff.compute_diff(payment_tables, registry)

        assert len(result.creates) == 3
        assert result.has_changes
        assert result.summary() == "3 created"

    def test_unchanged(self, registry, payment_tables):
        for table in payment_tables:
            _store(registry, table)

        result = diff.compute_diff(payment_tables, registry)

        assert not result.has_changes
        assert len(result.unchanged) == 3
        assert result.summary() == "3 unchanged"

    def test_update_and_delete(self, registry, payments_raw, ok_payments, spend_by_customer):
        for table in (payments_raw, ok_payments, spend_by_customer):
            _store(registry, table)

        slower = core.DynamicTable(
            name="ok_payments",
            source=payments_raw,
            target_lag="10 minutes",
            columns=ok_payments.columns,
        )

        @slower.filter()
        def accepted(t):
            return t.status == "OK"

        result = diff.compute_diff([payments_raw, slower], registry)

        assert [c.name for c in result.updates] == ["ok_payments"]
        assert [c.name for c in result.deletes] == ["spend_by_customer"]
        assert result.updates[0].old_hash != result.updates[0].new_hash
        assert result.deletes[0].new_hash is None
        assert result.summary() == "1 updated, 1 deleted, 1 unchanged"

    def test_changes_sorted_by_kind_and_name(self, registry, payment_tables):
        result = diff.compute_diff(payment_tables, registry)

        assert [(c.kind, c.name) for c in result.changes] == [
            ("dynamic_table", "ok_payments"),
            ("dynamic_table", "spend_by_customer"),
            ("raw_table", "payments"),
        ]
