"""Tests for the SQLite registry."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import freshtable.registry as registry_types


def _obj(name: str, spec_hash: str = "h1") -> registry_types.ObjectRecord:
    return registry_types.ObjectRecord(
        kind="raw_table", name=name, spec_hash=spec_hash, spec_json="{}", version=0
    )


def _refresh(table_name: str, state: str = "SUCCEEDED", offset: int = 0) -> registry_types.RefreshRecord:
    start = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc) + timedelta(minutes=offset)
    return registry_types.RefreshRecord(
        id=None,
        table_name=table_name,
        state=state,
        refresh_action="FULL" if state == "SUCCEEDED" else None,
        refresh_trigger="MANUAL",
        refresh_start_time=start,
        refresh_end_time=start + timedelta(seconds=2),
        data_timestamp=start if state == "SUCCEEDED" else None,
        row_count=10 if state == "SUCCEEDED" else None,
        rows_changed=10 if state == "SUCCEEDED" else None,
        error=None if state == "SUCCEEDED" else "boom",
    )


class TestInitialize:
    def test_seeds_metadata(self, registry):
        assert registry.get_meta("serial") == "0"
        assert registry.get_meta("lineage") is not None
        assert registry.get_meta("freshtable_version") == "0.1.0"

    def test_idempotent(self, registry):
        lineage = registry.get_meta("lineage")

        registry.initialize()

        assert registry.get_meta("lineage") == lineage


class TestObjects:
    def test_create_and_update(self, registry):
        registry.put_object(_obj("payments"), applied_by="ann@host")
        registry.put_object(_obj("payments", "h2"), applied_by="ann@host")

        stored = registry.get_object("raw_table", "payments")
        assert stored.version == 2
        assert stored.spec_hash == "h2"
        assert registry.get_meta("serial") == "2"

        changelog = registry.get_changelog()
        assert [c.operation for c in changelog] == ["update", "create"]
        assert changelog[0].old_hash == "h1"
        assert changelog[0].applied_by == "ann@host"

    def test_list_objects(self, registry):
        registry.put_object(_obj("b"), applied_by="x")
        registry.put_object(_obj("a"), applied_by="x")

        assert [o.name for o in registry.list_objects("raw_table")] == ["a", "b"]
        assert registry.list_objects("dynamic_table") == []

    def test_delete(self, registry):
        registry.put_object(_obj("payments"), applied_by="x")

        registry.delete_object("raw_table", "payments", applied_by="x")

        assert registry.get_object("raw_table", "payments") is None
        assert registry.get_changelog()[0].operation == "delete"

    def test_delete_missing_is_noop(self, registry):
        registry.delete_object("raw_table", "nothing", applied_by="x")

        assert registry.get_changelog() == []


class TestRefreshHistory:
    def test_newest_first(self, registry):
        registry.put_refresh_record(_refresh("ok_payments", offset=0))
        registry.put_refresh_record(_refresh("ok_payments", "FAILED", offset=1))
        registry.put_refresh_record(_refresh("spend", offset=2))

        history = registry.get_refresh_history()
        assert [r.table_name for r in history] == ["spend", "ok_payments", "ok_payments"]

        latest = registry.get_latest_refresh("ok_payments")
        assert latest.state == "FAILED"
        assert latest.error == "boom"
        assert latest.data_timestamp is None

    def test_round_trip(self, registry):
        record = _refresh("ok_payments")
        registry.put_refresh_record(record)

        [stored] = registry.get_refresh_history("ok_payments")
        assert stored.id is not None
        assert stored.refresh_start_time == record.refresh_start_time
        assert stored.data_timestamp == record.data_timestamp
        assert stored.duration_ms == 2000
        assert stored.row_count == 10

    def test_limit(self, registry):
        for i in range(5):
            registry.put_refresh_record(_refresh("ok_payments", offset=i))

        assert len(registry.get_refresh_history("ok_payments", limit=3)) == 3
        assert registry.get_latest_refresh("other") is None


class TestStatus:
    def test_put_and_get(self, registry):
        now = datetime.now(timezone.utc)
        registry.put_status(_status("ok_payments", "SUSPENDED", 5, now))

        status = registry.get_status("ok_payments")
        assert status.scheduling_state == "SUSPENDED"
        assert status.consecutive_failures == 5
        assert status.updated_at == now

    def test_missing(self, registry):
        assert registry.get_status("ok_payments") is None

    def test_delete_object_clears_status(self, registry):
        registry.put_object(
            _dynamic_obj("ok_payments"), applied_by="x"
        )
        registry.put_status(
            _status("ok_payments", "SUSPENDED", 1, datetime.now(timezone.utc))
        )

        registry.delete_object("dynamic_table", "ok_payments", applied_by="x")

        assert registry.get_status("ok_payments") is None


def _status(name, state, failures, updated_at):
    return registry_types.TableStatus(
        table_name=name,
        scheduling_state=state,
        consecutive_failures=failures,
        updated_at=updated_at,
    )


def _dynamic_obj(name):
    return registry_types.ObjectRecord(
        kind="dynamic_table", name=name, spec_hash="h", spec_json="{}", version=0
    )


def test_compute_spec_hash_is_stable():
    assert registry_types.compute_spec_hash("{}") == registry_types.compute_spec_hash("{}")
    assert len(registry_types.compute_spec_hash("{}")) == 64
