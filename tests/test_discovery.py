"""Tests for definition discovery and serialization."""

from __future__ import annotations

from datetime import timedelta

import pytest

import freshtable.core as core
import freshtable.discovery as discovery
import freshtable.settings as settings

DEFINITIONS = """
import freshtable.core as core


class OrderSchema(core.Schema):
    order_id = core.Field(dtype="int64", not_null=True)
    amount = core.Field(dtype="float64")


orders = core.RawTable(name="orders", schema=OrderSchema, primary_key="order_id")

big_orders = core.DynamicTable(name="big_orders", source=orders, target_lag="30 seconds")


@big_orders.filter()
def big(t):
    return t.amount > 100
"""


@pytest.fixture
def project_dir(tmp_path):
    (tmp_path / "freshtable.yaml").write_text(
        """
name: discovery-test
default_env: dev
environments:
  dev:
    registry:
      kind: sqlite
      path: .freshtable/registry.db
    backend:
      kind: duckdb
      path: .freshtable/data
      catalog: test
"""
    )
    tables = tmp_path / "tables"
    tables.mkdir()
    (tables / "orders.py").write_text(DEFINITIONS)
    (tables / "_helpers.py").write_text("raise RuntimeError('never imported')\n")
    return tmp_path


class TestDiscovery:
    def test_discovers_tables(self, project_dir):
        loaded = settings.load_freshtable_settings(project_dir / "freshtable.yaml")

        discovered = discovery.discover_definitions(loaded)

        assert sorted((d.kind, d.name) for d in discovered) == [
            ("dynamic_table", "big_orders"),
            ("raw_table", "orders"),
        ]
        assert all(d.source_file.endswith("orders.py") for d in discovered)

    def test_single_file_entry(self, project_dir):
        config = project_dir / "freshtable.yaml"
        config.write_text(config.read_text() + "definitions:\n  - tables/orders.py\n")
        loaded = settings.load_freshtable_settings(config)

        assert len(discovery.discover_definitions(loaded)) == 2

    def test_missing_path_ignored(self, project_dir):
        config = project_dir / "freshtable.yaml"
        config.write_text(config.read_text() + "definitions:\n  - nowhere/\n")
        loaded = settings.load_freshtable_settings(config)

        assert discovery.discover_definitions(loaded) == []

    def test_no_settings(self):
        assert discovery.discover_definitions(None) == []


class TestSerialize:
    def test_raw_table(self, payments_raw):
        spec = discovery.serialize_to_spec(payments_raw)

        assert spec["name"] == "payments"
        assert spec["primary_key"] == "payment_id"
        assert list(spec["schema"]) == [
            "payment_id",
            "paid_at",
            "customer",
            "amount",
            "status",
        ]
        assert spec["schema"]["amount"]["ge"] == 0

    def test_dynamic_table(self, spend_by_customer):
        spec = discovery.serialize_to_spec(spend_by_customer)

        assert spec["source"] == {"type": "dynamic_table", "name": "ok_payments"}
        assert spec["target_lag"] == 300
        assert spec["group_by"] == ["customer"]
        assert [a["name"] for a in spec["aggregates"]] == ["payments", "total", "largest"]
        assert "SELECT" in spec["sql"].upper()

    def test_downstream_lag(self, payments_raw):
        table = core.DynamicTable(name="v", source=payments_raw, target_lag="downstream")

        assert discovery.serialize_to_spec(table)["target_lag"] == "downstream"

    def test_spec_json_is_deterministic(self, ok_payments):
        first = discovery.spec_to_json(discovery.serialize_to_spec(ok_payments))
        second = discovery.spec_to_json(discovery.serialize_to_spec(ok_payments))

        assert first == second


class TestHashes:
    def _view(self, source, lag="1 minute", threshold=100):
        table = core.DynamicTable(name="v", source=source, target_lag=lag)

        @table.filter()
        def big(t):
            return t.amount > threshold

        return table

    def test_lag_change_keeps_definition_hash(self, payments_raw):
        fast = self._view(payments_raw, lag="1 minute")
        slow = self._view(payments_raw, lag="1 hour")

        assert discovery.spec_hash(fast) != discovery.spec_hash(slow)
        assert discovery.definition_hash(fast) == discovery.definition_hash(slow)

    def test_query_change_changes_definition_hash(self, payments_raw):
        assert discovery.definition_hash(
            self._view(payments_raw, threshold=100)
        ) != discovery.definition_hash(self._view(payments_raw, threshold=200))

    def test_lag_to_spec(self):
        assert discovery.lag_to_spec(timedelta(minutes=2)) == 120
        assert discovery.lag_to_spec("downstream") == "downstream"
