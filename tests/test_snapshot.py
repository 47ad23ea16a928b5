"""Tests for snapshot headers and Parquet storage."""

from __future__ import annotations

import threading
from datetime import datetime, timezone

import pyarrow as pa
import pytest

import freshtable.formats as formats
import freshtable.snapshot as snapshot


@pytest.fixture
def header():
    return snapshot.TableSnapshot(
        table_name="ok_payments",
        data_version=3,
        generation=1,
        row_count=2,
        spec_hash="abc",
        data_timestamp=datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc),
        frontier={"payments": snapshot.SourceFrontier(0, 5, 4)},
    )


class TestTableSnapshot:
    def test_json_round_trip(self, header):
        assert snapshot.TableSnapshot.from_json(header.to_json()) == header

    def test_attach_and_strip(self, header):
        data = pa.table({"x": [1, 2]})

        stored = header.attach(data)

        assert snapshot.TableSnapshot.from_arrow(stored) == header
        assert snapshot.TableSnapshot.from_arrow(snapshot.strip_header(stored)) is None
        assert snapshot.strip_header(stored).equals(data)

    def test_position(self, header):
        assert header.position == snapshot.SourceFrontier(
            generation=1, row_count=2, data_version=3
        )

    def test_advance_returns_copy(self, header):
        advanced = header.advance(data_version=4)

        assert advanced.data_version == 4
        assert header.data_version == 3


class TestParquetFormat:
    def test_write_read(self, tmp_path, header):
        fmt = formats.ParquetFormat()
        path = tmp_path / "cat" / "ok_payments.parquet"

        fmt.write(path, header.attach(pa.table({"x": [1, 2]})))

        assert fmt.read(path).column("x").to_pylist() == [1, 2]
        assert snapshot.TableSnapshot.from_arrow(fmt.read_schema(path)) == header

    def test_replace_leaves_no_temp_files(self, tmp_path):
        fmt = formats.ParquetFormat(compression="none")
        path = tmp_path / "t.parquet"

        fmt.write(path, pa.table({"x": [1]}))
        fmt.write(path, pa.table({"x": [2, 3]}))

        assert fmt.read(path).num_rows == 2
        assert [p.name for p in tmp_path.iterdir()] == ["t.parquet"]


class TestDuckDBBackend:
    def test_missing_table(self, backend):
        assert backend.read_snapshot("nothing") is None
        assert backend.read_header("nothing") is None
        assert not backend.table_exists("nothing")

    def test_write_and_read(self, backend, header):
        backend.write_snapshot("ok_payments", pa.table({"x": [1, 2]}), header)

        data, stored = backend.read_snapshot("ok_payments")
        assert data.column("x").to_pylist() == [1, 2]
        assert stored == header
        assert backend.read_header("ok_payments") == header

    def test_drop_table(self, backend, header):
        backend.write_snapshot("ok_payments", pa.table({"x": [1]}), header)

        backend.drop_table("ok_payments")

        assert not backend.table_exists("ok_payments")

    def test_read_schema(self, backend, header):
        assert backend.read_schema("ok_payments") is None

        backend.write_snapshot("ok_payments", pa.table({"x": [1, 2]}), header)

        stored = backend.read_schema("ok_payments")
        assert stored.names == ["x"]
        assert snapshot.TableSnapshot.from_arrow(stored) == header

    def test_run_sql(self, backend):
        conn = backend.connect()

        result = backend.run_sql(
            conn, {"numbers": pa.table({"x": [1, 2, 3]})}, "SELECT SUM(x) AS s FROM numbers"
        )

        assert result.column("s").to_pylist() == [6]

    def test_format_string_shorthand(self, tmp_path):
        import freshtable.backends.duckdb as duckdb

        backend = duckdb.DuckDBBackend.model_validate(
            {"path": str(tmp_path), "catalog": "c", "format": "parquet"}
        )

        assert isinstance(backend.format, formats.ParquetFormat)


class TestConcurrentReads:
    def test_readers_see_whole_snapshots(self, payments_pipeline, make_payment):
        """Every read of a view matches the header stored with it."""
        stop = threading.Event()
        mismatches: list[str] = []
        failures: list[Exception] = []
        reads = 0
        sources = {"ok_payments": "payments", "spend_by_customer": "ok_payments"}

        def reader():
            nonlocal reads
            while not stop.is_set():
                try:
                    for name in ("ok_payments", "spend_by_customer"):
                        payments_pipeline.read(name)
                        payments_pipeline.read_header(name)
                        data, stored = payments_pipeline.backend.read_snapshot(name)
                        reads += 1
                        if stored.row_count != data.num_rows:
                            mismatches.append(f"{name}: {stored.row_count} != {data.num_rows}")
                        consumed = stored.frontier[sources[name]]
                        if name == "ok_payments":
                            ids = sorted(data.column("payment_id").to_pylist())
                            if ids != list(range(1, consumed.row_count + 1)):
                                mismatches.append(f"{name}: ids {ids}")
                        elif sum(data.column("payments").to_pylist()) != consumed.row_count:
                            mismatches.append(f"{name}: counts miss rows of {consumed.row_count}")
                except Exception as exc:
                    failures.append(exc)
                    return

        thread = threading.Thread(target=reader, daemon=True)
        thread.start()
        try:
            for i in range(1, 21):
                payments_pipeline.insert("payments", [make_payment(i, f"c{i % 3}", float(i))])
                payments_pipeline.refresh()
        finally:
            stop.set()
            thread.join(timeout=10)

        assert failures == []
        assert mismatches == []
        assert reads > 0
        assert payments_pipeline.read_header("ok_payments").row_count == 20
