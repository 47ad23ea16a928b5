"""Tests for the freshtable CLI."""

from __future__ import annotations

import pytest

import freshtable.cli as cli
import freshtable.output as output_mod
from freshtable.cli import app

DEFINITIONS = '''
import freshtable.core as core


class PaymentSchema(core.Schema):
    payment_id = core.Field(dtype="int64", not_null=True)
    customer = core.Field(dtype="string")
    amount = core.Field(dtype="float64", ge=0)


payments = core.RawTable(name="payments", schema=PaymentSchema, primary_key="payment_id")

spend = core.DynamicTable(
    name="spend",
    source=payments,
    target_lag="1 minute",
    group_by=["customer"],
)
spend.aggregate("total", column="amount", function="sum")
'''


def run_cli(args: list[str]) -> None:
    """Run CLI command, catching successful exit."""
    try:
        app(args)
    except SystemExit as e:
        if e.code not in (0, None):
            raise


@pytest.fixture(autouse=True)
def wide_console(monkeypatch):
    """Keep rich from wrapping table cells in captured output."""
    monkeypatch.setattr(cli.console, "width", 200)
    monkeypatch.setattr(output_mod.console, "width", 200)


@pytest.fixture
def project_dir(tmp_path, monkeypatch):
    """Minimal project with one raw and one dynamic table."""
    (tmp_path / "freshtable.yaml").write_text(
        """
name: cli-test
default_env: dev
scheduler:
  retry_backoff_seconds: 0
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
    (tables / "defs.py").write_text(DEFINITIONS)
    (tmp_path / "payments.csv").write_text(
        "payment_id,customer,amount\n1,ann,10.0\n2,ann,5.5\n3,bob,2.0\n"
    )
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def applied_project(project_dir, capsys):
    run_cli(["up", "--yes"])
    capsys.readouterr()
    return project_dir


class TestUp:
    def test_up_creates_tables(self, project_dir, capsys):
        run_cli(["up", "--yes"])

        out = capsys.readouterr().out
        assert "payments" in out
        assert "spend" in out
        assert "Apply complete!" in out
        assert (project_dir / ".freshtable" / "data" / "test" / "spend.parquet").exists()

    def test_dry_run_changes_nothing(self, project_dir, capsys):
        run_cli(["up", "--dry-run"])

        out = capsys.readouterr().out
        assert "Preview" in out
        assert "2 created" in out
        assert not (project_dir / ".freshtable" / "data").exists()

    def test_second_up_has_no_changes(self, applied_project, capsys):
        run_cli(["up", "--yes"])

        assert "No changes to apply." in capsys.readouterr().out

    def test_no_refresh(self, project_dir):
        run_cli(["up", "--yes", "--no-refresh"])

        assert not (project_dir / ".freshtable" / "data" / "test" / "spend.parquet").exists()

    def test_missing_config(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)

        with pytest.raises(SystemExit) as exc_info:
            app(["up", "--yes"])

        assert exc_info.value.code == 1
        assert "Configuration file not found" in capsys.readouterr().out


class TestIngestAndRefresh:
    def test_ingest_refresh_query(self, applied_project, capsys):
        run_cli(["ingest", "payments", "payments.csv"])
        assert "Loaded 3 record(s) into payments" in capsys.readouterr().out

        run_cli(["refresh"])
        out = capsys.readouterr().out
        assert "spend" in out
        assert "INCREMENTAL" in out
        assert "1 succeeded" in out

        run_cli(["query", "SELECT customer, total FROM spend ORDER BY customer"])
        out = capsys.readouterr().out
        assert "15.5" in out
        assert "2 row(s)" in out

    def test_ingest_invalid_file(self, applied_project, capsys):
        (applied_project / "bad.csv").write_text("payment_id,customer,amount\n1,ann,-1.0\n")

        with pytest.raises(SystemExit) as exc_info:
            app(["ingest", "payments", "bad.csv"])

        assert exc_info.value.code == 1
        assert "invalid record" in capsys.readouterr().out

    def test_refresh_unknown_table(self, applied_project, capsys):
        with pytest.raises(SystemExit) as exc_info:
            app(["refresh", "nope"])

        assert exc_info.value.code == 1
        assert "nope" in capsys.readouterr().out

    def test_query_with_bad_sql(self, applied_project, capsys):
        with pytest.raises(SystemExit) as exc_info:
            app(["query", "SELEC customer FROM spend"])

        assert exc_info.value.code == 1
        out = capsys.readouterr().out
        assert "Error:" in out
        assert "Running query: SELEC customer FROM spend" in out


class TestInspection:
    def test_show(self, applied_project, capsys):
        run_cli(["show"])

        out = capsys.readouterr().out
        assert "spend" in out
        assert "ACTIVE" in out
        assert "1m" in out

    def test_describe(self, applied_project, capsys):
        run_cli(["describe", "spend"])

        out = capsys.readouterr().out
        assert "dynamic_table" in out
        assert "Source: payments" in out
        assert "SQL:" in out

    def test_history(self, applied_project, capsys):
        run_cli(["history", "spend"])

        out = capsys.readouterr().out
        assert "REINITIALIZE" in out
        assert "CREATION" in out

    def test_freshness(self, applied_project, capsys):
        run_cli(["freshness"])

        assert "fresh" in capsys.readouterr().out


class TestSuspendResume:
    def test_suspend_then_resume(self, applied_project, capsys):
        run_cli(["suspend", "spend"])
        assert "Suspended spend" in capsys.readouterr().out

        run_cli(["show"])
        assert "SUSPENDED" in capsys.readouterr().out

        run_cli(["resume", "spend"])
        assert "Resumed spend" in capsys.readouterr().out

    def test_suspend_raw_table(self, applied_project):
        with pytest.raises(SystemExit) as exc_info:
            app(["suspend", "payments"])

        assert exc_info.value.code == 1


def test_demo(tmp_path, capsys):
    run_cli(["demo", "--path", str(tmp_path)])

    out = capsys.readouterr().out
    assert "transactions_clean" in out
    assert "Refresh complete" in out
    assert "fraud_risk_summary" in out
    assert (tmp_path / "registry.db").exists()
