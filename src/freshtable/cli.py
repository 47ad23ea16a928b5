"""freshtable CLI -- declarative dynamic tables kept within a target lag.

Declare raw and dynamic tables in Python, ingest records, and let the
scheduler refresh derived tables incrementally.
"""

from __future__ import annotations

import getpass
import socket
import tempfile
import time
from datetime import datetime
from pathlib import Path
from typing import Annotated

import cyclopts
from loguru import logger
from rich.console import Console

import freshtable.diff as diff
import freshtable.discovery as discovery
import freshtable.errors as errors
import freshtable.output as output
import freshtable.pipeline as pipeline_mod
import freshtable.settings as settings

# Version is defined here and in pyproject.toml
__version__ = "0.1.0"

console = Console()

app = cyclopts.App(
    name="freshtable",
    help="Declarative dynamic tables kept fresh by incremental refresh.",
    version=__version__,
)


def _handle_error(e: errors.FreshtableError) -> None:
    """Display a structured error message."""
    console.print(f"[bold red]Error:[/bold red] {e.context}\n")
    console.print(f"[yellow]Cause:[/yellow] {e.cause}\n")
    console.print(f"[green]Fix:[/green] {e.fix}")


def _get_applied_by() -> str:
    """Get user@hostname string for changelog."""
    return f"{getpass.getuser()}@{socket.gethostname()}"


def _connect(env_name: str | None) -> pipeline_mod.Pipeline:
    t0 = time.perf_counter()
    pipeline = pipeline_mod.connect(env=env_name)
    logger.debug(
        f"Connect: {(time.perf_counter() - t0) * 1000:.1f}ms ({len(pipeline.tables)} tables)"
    )
    return pipeline


EnvOption = Annotated[
    str | None,
    cyclopts.Parameter(name="--env", help="Environment to use"),
]


@app.command
def up(
    dry_run: Annotated[
        bool,
        cyclopts.Parameter(name="--dry-run", help="Preview changes without applying"),
    ] = False,
    yes: Annotated[
        bool,
        cyclopts.Parameter(name="--yes", help="Skip confirmation prompt"),
    ] = False,
    no_refresh: Annotated[
        bool,
        cyclopts.Parameter(
            name="--no-refresh",
            help="Do not run the initial refresh of new or changed dynamic tables",
        ),
    ] = False,
    env_name: EnvOption = None,
):
    """Sync table definitions to the registry.

    New and changed dynamic tables are refreshed right away unless
    --no-refresh is given.
    """
    try:
        freshtable_settings = settings.load_freshtable_settings(env=env_name)

        t0 = time.perf_counter()
        discovered = discovery.discover_definitions(freshtable_settings)
        tables = [d.obj for d in discovered]
        logger.debug(
            f"Discovery: {(time.perf_counter() - t0) * 1000:.1f}ms ({len(tables)} objects)"
        )

        pipeline = pipeline_mod.Pipeline(freshtable_settings)
        pipeline.register(tables)

        t0 = time.perf_counter()
        preview = diff.compute_diff(pipeline.tables, pipeline.registry)
        logger.debug(
            f"Diff: {(time.perf_counter() - t0) * 1000:.1f}ms ({len(preview.changes)} changes)"
        )

        label = "Preview" if dry_run else "Changes"
        console.print(f"[bold]{label} for {freshtable_settings.active_env}:[/bold]")
        console.print()
        output.render_diff(preview)

        if dry_run:
            return
        if not preview.has_changes:
            output.render_no_changes()
            return
        if not yes and not output.prompt_apply():
            output.render_cancelled()
            return

        t0 = time.perf_counter()
        result = pipeline.apply(
            tables, initial_refresh=not no_refresh, applied_by=_get_applied_by()
        )
        logger.debug(f"Apply: {(time.perf_counter() - t0) * 1000:.1f}ms")
        output.render_apply_complete(result)

    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def ingest(
    table: Annotated[str, cyclopts.Parameter(help="Raw table to load into")],
    path: Annotated[Path, cyclopts.Parameter(help="CSV, JSON or Parquet file")],
    format: Annotated[
        str | None,
        cyclopts.Parameter(
            name="--format", help="File format (inferred from the suffix by default)"
        ),
    ] = None,
    env_name: EnvOption = None,
):
    """Validate and append the records of a file to a raw table.

    The whole file is rejected if any record is invalid.
    """
    try:
        pipeline = _connect(env_name)
        t0 = time.perf_counter()
        count = pipeline.load(table, path, format)
        elapsed = time.perf_counter() - t0
        console.print(
            f"[green]✓[/green] Loaded {count} record(s) into {table} ({elapsed:.1f}s)"
        )
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def refresh(
    table: Annotated[
        str | None,
        cyclopts.Parameter(help="Dynamic table to refresh (refreshes all if not specified)"),
    ] = None,
    env_name: EnvOption = None,
):
    """Refresh dynamic tables now.

    Examples:
        freshtable refresh                       # Refresh every dynamic table
        freshtable refresh fraud_risk_summary    # Refresh one table + upstreams
    """
    try:
        pipeline = _connect(env_name)
        console.print(f"[bold]Refreshing in {pipeline.name}...[/bold]")
        console.print()

        t0 = time.perf_counter()
        result = pipeline.refresh([table] if table else None)
        output.render_refresh_results(result, time.perf_counter() - t0)

        if not result.is_success:
            raise SystemExit(1)
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def run(
    interval: Annotated[
        float | None,
        cyclopts.Parameter(name="--interval", help="Seconds between scheduler ticks"),
    ] = None,
    duration: Annotated[
        float | None,
        cyclopts.Parameter(
            name="--duration", help="Stop after this many seconds (runs until Ctrl+C by default)"
        ),
    ] = None,
    env_name: EnvOption = None,
):
    """Run the scheduler, keeping dynamic tables within their target lags."""
    try:
        pipeline = _connect(env_name)
        scheduler = pipeline.scheduler(tick_interval_seconds=interval)
        console.print(f"[bold]Scheduler running for {pipeline.name}[/bold] [dim](Ctrl+C to stop)[/dim]")

        deadline = time.monotonic() + duration if duration is not None else None
        scheduler.start()
        try:
            while deadline is None or time.monotonic() < deadline:
                time.sleep(0.2)
        except KeyboardInterrupt:
            pass
        finally:
            scheduler.stop()
        console.print("[dim]Scheduler stopped.[/dim]")
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def show(env_name: EnvOption = None):
    """List dynamic tables with lag, state, staleness and last refresh."""
    try:
        pipeline = _connect(env_name)
        output.render_show(pipeline.show())
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def describe(
    table: Annotated[str, cyclopts.Parameter(help="Table to describe")],
    env_name: EnvOption = None,
):
    """Show the definition, lineage and snapshot of one table."""
    try:
        pipeline = _connect(env_name)
        output.render_describe(pipeline.describe(table))
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def history(
    table: Annotated[
        str | None,
        cyclopts.Parameter(help="Only show refreshes of this table"),
    ] = None,
    limit: Annotated[
        int,
        cyclopts.Parameter(name="--limit", help="Maximum number of records"),
    ] = 20,
    env_name: EnvOption = None,
):
    """Show refresh history, newest first."""
    try:
        pipeline = _connect(env_name)
        output.render_history(pipeline.refresh_history(table, limit=limit))
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def query(
    sql: Annotated[str, cyclopts.Parameter(help="SQL over raw and dynamic tables")],
    limit: Annotated[
        int,
        cyclopts.Parameter(name="--limit", help="Maximum rows to display"),
    ] = 50,
    env_name: EnvOption = None,
):
    """Run a SQL query against the current table contents."""
    try:
        pipeline = _connect(env_name)
        output.render_arrow(pipeline.sql(sql), limit=limit)
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def freshness(env_name: EnvOption = None):
    """Check every dynamic table against its target lag.

    Exits 1 if any table is staler than its target lag.
    """
    try:
        pipeline = _connect(env_name)
        result = pipeline.check_freshness(warn=False)
        output.render_freshness(result)
        if result.has_stale:
            raise SystemExit(1)
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def suspend(
    table: Annotated[str, cyclopts.Parameter(help="Dynamic table to suspend")],
    env_name: EnvOption = None,
):
    """Stop scheduled refreshes of a dynamic table."""
    try:
        pipeline = _connect(env_name)
        pipeline.suspend(table)
        console.print(f"[yellow]⏸[/yellow] Suspended {table}")
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def resume(
    table: Annotated[str, cyclopts.Parameter(help="Dynamic table to resume")],
    env_name: EnvOption = None,
):
    """Resume scheduled refreshes of a suspended dynamic table."""
    try:
        pipeline = _connect(env_name)
        pipeline.resume(table)
        console.print(f"[green]▶[/green] Resumed {table}")
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


@app.command
def demo(
    path: Annotated[
        Path | None,
        cyclopts.Parameter(
            name="--path", help="Directory for demo data (a temporary one by default)"
        ),
    ] = None,
):
    """Walk through the bank fraud detection pipeline end to end."""
    import freshtable.backends.duckdb as duckdb
    import freshtable.backends.sqlite as sqlite
    import freshtable.fraud_demo as fraud_demo

    try:
        with tempfile.TemporaryDirectory(prefix="freshtable-demo-") as tmp:
            root = path or Path(tmp)
            pipeline = pipeline_mod.Pipeline(
                backend=duckdb.DuckDBBackend(path=str(root / "data"), catalog="fraud_demo"),
                registry=sqlite.SqliteRegistry(path=str(root / "registry.db")),
            )

            console.print("[bold]1. Creating tables[/bold]")
            output.render_diff(pipeline.apply(fraud_demo.TABLES))
            console.print()

            console.print("[bold]2. Loading sample transactions[/bold]")
            count = pipeline.insert("transactions_raw", fraud_demo.SAMPLE_TRANSACTIONS)
            console.print(f"  Inserted {count} transactions")
            t0 = time.perf_counter()
            output.render_refresh_results(pipeline.refresh(), time.perf_counter() - t0)
            console.print()
            output.render_arrow(pipeline.read("transactions_clean"))
            console.print()

            console.print("[bold]3. New transactions arrive[/bold]")
            count = pipeline.insert(
                "transactions_raw", fraud_demo.refresh_batch(datetime.now())
            )
            console.print(f"  Inserted {count} transactions")
            t0 = time.perf_counter()
            output.render_refresh_results(pipeline.refresh(), time.perf_counter() - t0)
            console.print()

            console.print("[bold]4. Analytics[/bold]")
            for name, sql in fraud_demo.ANALYTICS_QUERIES.items():
                console.print(f"[dim]{name}[/dim]")
                output.render_arrow(pipeline.sql(sql))
                console.print()

            console.print("[bold]5. Observability[/bold]")
            output.render_show(pipeline.show())
            console.print()
            output.render_history(pipeline.refresh_history(limit=10))
    except errors.FreshtableError as e:
        _handle_error(e)
        raise SystemExit(1)


if __name__ == "__main__":
    app()
