"""Rich-based output formatting for CLI.

Provides Pulumi-style diff output plus status tables for dynamic tables,
refresh runs and refresh history.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import pyarrow as pa
from rich.console import Console
from rich.table import Table

import freshtable.diff as diff
import freshtable.refresh as refresh

if TYPE_CHECKING:
    import freshtable.freshness as freshness
    import freshtable.pipeline as pipeline_mod
    import freshtable.registry as registry_types


# Global console instance
console = Console()


def format_duration(value: timedelta | str | None) -> str:
    """Render a lag or staleness as '1m 30s', '5m', '2h'."""
    if value is None:
        return "-"
    if isinstance(value, str):
        return value.upper()
    seconds = int(value.total_seconds())
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s" if seconds else f"{minutes}m"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def _format_time(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def render_diff(result: diff.DiffResult, show_unchanged: bool = False) -> None:
    """Render diff result in Pulumi style."""
    if not result.has_changes and not result.unchanged:
        console.print("[dim]No tables found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("", width=2)  # Symbol column
    table.add_column("Type", style="dim")
    table.add_column("Name")
    table.add_column("Status")

    for change in result.creates:
        table.add_row(
            "[green]+[/green]",
            change.kind,
            f"[green]{change.name}[/green]",
            "[green]create[/green]",
        )

    for change in result.updates:
        table.add_row(
            "[yellow]~[/yellow]",
            change.kind,
            f"[yellow]{change.name}[/yellow]",
            "[yellow]update[/yellow]",
        )

    if show_unchanged:
        for change in result.unchanged:
            table.add_row(
                " ",
                change.kind,
                f"[dim]{change.name}[/dim]",
                "[dim]unchanged[/dim]",
            )

    for change in result.deletes:
        table.add_row(
            "[red]-[/red]",
            change.kind,
            f"[red]{change.name}[/red]",
            "[red]delete[/red]",
        )

    console.print(table)
    console.print()

    summary = result.summary()
    if result.has_changes:
        console.print(f"[bold]Summary:[/bold] {summary}")
    else:
        console.print(f"[dim]{summary}[/dim]")


def render_apply_complete(result: diff.DiffResult) -> None:
    """Render completion message after apply."""
    console.print()
    console.print(f"[bold green]Apply complete![/bold green] {result.summary()}")


def render_no_changes() -> None:
    console.print("[dim]No changes to apply.[/dim]")


def prompt_apply() -> bool:
    """Prompt user to confirm apply. Returns True if confirmed."""
    console.print()
    response = console.input("[bold]Apply these changes?[/bold] [dim](y/N)[/dim] ")
    return response.lower() in ("y", "yes")


def render_cancelled() -> None:
    console.print("[dim]Apply cancelled.[/dim]")


def render_refresh_results(result: refresh.RefreshResult, elapsed: float) -> None:
    """Render one line per refreshed table and a summary."""
    for table_result in result.table_results:
        name = table_result.table_name
        if table_result.state == refresh.RefreshState.SUCCEEDED:
            action = table_result.action.value if table_result.action else ""
            changed = (
                f", {table_result.rows_changed} changed"
                if table_result.rows_changed
                else ""
            )
            duration = (
                f" ({table_result.duration_ms:.0f}ms)"
                if table_result.duration_ms is not None
                else ""
            )
            console.print(
                f"[green]✓[/green] {name} [dim]{action}[/dim]"
                f" [{table_result.row_count} rows{changed}]{duration}"
            )
        elif table_result.state == refresh.RefreshState.FAILED:
            error = f": {table_result.error}" if table_result.error else ""
            console.print(f"[red]✗[/red] {name}{error}")
        else:
            error = f": {table_result.error}" if table_result.error else ""
            console.print(f"[yellow]⊘[/yellow] {name}{error}")

    console.print()

    parts = []
    if result.success_count:
        parts.append(f"[green]{result.success_count} succeeded[/green]")
    if result.failed_count:
        parts.append(f"[red]{result.failed_count} failed[/red]")
    if result.skipped_count:
        parts.append(f"[yellow]{result.skipped_count} skipped[/yellow]")

    total = len(result.table_results)
    summary = ", ".join(parts) if parts else "0 tables"
    console.print(
        f"[bold]Refresh complete:[/bold] {summary} ({total} total, {elapsed:.1f}s)"
    )


def render_show(rows: list[pipeline_mod.TableInfo]) -> None:
    """Render the dynamic table overview."""
    if not rows:
        console.print("[dim]No dynamic tables found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Name")
    table.add_column("Source", style="dim")
    table.add_column("Target lag")
    table.add_column("State")
    table.add_column("Data timestamp")
    table.add_column("Staleness")
    table.add_column("Rows", justify="right")
    table.add_column("Last refresh")

    for row in rows:
        lag = format_duration(row.target_lag)
        if isinstance(row.target_lag, str) and row.effective_lag is not None:
            lag = f"{lag} ({format_duration(row.effective_lag)})"
        state = (
            f"[red]{row.scheduling_state}[/red]"
            if row.scheduling_state == refresh.SUSPENDED
            else row.scheduling_state
        )
        stale = (
            row.staleness is not None
            and row.effective_lag is not None
            and row.staleness > row.effective_lag
        )
        staleness = format_duration(row.staleness)
        if stale:
            staleness = f"[yellow]{staleness}[/yellow]"
        last = "-"
        if row.last_refresh_state is not None:
            color = "green" if row.last_refresh_state == "SUCCEEDED" else "red"
            last = (
                f"[{color}]{row.last_refresh_state}[/{color}]"
                f" {row.last_refresh_action or ''} {_format_time(row.last_refresh_at)}"
            )
        table.add_row(
            row.name,
            row.source,
            lag,
            state,
            _format_time(row.data_timestamp),
            staleness,
            str(row.row_count) if row.row_count is not None else "-",
            last,
        )

    console.print(table)


def render_history(records: list[registry_types.RefreshRecord]) -> None:
    """Render refresh history, newest first."""
    if not records:
        console.print("[dim]No refresh history.[/dim]")
        return

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Name")
    table.add_column("State")
    table.add_column("Action")
    table.add_column("Trigger", style="dim")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Rows", justify="right")
    table.add_column("Changed", justify="right")
    table.add_column("Error")

    for record in records:
        color = {"SUCCEEDED": "green", "FAILED": "red"}.get(record.state, "yellow")
        table.add_row(
            record.table_name,
            f"[{color}]{record.state}[/{color}]",
            record.refresh_action or "-",
            record.refresh_trigger,
            _format_time(record.refresh_start_time),
            _format_time(record.refresh_end_time),
            str(record.row_count) if record.row_count is not None else "-",
            str(record.rows_changed) if record.rows_changed is not None else "-",
            record.error or "",
        )

    console.print(table)


def render_freshness(result: freshness.FreshnessResult) -> None:
    """Render staleness against target lag for every dynamic table."""
    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Name")
    table.add_column("Target lag")
    table.add_column("Staleness")
    table.add_column("Status")

    for entry in result.tables:
        color = {"fresh": "green", "warn": "yellow"}.get(entry.status, "dim")
        table.add_row(
            entry.table_name,
            format_duration(entry.effective_lag or entry.target_lag),
            format_duration(entry.staleness),
            f"[{color}]{entry.status}[/{color}]",
        )

    console.print(table)


def render_arrow(data: pa.Table, limit: int = 50) -> None:
    """Render the first ``limit`` rows of an Arrow table."""
    table = Table(show_header=True, header_style="bold", box=None)
    for name in data.column_names:
        table.add_column(name)
    for row in data.slice(0, limit).to_pylist():
        table.add_row(*("" if v is None else str(v) for v in row.values()))
    console.print(table)
    if data.num_rows > limit:
        console.print(f"[dim]... {data.num_rows - limit} more row(s)[/dim]")
    console.print(f"[dim]{data.num_rows} row(s)[/dim]")


def render_describe(info: dict[str, Any]) -> None:
    """Render the result of ``Pipeline.describe``."""
    console.print(f"[bold]{info['name']}[/bold] [dim]({info['kind']})[/dim]")
    definition = info["definition"]
    if definition.get("description"):
        console.print(f"  {definition['description']}")
    if "source" in definition:
        console.print(f"  Source: {definition['source']['name']}")
        lag = format_duration(info.get("effective_lag"))
        console.print(f"  Target lag: {definition['target_lag']} (effective {lag})")
        console.print(f"  Refresh mode: {definition['refresh_mode']}")
        console.print(f"  Scheduling state: {info.get('scheduling_state')}")
    if info["upstream"]:
        console.print(f"  Upstream: {', '.join(info['upstream'])}")
    if info["downstream"]:
        console.print(f"  Downstream: {', '.join(info['downstream'])}")
    snapshot = info.get("snapshot")
    if snapshot:
        console.print(
            f"  Rows: {snapshot['row_count']}  data_version: {snapshot['data_version']}"
            f"  generation: {snapshot['generation']}"
        )
        console.print(f"  Data timestamp: {_format_time(snapshot['data_timestamp'])}")
    if "schema" in definition:
        console.print("  Columns:")
        for name, field in definition["schema"].items():
            console.print(f"    {name}: {field['dtype']}")
    if "sql" in definition:
        console.print()
        console.print("[dim]SQL:[/dim]")
        console.print(definition["sql"])


def render_error(message: str) -> None:
    console.print(f"[bold red]Error:[/bold red] {message}")
