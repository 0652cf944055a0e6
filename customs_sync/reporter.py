from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from rich import box
from rich.console import Console
from rich.table import Table

from customs_sync.domain.results import BatchStatus, BatchSummary

_STATUS_STYLES = {
    BatchStatus.COMPLETED: "green",
    BatchStatus.FAILED: "bold red",
    BatchStatus.RUNNING: "yellow",
}


def _zone(tz_name: str):
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def format_timestamp(value: Optional[datetime], tz_name: str = "UTC") -> str:
    """
    Format an aware timestamp in the display timezone.

    Storage and comparisons stay in UTC; only rendering converts.
    """
    if value is None:
        return "-"
    return value.astimezone(_zone(tz_name)).strftime("%Y-%m-%d %H:%M:%S %Z")


def _status_cell(summary: BatchSummary) -> str:
    style = _STATUS_STYLES.get(summary.status, "white")
    label = summary.status.value
    if summary.stop_reason is not None:
        label = f"{label} ({summary.stop_reason.value})"
    return f"[{style}]{label}[/{style}]"


def _duration_cell(summary: BatchSummary) -> str:
    duration = summary.duration_seconds
    return f"{duration:.1f}" if duration is not None else "-"


def print_summary(summary: BatchSummary, tz_name: str = "UTC", console: Optional[Console] = None) -> None:
    """
    Render one batch summary, followed by its recorded errors if any.
    """
    console = console or Console()

    title = f"Batch {summary.batch_id}"
    if summary.dry_run:
        title = f"{title} [dim](dry run)[/dim]"

    table = Table(title=title, box=box.ROUNDED, show_header=False)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", justify="right")

    table.add_row("Status", _status_cell(summary))
    table.add_row("Started", format_timestamp(summary.started_at, tz_name))
    table.add_row("Completed", format_timestamp(summary.completed_at, tz_name))
    table.add_row("Duration (s)", _duration_cell(summary))
    table.add_row("Orders queried", f"{summary.records_queried:,}")
    table.add_row("Orders processed", f"[bold green]{summary.records_processed:,}[/bold green]")
    table.add_row("Orders skipped", f"{summary.records_skipped:,}")
    table.add_row("Errors", f"[red]{summary.errors_count:,}[/red]" if summary.errors_count else "0")
    table.add_row("Credits used", f"{summary.credits_used:,}")
    console.print(table)

    if not summary.error_details:
        return

    errors = Table(
        title="Errors",
        box=box.SIMPLE,
        caption=(
            f"Showing {len(summary.error_details)} of {summary.errors_count}"
            if summary.errors_count > len(summary.error_details)
            else None
        ),
    )
    errors.add_column("Record", style="magenta", no_wrap=True)
    errors.add_column("Order #", style="cyan")
    errors.add_column("Error", style="red")
    for detail in summary.error_details:
        errors.add_row(detail.record_id, detail.order_number or "-", detail.message)
    console.print(errors)


def print_history(
    summaries: Sequence[BatchSummary],
    tz_name: str = "UTC",
    console: Optional[Console] = None,
) -> None:
    """
    Render recent batch runs as a rich table, newest first.
    """
    console = console or Console()

    if not summaries:
        console.print("[yellow]No batch runs recorded.[/yellow]")
        return

    table = Table(title="Recent Batch Runs", box=box.ROUNDED, caption=f"Times shown in {tz_name}")
    table.add_column("Batch", style="cyan", no_wrap=True)
    table.add_column("Started", style="white")
    table.add_column("Status")
    table.add_column("Queried", justify="right", style="magenta")
    table.add_column("Processed", justify="right", style="bold green")
    table.add_column("Skipped", justify="right")
    table.add_column("Errors", justify="right", style="red")
    table.add_column("Credits", justify="right", style="yellow")
    table.add_column("Duration (s)", justify="right", style="green")

    ordered: List[BatchSummary] = sorted(summaries, key=lambda s: s.started_at, reverse=True)
    for summary in ordered:
        table.add_row(
            summary.batch_id,
            format_timestamp(summary.started_at, tz_name),
            _status_cell(summary),
            f"{summary.records_queried:,}",
            f"{summary.records_processed:,}",
            f"{summary.records_skipped:,}",
            f"{summary.errors_count:,}",
            f"{summary.credits_used:,}",
            _duration_cell(summary),
        )

    console.print(table)


__all__ = ["format_timestamp", "print_summary", "print_history"]
