from __future__ import annotations

import json
import sys
from typing import Optional

import typer

from customs_sync.config import get_settings
from customs_sync.domain.results import BatchStatus
from customs_sync.errors import PersistenceError
from customs_sync.orchestrator import run_batch
from customs_sync.reporter import format_timestamp, print_history, print_summary
from customs_sync.utils.logging import configure_logging

app = typer.Typer(help="Customs value sync for destination-country orders.")


def _postgres_stores(settings):
    from customs_sync.infrastructure.db_factory import single_connection_factory
    from customs_sync.infrastructure.stores import PostgresCursorStore, PostgresSummaryStore

    connect = single_connection_factory(settings)
    return PostgresCursorStore(connect), PostgresSummaryStore(connect)


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    try:
        statuses = ", ".join(settings.fulfillment_statuses())
    except ValueError:
        statuses = "none"
    typer.echo(
        f"API={settings.api_url} | account={settings.customer_account_id or '-'} | "
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )
    typer.echo(
        f"target={settings.target_country} tag={settings.processed_tag} "
        f"max_total={settings.max_total_customs_value} "
        f"item=[{settings.min_item_customs_value}, {settings.max_item_customs_value}] "
        f"statuses={statuses}"
    )
    typer.echo(
        f"dry_run={settings.feature_dry_run} update={settings.feature_customs_update} "
        f"tagging={settings.feature_order_tagging} backfill={settings.feature_manual_backfill} "
        f"max_run={settings.max_run_seconds}s max_quota_wait={settings.max_quota_wait_seconds}s"
    )
    for problem in settings.configuration_errors():
        typer.echo(f"config error: {problem}", err=True)


@app.command()
def run(
    dry_run: Optional[bool] = typer.Option(
        None,
        "--dry-run/--no-dry-run",
        help="Compute customs values without mutating orders (default from FEATURE_DRY_RUN).",
    ),
    ephemeral: bool = typer.Option(
        False,
        "--ephemeral",
        help="Keep cursor and batch history in memory instead of PostgreSQL.",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the batch summary as JSON."),
) -> None:
    """
    Run one batch and print its summary. Exits non-zero when the batch failed.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)

    problems = settings.configuration_errors()
    if problems:
        for problem in problems:
            typer.echo(f"config error: {problem}", err=True)
        raise typer.Exit(code=2)

    summary = run_batch(settings, ephemeral=ephemeral, dry_run=dry_run)

    if as_json:
        typer.echo(json.dumps(summary.to_dict(), indent=2))
    else:
        print_summary(summary, tz_name=settings.display_timezone)

    if summary.status is BatchStatus.FAILED:
        raise typer.Exit(code=1)


@app.command()
def history(
    limit: int = typer.Option(10, "--limit", "-n", min=1, help="Number of runs to show."),
    as_json: bool = typer.Option(False, "--json", help="Print runs as JSON."),
) -> None:
    """
    Show recent batch runs.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    _, summaries = _postgres_stores(settings)
    try:
        runs = summaries.recent(limit)
    except PersistenceError as exc:
        typer.echo(f"Could not load batch history: {exc}", err=True)
        raise typer.Exit(code=1)

    if as_json:
        typer.echo(json.dumps([run.to_dict() for run in runs], indent=2))
    else:
        print_history(runs, tz_name=settings.display_timezone)


@app.command()
def cursor() -> None:
    """
    Show the persisted processing watermark.
    """
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    cursors, _ = _postgres_stores(settings)
    try:
        current = cursors.get(settings.cursor_name)
    except PersistenceError as exc:
        typer.echo(f"Could not load cursor: {exc}", err=True)
        raise typer.Exit(code=1)

    if current is None:
        typer.echo(
            f"cursor '{settings.cursor_name}' not initialised; "
            f"first run starts at {format_timestamp(settings.processing_start_date, settings.display_timezone)}"
        )
        return

    typer.echo(
        f"cursor '{current.name}': {format_timestamp(current.last_processed_date, settings.display_timezone)} "
        f"(updated {format_timestamp(current.updated_at, settings.display_timezone)} "
        f"by {current.updated_by_batch_id or '-'})"
    )


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
