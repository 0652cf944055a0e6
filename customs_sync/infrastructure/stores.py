"""
Cursor and batch summary stores.

PostgreSQL-backed stores persist to the ``processing_cursor`` and ``batch_runs``
tables (see ``db/init.sql``); every database failure is wrapped in
``PersistenceError``. The in-memory stores back ephemeral runs and tests.

Usage:
    pool = create_pool(settings)
    cursors = PostgresCursorStore(pool_connection_factory(pool))
    cursors.ensure_schema()
"""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from typing import Dict, List, Optional

import psycopg
from psycopg.types.json import Jsonb

from customs_sync.domain.models import Cursor
from customs_sync.domain.results import BatchStatus, BatchSummary, ErrorDetail, StopReason
from customs_sync.errors import PersistenceError
from customs_sync.infrastructure.db_factory import ConnectionFactory
from customs_sync.utils.logging import get_logger

log = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS processing_cursor (
    id SERIAL PRIMARY KEY,
    cursor_name VARCHAR(50) NOT NULL UNIQUE,
    last_processed_date TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_by_batch_id VARCHAR(50)
);
CREATE INDEX IF NOT EXISTS processing_cursor_name_idx ON processing_cursor (cursor_name);
CREATE TABLE IF NOT EXISTS batch_runs (
    id SERIAL PRIMARY KEY,
    batch_id VARCHAR(50) NOT NULL UNIQUE,
    started_at TIMESTAMPTZ NOT NULL,
    completed_at TIMESTAMPTZ,
    orders_queried INTEGER DEFAULT 0,
    orders_processed INTEGER DEFAULT 0,
    orders_skipped INTEGER DEFAULT 0,
    errors_count INTEGER DEFAULT 0,
    error_details JSONB,
    credits_used INTEGER DEFAULT 0,
    status VARCHAR(20) NOT NULL,
    stop_reason VARCHAR(30),
    dry_run BOOLEAN NOT NULL DEFAULT FALSE
);
CREATE INDEX IF NOT EXISTS batch_runs_started_at_idx ON batch_runs (started_at DESC);
"""

_SUMMARY_COLUMNS = (
    "batch_id, started_at, completed_at, orders_queried, orders_processed, orders_skipped, "
    "errors_count, error_details, credits_used, status, stop_reason, dry_run"
)


def _error_details_json(summary: BatchSummary) -> Jsonb:
    return Jsonb(
        [
            {"record_id": d.record_id, "order_number": d.order_number, "error": d.message}
            for d in summary.error_details
        ]
    )


def _summary_from_row(row) -> BatchSummary:
    (
        batch_id,
        started_at,
        completed_at,
        queried,
        processed,
        skipped,
        errors_count,
        error_details,
        credits_used,
        status,
        stop_reason,
        dry_run,
    ) = row
    return BatchSummary(
        batch_id=batch_id,
        started_at=started_at,
        completed_at=completed_at,
        records_queried=queried or 0,
        records_processed=processed or 0,
        records_skipped=skipped or 0,
        errors_count=errors_count or 0,
        error_details=[
            ErrorDetail(
                record_id=str(item.get("record_id", "")),
                message=str(item.get("error", "")),
                order_number=str(item.get("order_number", "")),
            )
            for item in (error_details or [])
        ],
        credits_used=credits_used or 0,
        status=BatchStatus(status),
        stop_reason=StopReason(stop_reason) if stop_reason else None,
        dry_run=bool(dry_run),
    )


class _PostgresStore:
    def __init__(self, connect: ConnectionFactory) -> None:
        self._connect = connect

    def ensure_schema(self) -> None:
        """Create the persistence tables if they do not exist."""
        try:
            with self._connect() as conn:
                conn.execute(SCHEMA_SQL)
        except psycopg.Error as exc:
            raise PersistenceError(f"Failed to create schema: {exc}") from exc
        log.info("Persistence schema ensured")


class PostgresCursorStore(_PostgresStore):
    """``CursorStore`` backed by the ``processing_cursor`` table."""

    def get(self, name: str) -> Optional[Cursor]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT cursor_name, last_processed_date, updated_at, updated_by_batch_id "
                    "FROM processing_cursor WHERE cursor_name = %s",
                    (name,),
                ).fetchone()
        except psycopg.Error as exc:
            raise PersistenceError(f"Failed to read cursor '{name}': {exc}") from exc

        if row is None:
            return None
        return Cursor(
            name=row[0],
            last_processed_date=row[1],
            updated_at=row[2],
            updated_by_batch_id=row[3],
        )

    def set(self, name: str, value: datetime, updated_by: Optional[str]) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO processing_cursor (cursor_name, last_processed_date, updated_at, updated_by_batch_id) "
                    "VALUES (%s, %s, now(), %s) "
                    "ON CONFLICT (cursor_name) DO UPDATE SET "
                    "last_processed_date = EXCLUDED.last_processed_date, "
                    "updated_at = now(), "
                    "updated_by_batch_id = EXCLUDED.updated_by_batch_id",
                    (name, value, updated_by),
                )
        except psycopg.Error as exc:
            raise PersistenceError(f"Failed to write cursor '{name}': {exc}") from exc


class PostgresSummaryStore(_PostgresStore):
    """``SummaryStore`` backed by the ``batch_runs`` table."""

    def create(self, summary: BatchSummary) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO batch_runs ({_SUMMARY_COLUMNS}) "
                    "VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                    (
                        summary.batch_id,
                        summary.started_at,
                        summary.completed_at,
                        summary.records_queried,
                        summary.records_processed,
                        summary.records_skipped,
                        summary.errors_count,
                        _error_details_json(summary),
                        summary.credits_used,
                        summary.status.value,
                        summary.stop_reason.value if summary.stop_reason else None,
                        summary.dry_run,
                    ),
                )
        except psycopg.Error as exc:
            raise PersistenceError(f"Failed to create batch run '{summary.batch_id}': {exc}") from exc

    def update(self, summary: BatchSummary) -> None:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE batch_runs SET completed_at = %s, orders_queried = %s, orders_processed = %s, "
                    "orders_skipped = %s, errors_count = %s, error_details = %s, credits_used = %s, "
                    "status = %s, stop_reason = %s, dry_run = %s WHERE batch_id = %s",
                    (
                        summary.completed_at,
                        summary.records_queried,
                        summary.records_processed,
                        summary.records_skipped,
                        summary.errors_count,
                        _error_details_json(summary),
                        summary.credits_used,
                        summary.status.value,
                        summary.stop_reason.value if summary.stop_reason else None,
                        summary.dry_run,
                        summary.batch_id,
                    ),
                )
                if cur.rowcount == 0:
                    raise PersistenceError(f"Batch run '{summary.batch_id}' does not exist")
        except psycopg.Error as exc:
            raise PersistenceError(f"Failed to update batch run '{summary.batch_id}': {exc}") from exc

    def get(self, batch_id: str) -> Optional[BatchSummary]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_SUMMARY_COLUMNS} FROM batch_runs WHERE batch_id = %s", (batch_id,)
                ).fetchone()
        except psycopg.Error as exc:
            raise PersistenceError(f"Failed to read batch run '{batch_id}': {exc}") from exc
        return _summary_from_row(row) if row else None

    def recent(self, limit: int = 10) -> List[BatchSummary]:
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {_SUMMARY_COLUMNS} FROM batch_runs ORDER BY started_at DESC LIMIT %s", (limit,)
                ).fetchall()
        except psycopg.Error as exc:
            raise PersistenceError(f"Failed to list batch runs: {exc}") from exc
        return [_summary_from_row(row) for row in rows]


class InMemoryCursorStore:
    """Process-local ``CursorStore``."""

    def __init__(self) -> None:
        self._cursors: Dict[str, Cursor] = {}

    def get(self, name: str) -> Optional[Cursor]:
        return self._cursors.get(name)

    def set(self, name: str, value: datetime, updated_by: Optional[str]) -> None:
        self._cursors[name] = Cursor(
            name=name,
            last_processed_date=value,
            updated_at=datetime.now(timezone.utc),
            updated_by_batch_id=updated_by,
        )


class InMemorySummaryStore:
    """Process-local ``SummaryStore``. Stores snapshots, not live references."""

    def __init__(self) -> None:
        self._runs: Dict[str, BatchSummary] = {}

    def create(self, summary: BatchSummary) -> None:
        if summary.batch_id in self._runs:
            raise PersistenceError(f"Batch run '{summary.batch_id}' already exists")
        self._runs[summary.batch_id] = copy.deepcopy(summary)

    def update(self, summary: BatchSummary) -> None:
        if summary.batch_id not in self._runs:
            raise PersistenceError(f"Batch run '{summary.batch_id}' does not exist")
        self._runs[summary.batch_id] = copy.deepcopy(summary)

    def get(self, batch_id: str) -> Optional[BatchSummary]:
        summary = self._runs.get(batch_id)
        return copy.deepcopy(summary) if summary else None

    def recent(self, limit: int = 10) -> List[BatchSummary]:
        runs = sorted(self._runs.values(), key=lambda s: s.started_at, reverse=True)
        return [copy.deepcopy(s) for s in runs[:limit]]


__all__ = [
    "SCHEMA_SQL",
    "PostgresCursorStore",
    "PostgresSummaryStore",
    "InMemoryCursorStore",
    "InMemorySummaryStore",
]
