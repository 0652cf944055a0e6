"""
Batch orchestration: fetch, process, aggregate, advance the cursor, persist.

One call to ``BatchOrchestrator.run_batch`` is one scheduled invocation. It
resets the quota throttle, opens a batch summary, streams records for every
configured fulfillment status, processes each record (checking the quota before
any remote mutation), and finally advances the processing cursor and persists
the summary. The final steps always run, whatever happened before them.

Usage (example from CLI):
    from customs_sync.orchestrator import run_batch

    summary = run_batch(dry_run=True, ephemeral=True)
    print(summary.to_dict())
"""

from __future__ import annotations

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from customs_sync.config import Settings, get_settings
from customs_sync.cursor import ResumableCursor
from customs_sync.domain.models import Record, RecordFilter
from customs_sync.domain.results import (
    BatchStatus,
    BatchSummary,
    ErrorDetail,
    ProcessingResult,
    ProcessingStatus,
    StopReason,
)
from customs_sync.errors import PersistenceError
from customs_sync.fetcher import RecordFetcher, StreamStop
from customs_sync.infrastructure.abstract import (
    Clock,
    CursorStore,
    MutationSink,
    RecordSource,
    SummaryStore,
    Telemetry,
)
from customs_sync.processor import ProcessorOptions, RecordProcessor
from customs_sync.throttle import QuotaLimits, QuotaThrottle
from customs_sync.utils.clock import SystemClock
from customs_sync.utils.logging import get_logger
from customs_sync.utils.telemetry import LoggingTelemetry, TelemetryEvent, emit_safely, flush_safely

log = get_logger(__name__)


def generate_batch_id(clock: Clock) -> str:
    """``batch_<epoch millis>_<5 random chars>``."""
    millis = int(clock.now().timestamp() * 1000)
    return f"batch_{millis}_{uuid.uuid4().hex[:5]}"


@dataclass
class BatchContext:
    """
    Everything one batch run needs, created per invocation.

    Tests build it directly with fakes; production code uses ``from_settings``.
    """

    settings: Settings
    source: RecordSource
    sink: MutationSink
    cursor_store: CursorStore
    summary_store: SummaryStore
    clock: Clock = field(default_factory=SystemClock)
    telemetry: Telemetry = field(default_factory=LoggingTelemetry)
    throttle: Optional[QuotaThrottle] = None
    rng: Optional[random.Random] = None
    dry_run: Optional[bool] = None
    closers: List[Callable[[], None]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.throttle is None:
            self.throttle = QuotaThrottle(QuotaLimits.from_settings(self.settings), self.clock)
        if self.dry_run is None:
            self.dry_run = self.settings.feature_dry_run

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        *,
        ephemeral: bool = False,
        dry_run: Optional[bool] = None,
    ) -> "BatchContext":
        """
        Build the production wiring: GraphQL client plus PostgreSQL stores.

        With ``ephemeral=True`` the cursor and summaries live in memory only,
        which is useful for local dry runs without a database.
        """
        from customs_sync.infrastructure.graphql_client import GraphQLClient
        from customs_sync.infrastructure.stores import (
            InMemoryCursorStore,
            InMemorySummaryStore,
            PostgresCursorStore,
            PostgresSummaryStore,
        )

        settings = settings or get_settings()
        client = GraphQLClient.from_settings(settings)
        closers: List[Callable[[], None]] = []

        if ephemeral:
            cursor_store = InMemoryCursorStore()
            summary_store = InMemorySummaryStore()
        else:
            from customs_sync.infrastructure.db_factory import create_pool, pool_connection_factory

            pool = create_pool(settings)
            closers.append(pool.close)
            connect = pool_connection_factory(pool)
            cursor_store = PostgresCursorStore(connect)
            summary_store = PostgresSummaryStore(connect)
            try:
                cursor_store.ensure_schema()
            except PersistenceError as exc:
                log.warning("Could not ensure persistence schema", extra={"error": str(exc)})

        return cls(
            settings=settings,
            source=client,
            sink=client,
            cursor_store=cursor_store,
            summary_store=summary_store,
            dry_run=dry_run,
            closers=closers,
        )

    def close(self) -> None:
        for closer in self.closers:
            try:
                closer()
            except Exception as exc:  # noqa: BLE001 - best-effort cleanup
                log.warning("Failed to release batch resource", extra={"error": str(exc)})
        self.closers.clear()

    def __enter__(self) -> "BatchContext":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class BatchOrchestrator:
    """
    Drives one batch run over a ``BatchContext``.

    Per-record failures become error entries; a failed page fetch aborts that
    status filter only; an exhausted quota or the run-time ceiling end the run
    early with status ``completed`` and a ``stop_reason``. Anything else that
    escapes marks the run ``failed``. Partial counts are kept in every case.
    """

    def __init__(self, context: BatchContext) -> None:
        self.context = context
        self.settings = context.settings
        self._cursor = ResumableCursor(
            context.cursor_store,
            self.settings.processing_start_date,
            clock=context.clock,
            telemetry=context.telemetry,
        )
        self._started_monotonic = 0.0
        self._aborted_filters: List[str] = []

    # -- helpers --------------------------------------------------------------

    def _emit(self, event: TelemetryEvent, message: str, level: int = logging.INFO, **fields) -> None:
        emit_safely(self.context.telemetry, event, message, level=level, **fields)

    def _time_exceeded(self) -> bool:
        limit = self.settings.max_run_seconds
        if not limit or limit <= 0:
            return False
        return self.context.clock.monotonic() - self._started_monotonic >= limit

    def _record_error(self, summary: BatchSummary, record_id: str, message: str, order_number: str = "") -> None:
        summary.errors_count += 1
        if len(summary.error_details) < self.settings.max_error_details:
            summary.error_details.append(ErrorDetail(record_id, message, order_number))

    def _tally(self, summary: BatchSummary, result: ProcessingResult, processed_dates: List[datetime]) -> None:
        if result.status is ProcessingStatus.PROCESSED:
            summary.records_processed += 1
            if result.order_date is not None:
                processed_dates.append(result.order_date)
        elif result.status is ProcessingStatus.SKIPPED:
            summary.records_skipped += 1
        else:
            self._record_error(summary, result.record_id, result.reason or "unknown error", result.order_number)

    def _create_summary(self, summary: BatchSummary) -> None:
        try:
            self.context.summary_store.create(summary)
        except Exception as exc:  # noqa: BLE001 - a missing history row must not block processing
            log.error(
                "Failed to create batch run record",
                extra={"batch_id": summary.batch_id, "error": str(exc)},
            )

    def _persist_summary(self, summary: BatchSummary) -> None:
        try:
            self.context.summary_store.update(summary)
        except Exception as exc:  # noqa: BLE001 - logged, never changes the outcome
            log.error(
                "Failed to persist batch summary",
                extra={"batch_id": summary.batch_id, "error": str(exc)},
            )

    def _resolve_window(self, batch_id: str) -> Tuple[datetime, Optional[datetime], bool]:
        """Return (date_from, date_to, is_backfill)."""
        settings = self.settings
        if settings.feature_manual_backfill:
            log.info(
                "Manual backfill mode, cursor is ignored",
                extra={
                    "batch_id": batch_id,
                    "backfill_start_date": settings.backfill_start_date,
                    "backfill_end_date": settings.backfill_end_date,
                },
            )
            return settings.backfill_start_date or settings.processing_start_date, settings.backfill_end_date, True

        try:
            return self._cursor.get(settings.cursor_name), None, False
        except Exception as exc:  # noqa: BLE001 - fall back to the configured start date
            self._emit(
                TelemetryEvent.CURSOR_ERROR,
                "Failed to load cursor, falling back to configured start date",
                level=logging.ERROR,
                batch_id=batch_id,
                cursor_name=settings.cursor_name,
                error=str(exc),
            )
            return settings.processing_start_date, None, False

    def _unvisited_reason(self, summary: BatchSummary) -> Optional[str]:
        """
        Why some orders in the query window may not have been visited, if so.

        Orders are not fetched in date order and statuses are walked one after
        another, so after an incomplete run the newest processed date says nothing
        about older orders that were never reached.
        """
        if summary.status is not BatchStatus.COMPLETED:
            return "batch_failed"
        if summary.stop_reason is not None:
            return summary.stop_reason.value
        if self._aborted_filters:
            return "fetch_failed"
        return None

    def _advance_cursor(self, summary: BatchSummary, processed_dates: List[datetime]) -> None:
        reason = self._unvisited_reason(summary)
        if reason is not None:
            self._emit(
                TelemetryEvent.CURSOR_UNCHANGED,
                "Run did not visit every order, cursor not advanced",
                level=logging.WARNING,
                batch_id=summary.batch_id,
                cursor_name=self.settings.cursor_name,
                reason=reason,
                aborted_filters=list(self._aborted_filters),
            )
            return

        try:
            next_date = self._cursor.compute_next_watermark(processed_dates)
            if next_date is None:
                log.info("No processed orders, cursor unchanged", extra={"batch_id": summary.batch_id})
                return
            self._cursor.advance(self.settings.cursor_name, next_date, summary.batch_id)
        except Exception as exc:  # noqa: BLE001 - next run resumes from the old watermark
            self._emit(
                TelemetryEvent.CURSOR_ERROR,
                "Failed to update cursor",
                level=logging.ERROR,
                batch_id=summary.batch_id,
                cursor_name=self.settings.cursor_name,
                error=str(exc),
            )

    # -- record and filter loops ----------------------------------------------

    def _quota_allows_mutation(self, summary: BatchSummary) -> bool:
        throttle = self.context.throttle
        cost = self.settings.estimated_record_cost
        decision = throttle.can_proceed(cost)
        if decision.ok:
            return True

        max_wait_ms = int(self.settings.max_quota_wait_seconds * 1000)
        if decision.wait_ms is not None and throttle.wait_for(cost, max_wait_ms):
            return True

        summary.stop_reason = StopReason.QUOTA_EXHAUSTED
        self._emit(
            TelemetryEvent.QUOTA_WARNING,
            "Quota exhausted, stopping batch early",
            level=logging.WARNING,
            batch_id=summary.batch_id,
            reason=decision.reason,
            required_wait_ms=decision.wait_ms,
            max_wait_ms=max_wait_ms,
            remaining=throttle.remaining,
        )
        return False

    def _handle_record(
        self,
        record: Record,
        processor: RecordProcessor,
        summary: BatchSummary,
        processed_dates: List[datetime],
    ) -> None:
        prepared = processor.prepare(record)
        if isinstance(prepared, ProcessingResult):
            self._tally(summary, prepared, processed_dates)
            return

        # Dry runs make no remote mutations.
        if not self.context.dry_run and not self._quota_allows_mutation(summary):
            return

        self._tally(summary, processor.apply(prepared), processed_dates)

    def _run_filter(
        self,
        record_filter: RecordFilter,
        fetcher: RecordFetcher,
        processor: RecordProcessor,
        summary: BatchSummary,
        processed_dates: List[datetime],
    ) -> None:
        stream = fetcher.fetch_all(record_filter)
        while True:
            if self._time_exceeded():
                summary.stop_reason = StopReason.TIME_LIMIT
                break

            try:
                batch = stream.next_batch()
            except Exception as exc:  # noqa: BLE001 - abort this filter, keep the others
                log.error(
                    f"Fetch failed for {record_filter.label}, skipping remaining pages",
                    extra={"batch_id": summary.batch_id, "filter": record_filter.label, "error": str(exc)},
                )
                self._record_error(summary, f"filter:{record_filter.label}", str(exc))
                self._aborted_filters.append(record_filter.label)
                return
            if batch is None:
                break

            summary.records_queried += len(batch)
            for record in batch:
                if self._time_exceeded():
                    summary.stop_reason = StopReason.TIME_LIMIT
                    break
                self._handle_record(record, processor, summary, processed_dates)
                if summary.stop_reason is not None:
                    break
            if summary.stop_reason is not None:
                break

        if summary.stop_reason is StopReason.TIME_LIMIT:
            self._emit(
                TelemetryEvent.BATCH_ERROR,
                "Execution time limit reached, stopping batch early",
                level=logging.WARNING,
                batch_id=summary.batch_id,
                max_run_seconds=self.settings.max_run_seconds,
            )
        elif stream.stop_reason is StreamStop.QUOTA_EXHAUSTED:
            summary.stop_reason = StopReason.QUOTA_EXHAUSTED

    # -- entry point ------------------------------------------------------------

    def run_batch(self) -> BatchSummary:
        """
        Execute one batch run.

        Returns
        -------
        BatchSummary
            Final summary; ``status`` is ``completed`` or ``failed``, never ``running``.
        """
        ctx = self.context
        settings = self.settings
        throttle = ctx.throttle

        self._started_monotonic = ctx.clock.monotonic()
        batch_id = generate_batch_id(ctx.clock)
        summary = BatchSummary(batch_id=batch_id, started_at=ctx.clock.now(), dry_run=bool(ctx.dry_run))
        processed_dates: List[datetime] = []
        is_backfill = settings.feature_manual_backfill
        self._aborted_filters = []

        throttle.reset()
        self._emit(
            TelemetryEvent.BATCH_STARTED,
            "Batch processing started",
            batch_id=batch_id,
            dry_run=summary.dry_run,
            backfill=is_backfill,
        )
        self._create_summary(summary)

        try:
            statuses = settings.fulfillment_statuses()
            date_from, date_to, is_backfill = self._resolve_window(batch_id)
            processor = RecordProcessor(
                ctx.sink,
                throttle,
                options=ProcessorOptions.from_settings(settings, dry_run=ctx.dry_run),
                rng=ctx.rng,
                telemetry=ctx.telemetry,
                batch_id=batch_id,
            )
            fetcher = RecordFetcher(
                ctx.source,
                throttle,
                page_cost=settings.estimated_page_cost,
                max_wait_ms=int(settings.max_quota_wait_seconds * 1000),
                telemetry=ctx.telemetry,
            )

            for status in statuses:
                if summary.stop_reason is not None:
                    break
                log.info(f"Processing {status} orders", extra={"batch_id": batch_id, "filter": status})
                record_filter = RecordFilter(
                    customer_account_id=settings.customer_account_id,
                    fulfillment_status=status,
                    date_from=date_from,
                    date_to=date_to,
                    page_size=settings.page_size,
                )
                self._run_filter(record_filter, fetcher, processor, summary, processed_dates)

            summary.status = BatchStatus.COMPLETED
        except Exception as exc:  # noqa: BLE001 - intentional broad catch to record failures
            log.exception("Batch processing failed", extra={"batch_id": batch_id})
            summary.status = BatchStatus.FAILED
            self._record_error(summary, "batch", str(exc))
            self._emit(
                TelemetryEvent.BATCH_ERROR,
                "Batch processing failed",
                level=logging.ERROR,
                batch_id=batch_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        finally:
            summary.credits_used = throttle.total_used
            summary.completed_at = ctx.clock.now()
            if summary.status is BatchStatus.RUNNING:
                summary.status = BatchStatus.FAILED

            if is_backfill or summary.dry_run:
                log.info(
                    "Cursor not advanced",
                    extra={"batch_id": batch_id, "backfill": is_backfill, "dry_run": summary.dry_run},
                )
            else:
                self._advance_cursor(summary, processed_dates)

            self._persist_summary(summary)
            quota = throttle.status()
            self._emit(
                TelemetryEvent.BATCH_COMPLETED,
                "Batch processing completed",
                level=logging.INFO if summary.status is BatchStatus.COMPLETED else logging.ERROR,
                batch_id=batch_id,
                status=summary.status.value,
                stop_reason=summary.stop_reason.value if summary.stop_reason else None,
                records_queried=summary.records_queried,
                records_processed=summary.records_processed,
                records_skipped=summary.records_skipped,
                errors_count=summary.errors_count,
                credits_used=summary.credits_used,
                duration_seconds=summary.duration_seconds,
                credits_remaining=quota.remaining,
                requests_in_window=quota.requests_in_window,
            )
            flush_safely(ctx.telemetry)

        return summary


def run_batch(
    settings: Optional[Settings] = None,
    *,
    ephemeral: bool = False,
    dry_run: Optional[bool] = None,
) -> BatchSummary:
    """
    Run one batch with production wiring and release its resources afterwards.

    Parameters
    ----------
    settings : Settings | None
        Defaults to ``get_settings()``.
    ephemeral : bool
        Keep the cursor and summary in memory instead of PostgreSQL.
    dry_run : bool | None
        Override ``FEATURE_DRY_RUN``.
    """
    with BatchContext.from_settings(settings, ephemeral=ephemeral, dry_run=dry_run) as context:
        return BatchOrchestrator(context).run_batch()


__all__ = ["BatchContext", "BatchOrchestrator", "generate_batch_id", "run_batch"]
