"""
Cursor-paginated, quota-aware order fetching.

``RecordFetcher.fetch_all`` returns a ``RecordStream``: a pull-based, finite,
forward-only iterator of record batches. Each pull issues at most one remote
page query. The stream records why it ended (``stop_reason``) so the caller can
tell a normal end from a quota stop or an error.

Usage:
    stream = fetcher.fetch_all(record_filter)
    for batch in stream:
        ...
    if stream.stop_reason is StreamStop.QUOTA_EXHAUSTED:
        ...
"""

from __future__ import annotations

import enum
import logging
from typing import Iterator, List, Optional

from customs_sync.domain.models import Record, RecordFilter
from customs_sync.infrastructure.abstract import RecordSource, Telemetry
from customs_sync.throttle import QuotaThrottle
from customs_sync.utils.telemetry import LoggingTelemetry, TelemetryEvent, emit_safely


class StreamStop(str, enum.Enum):
    NO_MORE_PAGES = "no_more_pages"
    EMPTY_PAGE = "empty_page"
    QUOTA_EXHAUSTED = "quota_exhausted"
    ERROR = "error"


class RecordStream(Iterator[List[Record]]):
    """
    Forward-only stream of record batches for one filter.

    Errors raised by the source propagate out of ``next_batch`` / ``__next__``
    and end the stream; the remaining pages are never requested.
    """

    def __init__(
        self,
        source: RecordSource,
        record_filter: RecordFilter,
        throttle: QuotaThrottle,
        page_cost: int,
        max_wait_ms: int,
        telemetry: Telemetry,
    ) -> None:
        self.record_filter = record_filter
        self._source = source
        self._throttle = throttle
        self._page_cost = page_cost
        self._max_wait_ms = max_wait_ms
        self._telemetry = telemetry
        self._page_cursor: Optional[str] = None
        self.exhausted = False
        self.stop_reason: Optional[StreamStop] = None
        self.pages_fetched = 0
        self.records_fetched = 0

    def __iter__(self) -> "RecordStream":
        return self

    def __next__(self) -> List[Record]:
        batch = self.next_batch()
        if batch is None:
            raise StopIteration
        return batch

    def _finish(self, reason: StreamStop) -> None:
        self.exhausted = True
        self.stop_reason = reason

    def next_batch(self) -> Optional[List[Record]]:
        """Fetch the next page. Returns None once the stream is exhausted."""
        if self.exhausted:
            return None

        if not self._throttle.wait_for(self._page_cost, self._max_wait_ms):
            self._finish(StreamStop.QUOTA_EXHAUSTED)
            emit_safely(
                self._telemetry,
                TelemetryEvent.QUOTA_WARNING,
                "Quota exhausted before next page, ending stream",
                level=logging.WARNING,
                filter=self.record_filter.label,
                pages_fetched=self.pages_fetched,
            )
            return None

        try:
            page = self._source.query(self.record_filter, self._page_cursor)
        except Exception as exc:
            self._finish(StreamStop.ERROR)
            emit_safely(
                self._telemetry,
                TelemetryEvent.BATCH_ERROR,
                "Error fetching orders",
                level=logging.ERROR,
                filter=self.record_filter.label,
                error=str(exc),
                pages_fetched=self.pages_fetched,
                records_fetched=self.records_fetched,
                page_cursor=self._page_cursor,
            )
            raise

        self._throttle.record_usage(page.cost_reported, page.credits_remaining)
        self.pages_fetched += 1

        if not page.items:
            self._finish(StreamStop.EMPTY_PAGE)
            emit_safely(
                self._telemetry,
                TelemetryEvent.ORDERS_QUERIED,
                "No more orders found",
                filter=self.record_filter.label,
                pages_fetched=self.pages_fetched,
                records_fetched=self.records_fetched,
            )
            return None

        self.records_fetched += len(page.items)
        emit_safely(
            self._telemetry,
            TelemetryEvent.ORDERS_QUERIED,
            f"Fetched page {self.pages_fetched}",
            level=logging.DEBUG,
            filter=self.record_filter.label,
            records_in_page=len(page.items),
            records_fetched=self.records_fetched,
            has_more=page.has_more,
            complexity=page.cost_reported,
        )

        if page.has_more and page.next_cursor:
            self._page_cursor = page.next_cursor
        else:
            self._finish(StreamStop.NO_MORE_PAGES)
        return list(page.items)


class RecordFetcher:
    """
    Factory for quota-aware record streams.

    Parameters
    ----------
    source : RecordSource
        Remote order query.
    throttle : QuotaThrottle
        Shared throttle of the current run; every page is checked and accounted.
    page_cost : int
        Credit estimate for one page query.
    max_wait_ms : int
        Longest quota wait accepted before a page; beyond it the stream stops.
    """

    def __init__(
        self,
        source: RecordSource,
        throttle: QuotaThrottle,
        page_cost: int = 100,
        max_wait_ms: int = 120_000,
        telemetry: Optional[Telemetry] = None,
    ) -> None:
        self._source = source
        self._throttle = throttle
        self._page_cost = page_cost
        self._max_wait_ms = max_wait_ms
        self._telemetry = telemetry or LoggingTelemetry()

    def fetch_all(self, record_filter: RecordFilter) -> RecordStream:
        emit_safely(
            self._telemetry,
            TelemetryEvent.ORDERS_QUERIED,
            "Starting order query",
            filter=record_filter.label,
            customer_account_id=record_filter.customer_account_id,
            date_from=record_filter.date_from.isoformat(),
            date_to=record_filter.date_to.isoformat() if record_filter.date_to else None,
            page_size=record_filter.page_size,
        )
        return RecordStream(
            self._source,
            record_filter,
            self._throttle,
            self._page_cost,
            self._max_wait_ms,
            self._telemetry,
        )


__all__ = ["StreamStop", "RecordStream", "RecordFetcher"]
