"""
Persisted processing watermark.

The watermark is the order date beyond which orders are considered unprocessed.
It only ever moves forward: ``advance`` ignores dates that are not newer than the
stored value, so an overlapping or late run can never rewind it. Reprocessing
below the watermark is harmless anyway because processed orders carry the
idempotency tag.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from customs_sync.infrastructure.abstract import Clock, CursorStore, Telemetry
from customs_sync.utils.clock import SystemClock
from customs_sync.utils.telemetry import LoggingTelemetry, TelemetryEvent, emit_safely

MAX_FUTURE_SKEW = timedelta(days=1)


class ResumableCursor:
    """
    Watermark reader/writer on top of a ``CursorStore``.

    Parameters
    ----------
    store : CursorStore
        Persistence backend.
    default_date : datetime
        Watermark used the first time a cursor name is seen.
    """

    def __init__(
        self,
        store: CursorStore,
        default_date: datetime,
        clock: Optional[Clock] = None,
        telemetry: Optional[Telemetry] = None,
    ) -> None:
        self._store = store
        self.default_date = default_date
        self._clock = clock or SystemClock()
        self._telemetry = telemetry or LoggingTelemetry()

    def get(self, name: str) -> datetime:
        """
        Return the persisted watermark, initialising it from the default on first use.

        Store failures propagate; the caller decides whether to fall back.
        """
        cursor = self._store.get(name)
        if cursor is not None:
            emit_safely(
                self._telemetry,
                TelemetryEvent.CURSOR_LOADED,
                "Loaded processing cursor",
                cursor_name=name,
                last_processed_date=cursor.last_processed_date.isoformat(),
                updated_by_batch_id=cursor.updated_by_batch_id,
            )
            return cursor.last_processed_date

        self._store.set(name, self.default_date, None)
        emit_safely(
            self._telemetry,
            TelemetryEvent.CURSOR_INITIALIZED,
            "Initialized processing cursor from configured start date",
            cursor_name=name,
            start_date=self.default_date.isoformat(),
        )
        return self.default_date

    def advance(self, name: str, new_date: datetime, batch_id: str) -> bool:
        """
        Persist ``new_date`` if it is newer than the stored watermark.

        Returns True when a write happened. Store failures propagate.
        """
        current = self._store.get(name)
        if current is not None and new_date <= current.last_processed_date:
            emit_safely(
                self._telemetry,
                TelemetryEvent.CURSOR_UNCHANGED,
                "Cursor not advanced: new date is not after the stored watermark",
                cursor_name=name,
                current=current.last_processed_date.isoformat(),
                proposed=new_date.isoformat(),
                batch_id=batch_id,
            )
            return False

        self._store.set(name, new_date, batch_id)
        emit_safely(
            self._telemetry,
            TelemetryEvent.CURSOR_UPDATED,
            "Updated processing cursor",
            cursor_name=name,
            new_date=new_date.isoformat(),
            batch_id=batch_id,
        )
        return True

    def compute_next_watermark(self, processed_dates: Iterable[Optional[datetime]]) -> Optional[datetime]:
        """
        Latest of ``processed_dates``, or None ("no movement") when there are none.

        Dates more than a day in the future are treated as corrupt and capped to now.
        """
        dates = [d for d in processed_dates if d is not None]
        if not dates:
            return None

        latest = max(dates)
        now = self._clock.now()
        if latest > now + MAX_FUTURE_SKEW:
            emit_safely(
                self._telemetry,
                TelemetryEvent.CURSOR_WARNING,
                "Latest order date is in the future, capping to now",
                level=logging.WARNING,
                latest_order_date=latest.isoformat(),
                capped_to=now.isoformat(),
            )
            return now
        return latest


__all__ = ["ResumableCursor", "MAX_FUTURE_SKEW"]
