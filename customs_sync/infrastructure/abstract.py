"""
Collaborator interfaces consumed by the customs-sync core.

The fetcher, processor and orchestrator only talk to these Protocols. Concrete
implementations live next to this module (GraphQL client, Postgres and in-memory
stores); tests provide their own fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional, Protocol, Sequence, runtime_checkable

from customs_sync.domain.models import Cursor, Record, RecordFilter
from customs_sync.domain.results import BatchSummary, LineItemUpdate, MutationReceipt, Page


@runtime_checkable
class RecordSource(Protocol):
    """
    Paginated order query.

    Implementations retry transient and 5xx failures internally, never retry
    authentication or validation errors, and force a credential refresh before
    surfacing an ``AuthError``.
    """

    def query(self, record_filter: RecordFilter, cursor: Optional[str]) -> Page[Record]:
        """
        Fetch one page of records.

        Parameters
        ----------
        record_filter : RecordFilter
            Account, status and date bounds of the stream.
        cursor : str | None
            Opaque page cursor; None for the first page.
        """
        ...

    def force_refresh(self) -> None:
        """Refresh credentials after an authentication failure."""
        ...


@runtime_checkable
class MutationSink(Protocol):
    """
    Remote mutations applied to a record.

    Field-level rejection raises ``MutationError``; transport failures raise
    ``TransportError``.
    """

    def apply_field_update(self, record_id: str, updates: Sequence[LineItemUpdate]) -> MutationReceipt:
        ...

    def apply_tag(self, record_id: str, tag: str) -> MutationReceipt:
        ...


@runtime_checkable
class CursorStore(Protocol):
    def get(self, name: str) -> Optional[Cursor]:
        ...

    def set(self, name: str, value: datetime, updated_by: Optional[str]) -> None:
        ...


@runtime_checkable
class SummaryStore(Protocol):
    def create(self, summary: BatchSummary) -> None:
        ...

    def update(self, summary: BatchSummary) -> None:
        ...

    def get(self, batch_id: str) -> Optional[BatchSummary]:
        ...

    def recent(self, limit: int = 10) -> List[BatchSummary]:
        ...


@runtime_checkable
class Clock(Protocol):
    def now(self) -> datetime:
        ...

    def monotonic(self) -> float:
        ...

    def sleep(self, seconds: float) -> None:
        ...


@runtime_checkable
class Telemetry(Protocol):
    """Fire-and-forget structured events. Failures must never affect a batch."""

    def emit(self, event: Any, message: str, level: int = ..., **fields: Any) -> None:
        ...

    def flush(self) -> None:
        ...


__all__ = [
    "RecordSource",
    "MutationSink",
    "CursorStore",
    "SummaryStore",
    "Clock",
    "Telemetry",
]
