"""
Result contracts exchanged between the core components and their collaborators.

Remote calls return ``Page`` and ``MutationReceipt``; the allocation engine
returns ``AllocationResult``; the processor returns ``ProcessingResult``; the
orchestrator aggregates everything into a ``BatchSummary``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Page(Generic[T]):
    """One page of a cursor-paginated remote query."""

    items: List[T]
    next_cursor: Optional[str] = None
    has_more: bool = False
    cost_reported: int = 0
    credits_remaining: Optional[int] = None


@dataclass(frozen=True)
class MutationReceipt:
    cost_reported: int = 0
    credits_remaining: Optional[int] = None
    request_id: Optional[str] = None


@dataclass(frozen=True)
class LineItemUpdate:
    line_item_id: str
    customs_value: Decimal


@dataclass(frozen=True)
class AllocationResult:
    line_item_id: str
    value: Decimal
    is_complimentary: bool


class SkipReason(str, enum.Enum):
    MISSING_DESTINATION = "missing_destination"
    WRONG_DESTINATION = "wrong_destination"
    ALREADY_TAGGED = "already_tagged"
    NO_BILLABLE_ITEMS = "no_billable_items"
    NONPOSITIVE_TOTAL = "nonpositive_total"


class ProcessingStatus(str, enum.Enum):
    PROCESSED = "processed"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class ProcessingResult:
    record_id: str
    order_number: str
    status: ProcessingStatus
    reason: Optional[str] = None
    credits_used: int = 0
    error: Optional[BaseException] = None
    order_date: Optional[datetime] = None


class BatchStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StopReason(str, enum.Enum):
    QUOTA_EXHAUSTED = "quota_exhausted"
    TIME_LIMIT = "time_limit"


@dataclass(frozen=True)
class ErrorDetail:
    record_id: str
    message: str
    order_number: str = ""


@dataclass
class BatchSummary:
    """
    Outcome of one batch run. Mutated only by the orchestrator while the run is
    in progress; treated as immutable once a terminal status is set.
    """

    batch_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    records_queried: int = 0
    records_processed: int = 0
    records_skipped: int = 0
    errors_count: int = 0
    error_details: List[ErrorDetail] = field(default_factory=list)
    credits_used: int = 0
    status: BatchStatus = BatchStatus.RUNNING
    stop_reason: Optional[StopReason] = None
    dry_run: bool = False

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "records_queried": self.records_queried,
            "records_processed": self.records_processed,
            "records_skipped": self.records_skipped,
            "errors_count": self.errors_count,
            "error_details": [
                {"record_id": d.record_id, "order_number": d.order_number, "error": d.message}
                for d in self.error_details
            ],
            "credits_used": self.credits_used,
            "status": self.status.value,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "dry_run": self.dry_run,
        }


__all__ = [
    "Page",
    "MutationReceipt",
    "LineItemUpdate",
    "AllocationResult",
    "SkipReason",
    "ProcessingStatus",
    "ProcessingResult",
    "BatchStatus",
    "StopReason",
    "ErrorDetail",
    "BatchSummary",
]
