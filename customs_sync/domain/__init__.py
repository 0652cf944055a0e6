"""
Domain package for customs-sync.

Exports the order models and the result contracts shared by the core components.
Keep this package focused on data definitions and validation concerns.
"""

from customs_sync.domain.models import Cursor, LineItem, Record, RecordFilter
from customs_sync.domain.results import (
    AllocationResult,
    BatchStatus,
    BatchSummary,
    ErrorDetail,
    LineItemUpdate,
    MutationReceipt,
    Page,
    ProcessingResult,
    ProcessingStatus,
    SkipReason,
    StopReason,
)

__all__ = [
    "Cursor",
    "LineItem",
    "Record",
    "RecordFilter",
    "AllocationResult",
    "BatchStatus",
    "BatchSummary",
    "ErrorDetail",
    "LineItemUpdate",
    "MutationReceipt",
    "Page",
    "ProcessingResult",
    "ProcessingStatus",
    "SkipReason",
    "StopReason",
]
