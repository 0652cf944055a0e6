"""
Per-record customs processing.

A record moves through an ordered set of eligibility rules (first match wins),
then allocation, then two remote mutations applied strictly in order:

1. missing destination          -> skipped (missing_destination)
2. destination != target        -> skipped (wrong_destination)
3. idempotency tag present      -> skipped (already_tagged)
4. no positively priced item    -> skipped (no_billable_items)
5. record total <= 0            -> skipped (nonpositive_total)
6. allocate over billable items with cap = min(configured max, record total)
7. allocated total > record total + 0.01 -> error (allocation_invariant_violation)
8. customs value update, then tag (skipped entirely in dry-run mode)

The tag, not the customs values, gates reprocessing: a crash between the two
mutations leaves an untagged record that the next run updates again (the value
update is idempotent per field) and then tags.

``prepare`` runs rules 1-7 without any remote call; ``apply`` runs rule 8. The
orchestrator checks the quota between the two. ``process`` runs both.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Union

from customs_sync.allocation import TOLERANCE, billable_total, distribute, validate_distribution
from customs_sync.domain.models import Record
from customs_sync.domain.results import (
    AllocationResult,
    LineItemUpdate,
    ProcessingResult,
    ProcessingStatus,
    SkipReason,
)
from customs_sync.errors import AllocationInvariantViolation
from customs_sync.infrastructure.abstract import MutationSink, Telemetry
from customs_sync.throttle import QuotaThrottle
from customs_sync.utils.telemetry import LoggingTelemetry, TelemetryEvent, emit_safely

INVARIANT_VIOLATION = "allocation_invariant_violation"


@dataclass(frozen=True)
class ProcessorOptions:
    target_country: str = "TR"
    processed_tag: str = "TR_CUSTOMS_SET"
    max_total: Decimal = Decimal("25.00")
    item_floor: Decimal = Decimal("0.50")
    item_ceiling: Decimal = Decimal("8.00")
    dry_run: bool = False
    apply_values: bool = True
    apply_tag: bool = True

    @classmethod
    def from_settings(cls, settings, dry_run: Optional[bool] = None) -> "ProcessorOptions":
        return cls(
            target_country=settings.target_country,
            processed_tag=settings.processed_tag,
            max_total=settings.max_total_customs_value,
            item_floor=settings.min_item_customs_value,
            item_ceiling=settings.max_item_customs_value,
            dry_run=settings.feature_dry_run if dry_run is None else dry_run,
            apply_values=settings.feature_customs_update,
            apply_tag=settings.feature_order_tagging,
        )


@dataclass(frozen=True)
class ProcessingPlan:
    """An eligible record together with its computed allocation."""

    record: Record
    allocations: List[AllocationResult]
    effective_cap: Decimal

    @property
    def total_value(self) -> Decimal:
        return billable_total(self.allocations)


class RecordProcessor:
    """
    Validate, allocate, mutate and tag one record at a time.

    Every exception raised while allocating or mutating is converted into an
    ``error`` result; nothing escapes to abort the batch.
    """

    def __init__(
        self,
        sink: MutationSink,
        throttle: QuotaThrottle,
        options: Optional[ProcessorOptions] = None,
        rng: Optional[random.Random] = None,
        telemetry: Optional[Telemetry] = None,
        batch_id: str = "",
    ) -> None:
        self._sink = sink
        self._throttle = throttle
        self.options = options or ProcessorOptions()
        self._rng = rng
        self._telemetry = telemetry or LoggingTelemetry()
        self.batch_id = batch_id

    def _result(
        self,
        record: Record,
        status: ProcessingStatus,
        reason: Optional[str] = None,
        credits_used: int = 0,
        error: Optional[BaseException] = None,
    ) -> ProcessingResult:
        return ProcessingResult(
            record_id=record.id,
            order_number=record.order_number,
            status=status,
            reason=reason,
            credits_used=credits_used,
            error=error,
            order_date=record.order_date,
        )

    def _skip(self, record: Record, reason: SkipReason, level: int = logging.INFO, **fields) -> ProcessingResult:
        emit_safely(
            self._telemetry,
            TelemetryEvent.ORDER_SKIPPED,
            f"Order {record.order_number} skipped: {reason.value}",
            level=level,
            batch_id=self.batch_id,
            order_id=record.id,
            order_number=record.order_number,
            reason=reason.value,
            **fields,
        )
        return self._result(record, ProcessingStatus.SKIPPED, reason.value)

    def _error(self, record: Record, exc: BaseException, credits_used: int = 0) -> ProcessingResult:
        emit_safely(
            self._telemetry,
            TelemetryEvent.BATCH_ERROR,
            "Error processing order",
            level=logging.ERROR,
            batch_id=self.batch_id,
            order_id=record.id,
            order_number=record.order_number,
            error=str(exc),
            error_type=type(exc).__name__,
            credits_used=credits_used,
        )
        reason = INVARIANT_VIOLATION if isinstance(exc, AllocationInvariantViolation) else str(exc)
        return self._result(record, ProcessingStatus.ERROR, reason, credits_used, exc)

    def prepare(self, record: Record) -> Union[ProcessingPlan, ProcessingResult]:
        """
        Apply the eligibility rules and compute the allocation. No remote calls.

        Returns a ``ProcessingPlan`` for an eligible record, otherwise the final
        skipped/error ``ProcessingResult``.
        """
        opts = self.options

        if not record.destination:
            return self._skip(record, SkipReason.MISSING_DESTINATION, level=logging.WARNING)

        if record.destination.upper() != opts.target_country.upper():
            return self._skip(
                record, SkipReason.WRONG_DESTINATION, level=logging.DEBUG, destination=record.destination
            )

        if record.has_tag(opts.processed_tag):
            return self._skip(record, SkipReason.ALREADY_TAGGED, level=logging.DEBUG, tag=opts.processed_tag)

        billable = record.billable_items()
        if not billable:
            return self._skip(record, SkipReason.NO_BILLABLE_ITEMS)

        if record.total <= 0:
            return self._skip(record, SkipReason.NONPOSITIVE_TOTAL, total=str(record.total))

        try:
            cap = min(opts.max_total, record.total)
            allocations = distribute(
                billable,
                cap,
                floor=opts.item_floor,
                ceiling=opts.item_ceiling,
                rng=self._rng,
            )
            allocated = billable_total(allocations)
            if allocated > record.total + Decimal(str(TOLERANCE)):
                raise AllocationInvariantViolation(record.id, allocated, record.total)
            violations = validate_distribution(allocations, cap, opts.item_floor, opts.item_ceiling)
        except Exception as exc:  # noqa: BLE001 - per-record failures never abort the batch
            return self._error(record, exc)

        emit_safely(
            self._telemetry,
            TelemetryEvent.CUSTOMS_CALCULATED,
            f"Customs values calculated (total: {allocated})",
            level=logging.WARNING if violations else logging.INFO,
            batch_id=self.batch_id,
            order_id=record.id,
            order_number=record.order_number,
            item_count=len(allocations),
            total_customs_value=str(allocated),
            effective_cap=str(cap),
            violations=violations,
        )
        return ProcessingPlan(record=record, allocations=allocations, effective_cap=cap)

    def apply(self, plan: ProcessingPlan) -> ProcessingResult:
        """Apply the customs value update and then the tag (unless in dry-run mode)."""
        record = plan.record
        opts = self.options
        credits_used = 0

        emit_safely(
            self._telemetry,
            TelemetryEvent.ORDER_PROCESSING,
            f"Processing order {record.order_number}",
            batch_id=self.batch_id,
            order_id=record.id,
            order_number=record.order_number,
            dry_run=opts.dry_run,
        )

        try:
            updates = [LineItemUpdate(a.line_item_id, a.value) for a in plan.allocations]
            if not opts.dry_run and opts.apply_values:
                receipt = self._sink.apply_field_update(record.id, updates)
                credits_used += receipt.cost_reported
                self._throttle.record_usage(receipt.cost_reported, receipt.credits_remaining)
                message = "Line items updated"
            elif opts.dry_run:
                message = "DRY-RUN: Would update line items"
            else:
                message = "Skipped line item update: customs update disabled"
            emit_safely(
                self._telemetry,
                TelemetryEvent.LINE_ITEMS_UPDATED,
                message,
                batch_id=self.batch_id,
                order_id=record.id,
                order_number=record.order_number,
                updates=len(updates),
            )

            if not opts.dry_run and opts.apply_tag:
                receipt = self._sink.apply_tag(record.id, opts.processed_tag)
                credits_used += receipt.cost_reported
                self._throttle.record_usage(receipt.cost_reported, receipt.credits_remaining)
                message = "Order tagged"
            elif opts.dry_run:
                message = "DRY-RUN: Would add tag"
            else:
                message = "Skipped tagging: order tagging disabled"
            emit_safely(
                self._telemetry,
                TelemetryEvent.ORDER_TAGGED,
                message,
                batch_id=self.batch_id,
                order_id=record.id,
                order_number=record.order_number,
                tag=opts.processed_tag,
            )
        except Exception as exc:  # noqa: BLE001 - per-record failures never abort the batch
            return self._error(record, exc, credits_used)

        emit_safely(
            self._telemetry,
            TelemetryEvent.ORDER_COMPLETED,
            "Order processed successfully",
            batch_id=self.batch_id,
            order_id=record.id,
            order_number=record.order_number,
            credits_used=credits_used,
            dry_run=opts.dry_run,
        )
        return self._result(record, ProcessingStatus.PROCESSED, credits_used=credits_used)

    def process(self, record: Record) -> ProcessingResult:
        prepared = self.prepare(record)
        if isinstance(prepared, ProcessingResult):
            return prepared
        return self.apply(prepared)


__all__ = ["INVARIANT_VIOLATION", "ProcessorOptions", "ProcessingPlan", "RecordProcessor"]
