"""
Structured batch telemetry.

Events are fire-and-forget: ``emit_safely`` and ``flush_safely`` swallow any
failure of the telemetry backend so it can never change a batch outcome. The
default backend writes events through standard logging, where the JSON
formatter turns them into structured records.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Dict

from customs_sync.utils.logging import get_logger

log = get_logger(__name__)

_RESERVED = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class TelemetryEvent(str, enum.Enum):
    BATCH_STARTED = "batch_started"
    ORDERS_QUERIED = "orders_queried"
    ORDER_PROCESSING = "order_processing"
    ORDER_SKIPPED = "order_skipped"
    CUSTOMS_CALCULATED = "customs_calculated"
    LINE_ITEMS_UPDATED = "line_items_updated"
    ORDER_TAGGED = "order_tagged"
    ORDER_COMPLETED = "order_completed"
    QUOTA_WARNING = "quota_warning"
    BATCH_COMPLETED = "batch_completed"
    BATCH_ERROR = "batch_error"
    CURSOR_LOADED = "cursor_loaded"
    CURSOR_INITIALIZED = "cursor_initialized"
    CURSOR_UPDATED = "cursor_updated"
    CURSOR_UNCHANGED = "cursor_unchanged"
    CURSOR_ERROR = "cursor_error"
    CURSOR_WARNING = "cursor_warning"


def _safe_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Rename keys that would collide with LogRecord attributes."""
    return {(f"field_{key}" if key in _RESERVED else key): value for key, value in fields.items()}


class LoggingTelemetry:
    """Telemetry backend that writes each event as a log record."""

    def __init__(self, logger_name: str = "customs_sync.telemetry") -> None:
        self._logger = logging.getLogger(logger_name)

    def emit(self, event: TelemetryEvent, message: str, level: int = logging.INFO, **fields: Any) -> None:
        extra = _safe_fields(fields)
        extra["event"] = event.value
        self._logger.log(level, message, extra=extra)

    def flush(self) -> None:
        for handler in list(self._logger.handlers) + list(logging.getLogger().handlers):
            handler.flush()


def emit_safely(telemetry: Any, event: TelemetryEvent, message: str, level: int = logging.INFO, **fields: Any) -> None:
    try:
        telemetry.emit(event, message, level=level, **fields)
    except Exception as exc:  # noqa: BLE001 - telemetry must never affect the batch
        log.debug("Telemetry emit failed", extra={"telemetry_event": event.value, "error": str(exc)})


def flush_safely(telemetry: Any) -> None:
    try:
        telemetry.flush()
    except Exception as exc:  # noqa: BLE001 - telemetry must never affect the batch
        log.warning("Failed to flush telemetry", extra={"error": str(exc)})


__all__ = ["TelemetryEvent", "LoggingTelemetry", "emit_safely", "flush_safely"]
