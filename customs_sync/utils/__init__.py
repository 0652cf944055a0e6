"""
Utilities package for customs-sync.

Exports shared helpers for logging, telemetry and time. Keep this package
lightweight and free of domain-specific logic.
"""

from customs_sync.utils.clock import SystemClock
from customs_sync.utils.logging import configure_logging, get_logger
from customs_sync.utils.telemetry import LoggingTelemetry, TelemetryEvent, emit_safely, flush_safely

__all__ = [
    "SystemClock",
    "configure_logging",
    "get_logger",
    "LoggingTelemetry",
    "TelemetryEvent",
    "emit_safely",
    "flush_safely",
]
