"""
customs-sync - batch customs value allocation for destination-country orders.

For every order shipping to the target country, this package computes bounded
per-line-item customs values, writes them to the remote order API and tags the
order so it is never processed twice. It provides:

- A constrained allocation engine (per-item floor/ceiling, order-level cap)
- A dual-constraint quota throttle (credit budget + request window)
- A monotonic, persisted processing cursor
- Quota-aware paginated fetching and a per-record processing state machine
- A batch orchestrator with persisted run summaries and a typer CLI
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from customs_sync.allocation import distribute
from customs_sync.config import Settings, get_settings
from customs_sync.cursor import ResumableCursor
from customs_sync.fetcher import RecordFetcher, RecordStream
from customs_sync.orchestrator import BatchContext, BatchOrchestrator, run_batch
from customs_sync.processor import RecordProcessor
from customs_sync.throttle import QuotaThrottle
from customs_sync.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    # Configuration
    "Settings",
    "get_settings",
    # Core
    "distribute",
    "QuotaThrottle",
    "ResumableCursor",
    "RecordFetcher",
    "RecordStream",
    "RecordProcessor",
    # Orchestration
    "BatchContext",
    "BatchOrchestrator",
    "run_batch",
    # Logging
    "configure_logging",
    "get_logger",
]
