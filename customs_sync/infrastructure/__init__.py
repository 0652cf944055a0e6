"""
Infrastructure package for customs-sync.

Centralizes I/O concerns: the collaborator Protocols, the GraphQL client for the
remote order API, PostgreSQL connectivity and the cursor/summary stores. Keep
this layer focused on I/O and resource management, decoupled from the
processing and orchestration logic.
"""

from customs_sync.infrastructure.abstract import (
    Clock,
    CursorStore,
    MutationSink,
    RecordSource,
    SummaryStore,
    Telemetry,
)
from customs_sync.infrastructure.stores import (
    InMemoryCursorStore,
    InMemorySummaryStore,
    PostgresCursorStore,
    PostgresSummaryStore,
)

__all__ = [
    "Clock",
    "CursorStore",
    "MutationSink",
    "RecordSource",
    "SummaryStore",
    "Telemetry",
    "InMemoryCursorStore",
    "InMemorySummaryStore",
    "PostgresCursorStore",
    "PostgresSummaryStore",
]
