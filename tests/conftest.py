"""
Pytest configuration for customs-sync.

Provides fixtures for:
- A deterministic clock and recording telemetry
- Settings with test overrides
- A batch context wired to fakes and in-memory stores
"""

from __future__ import annotations

import os
import random
from typing import Callable, Optional

import pytest

from customs_sync.config import Settings
from customs_sync.infrastructure.stores import InMemoryCursorStore, InMemorySummaryStore
from customs_sync.orchestrator import BatchContext
from tests.fakes import DEFAULT_SEED, FakeClock, FakeSink, FakeSource, RecordingTelemetry, make_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def rng() -> random.Random:
    return random.Random(DEFAULT_SEED)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def build_context(clock: FakeClock, telemetry: RecordingTelemetry) -> Callable[..., BatchContext]:
    """
    Factory for a batch context wired to fakes and in-memory stores.
    """

    def _build(
        settings: Optional[Settings] = None,
        source: Optional[FakeSource] = None,
        sink: Optional[FakeSink] = None,
        cursor_store=None,
        summary_store=None,
        **kwargs,
    ) -> BatchContext:
        return BatchContext(
            settings=settings or make_settings(),
            source=source or FakeSource(),
            sink=sink or FakeSink(),
            cursor_store=cursor_store or InMemoryCursorStore(),
            summary_store=summary_store or InMemorySummaryStore(),
            clock=kwargs.pop("clock", clock),
            telemetry=kwargs.pop("telemetry", telemetry),
            rng=kwargs.pop("rng", random.Random(DEFAULT_SEED)),
            **kwargs,
        )

    return _build


@pytest.fixture(scope="session")
def integration_settings() -> Settings:
    """
    Settings fixture pointing at the integration database.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        _env_file=None,
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "customs_sync"),
        log_level="DEBUG",
    )
