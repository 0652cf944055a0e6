from __future__ import annotations

from customs_sync.throttle import INSUFFICIENT_CREDITS, REQUEST_LIMIT, QuotaLimits, QuotaThrottle
from tests.fakes import FakeClock, make_settings

MAX_CREDITS = 1000
REPLENISH_RATE = 10.0
CREDIT_BUFFER = 100
MAX_REQUESTS = 5
WINDOW_SECONDS = 60.0
REQUEST_BUFFER = 1


def _throttle(clock: FakeClock, **overrides) -> QuotaThrottle:
    values = dict(
        max_credits=MAX_CREDITS,
        replenish_rate=REPLENISH_RATE,
        credit_buffer=CREDIT_BUFFER,
        max_requests=MAX_REQUESTS,
        window_seconds=WINDOW_SECONDS,
        request_buffer=REQUEST_BUFFER,
    )
    values.update(overrides)
    return QuotaThrottle(QuotaLimits(**values), clock)


def test_limits_from_settings_match_configuration() -> None:
    limits = QuotaLimits.from_settings(make_settings(quota_max_credits=4004, quota_replenish_rate=60.0))

    assert limits.max_credits == 4004
    assert limits.replenish_rate == 60.0
    assert limits.max_requests == 7000


def test_reset_restores_full_budget_and_empty_window(clock: FakeClock) -> None:
    throttle = _throttle(clock)
    throttle.record_usage(300)
    throttle.track_request()

    throttle.reset()

    assert throttle.remaining == MAX_CREDITS
    assert throttle.requests_in_window == 0
    assert throttle.total_used == 0


def test_requests_older_than_window_are_excluded(clock: FakeClock) -> None:
    throttle = _throttle(clock)
    throttle.track_request()
    throttle.track_request()
    clock.advance(30)
    throttle.track_request()

    assert throttle.requests_in_window == 3

    clock.advance(31)
    assert throttle.requests_in_window == 1


def test_request_window_blocks_before_credits(clock: FakeClock) -> None:
    throttle = _throttle(clock)
    for _ in range(MAX_REQUESTS - REQUEST_BUFFER):
        throttle.track_request()
        clock.advance(1)

    decision = throttle.can_proceed(10)

    assert not decision.ok
    assert decision.reason == REQUEST_LIMIT
    # oldest request leaves the window 60s after it was made; 4s have passed
    assert decision.wait_ms == 56_000


def test_insufficient_credits_reports_wait_until_replenished(clock: FakeClock) -> None:
    throttle = _throttle(clock)
    throttle.record_usage(0, server_remaining=50)

    decision = throttle.can_proceed(100)

    assert not decision.ok
    assert decision.reason == INSUFFICIENT_CREDITS
    # needs 200 (cost + buffer), has 50, gains 10/s
    assert decision.wait_ms == 15_000


def test_credits_replenish_over_time_up_to_max(clock: FakeClock) -> None:
    throttle = _throttle(clock)
    throttle.record_usage(500)
    assert throttle.remaining == 500

    clock.advance(10)
    assert throttle.remaining == 600

    clock.advance(1000)
    assert throttle.remaining == MAX_CREDITS


def test_server_reported_balance_overrides_local_estimate(clock: FakeClock) -> None:
    throttle = _throttle(clock)
    throttle.record_usage(25, server_remaining=123)

    assert throttle.remaining == 123
    assert throttle.total_used == 25
    assert throttle.requests_in_window == 1


def test_zero_replenish_rate_offers_no_wait(clock: FakeClock) -> None:
    throttle = _throttle(clock, replenish_rate=0.0)
    throttle.record_usage(0, server_remaining=0)

    decision = throttle.can_proceed(10)

    assert not decision.ok
    assert decision.wait_ms is None
    assert throttle.wait_for(10, 1_000_000) is False
    assert clock.sleeps == []


def test_wait_for_sleeps_then_proceeds(clock: FakeClock) -> None:
    throttle = _throttle(clock)
    throttle.record_usage(0, server_remaining=150)

    assert throttle.wait_for(100, max_wait_ms=10_000) is True
    assert clock.sleeps == [5.0]


def test_wait_for_refuses_waits_beyond_maximum(clock: FakeClock) -> None:
    throttle = _throttle(clock)
    throttle.record_usage(0, server_remaining=0)

    assert throttle.wait_for(100, max_wait_ms=1_000) is False
    assert clock.sleeps == []


def test_status_snapshot(clock: FakeClock) -> None:
    throttle = _throttle(clock)
    throttle.record_usage(40)

    status = throttle.status()

    assert status.remaining == MAX_CREDITS - 40
    assert status.total_used == 40
    assert status.requests_in_window == 1
    assert status.request_limit_remaining == MAX_REQUESTS - 1
