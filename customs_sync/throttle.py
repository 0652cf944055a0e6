"""
Dual-constraint throttle for the remote order API.

The remote enforces two independent limits:

- a credit budget that replenishes at a fixed rate up to a maximum, where every
  call costs a reported number of credits ("complexity");
- a hard cap on the number of requests in a rolling time window.

``QuotaThrottle`` tracks both locally, prefers server-reported balances when
they are available, and answers "may I spend this much now, and if not, how
long until I can?". One instance is owned by one batch run; it is not safe for
concurrent callers.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Deque, Optional

from customs_sync.infrastructure.abstract import Clock
from customs_sync.utils.clock import SystemClock
from customs_sync.utils.logging import get_logger

log = get_logger(__name__)

REQUEST_LIMIT = "request_limit"
INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class QuotaLimits:
    max_credits: int = 4004
    replenish_rate: float = 60.0  # credits per second
    credit_buffer: int = 100
    max_requests: int = 7000
    window_seconds: float = 300.0
    request_buffer: int = 100

    @classmethod
    def from_settings(cls, settings) -> "QuotaLimits":
        return cls(
            max_credits=settings.quota_max_credits,
            replenish_rate=settings.quota_replenish_rate,
            credit_buffer=settings.quota_credit_buffer,
            max_requests=settings.quota_max_requests,
            window_seconds=settings.quota_window_seconds,
            request_buffer=settings.quota_request_buffer,
        )


@dataclass(frozen=True)
class QuotaDecision:
    """
    Outcome of a quota check. ``wait_ms`` is the suggested wait when not ok;
    None means waiting will not help.
    """

    ok: bool
    wait_ms: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class QuotaStatus:
    remaining: int
    total_used: int
    replenish_rate: float
    max_credits: int
    requests_in_window: int
    max_requests_per_window: int
    request_limit_remaining: int


class QuotaThrottle:
    """
    Credit budget plus sliding request window.

    Parameters
    ----------
    limits : QuotaLimits, optional
        Remote API limits. Defaults to the documented production limits.
    clock : Clock, optional
        Time source used for replenishment, the request window and waits.
    """

    def __init__(self, limits: Optional[QuotaLimits] = None, clock: Optional[Clock] = None) -> None:
        self.limits = limits or QuotaLimits()
        self._clock = clock or SystemClock()
        self._remaining: float = float(self.limits.max_credits)
        self._last_update: float = self._clock.monotonic()
        self._total_used: int = 0
        self._requests: Deque[float] = deque()

    # -- internal bookkeeping -------------------------------------------------

    def _replenished(self, now: float) -> int:
        elapsed = max(0.0, now - self._last_update)
        return int(math.floor(elapsed * self.limits.replenish_rate))

    def _current_credits(self, now: float) -> float:
        return min(float(self.limits.max_credits), self._remaining + self._replenished(now))

    def _prune(self, now: float) -> int:
        window_start = now - self.limits.window_seconds
        while self._requests and self._requests[0] <= window_start:
            self._requests.popleft()
        return len(self._requests)

    def _refresh(self) -> None:
        now = self._clock.monotonic()
        self._remaining = self._current_credits(now)
        self._last_update = now

    def _check_request_window(self, now: float) -> QuotaDecision:
        in_window = self._prune(now)
        available = self.limits.max_requests - in_window
        if available > self.limits.request_buffer or not self._requests:
            return QuotaDecision(ok=True)

        oldest = self._requests[0]
        wait_ms = max(0, math.ceil((oldest + self.limits.window_seconds - now) * 1000))
        log.warning(
            "Request limit reached, need to wait",
            extra={
                "requests_in_window": in_window,
                "max_requests": self.limits.max_requests,
                "wait_ms": wait_ms,
            },
        )
        return QuotaDecision(ok=False, wait_ms=wait_ms, reason=REQUEST_LIMIT)

    # -- public API -----------------------------------------------------------

    def track_request(self) -> None:
        """Count one remote request in the rolling window."""
        now = self._clock.monotonic()
        self._prune(now)
        self._requests.append(now)

    def can_proceed(self, estimated_cost: int) -> QuotaDecision:
        """
        Check both limits for a call expected to cost ``estimated_cost`` credits.

        The request window is checked first since it is cheaper; then the
        replenished credit estimate must cover the cost plus the safety buffer.
        """
        now = self._clock.monotonic()
        window = self._check_request_window(now)
        if not window.ok:
            return window

        current = self._current_credits(now)
        required = estimated_cost + self.limits.credit_buffer
        if current >= required:
            return QuotaDecision(ok=True)

        if self.limits.replenish_rate <= 0:
            return QuotaDecision(ok=False, wait_ms=None, reason=INSUFFICIENT_CREDITS)

        wait_seconds = math.ceil((required - current) / self.limits.replenish_rate)
        log.warning(
            "Insufficient credits, need to wait",
            extra={
                "current_credits": int(current),
                "required_credits": required,
                "wait_seconds": wait_seconds,
                "estimated_cost": estimated_cost,
            },
        )
        return QuotaDecision(ok=False, wait_ms=wait_seconds * 1000, reason=INSUFFICIENT_CREDITS)

    def record_usage(self, actual_cost: int, server_remaining: Optional[int] = None) -> None:
        """
        Account for one completed remote call.

        A server-reported remaining balance replaces the local estimate; without
        one the estimate is decremented by the cost and replenished for the
        elapsed time. Total usage always accumulates.
        """
        self.track_request()
        now = self._clock.monotonic()

        if server_remaining is not None:
            self._remaining = float(server_remaining)
        else:
            self._remaining = min(
                float(self.limits.max_credits),
                self._remaining - actual_cost + self._replenished(now),
            )

        self._total_used += actual_cost
        self._last_update = now

        if self._remaining < self.limits.credit_buffer * 2:
            log.warning(
                "Credits running low",
                extra={
                    "remaining": int(self._remaining),
                    "threshold": self.limits.credit_buffer * 2,
                    "total_used": self._total_used,
                },
            )

    def wait_for(self, cost: int, max_wait_ms: int) -> bool:
        """
        Wait (bounded) until a call of ``cost`` credits may proceed.

        Returns False without sleeping when the required wait is unknown or
        exceeds ``max_wait_ms``; the caller should then stop instead of blocking.
        Otherwise sleeps once, refreshes the estimate and re-checks.
        """
        decision = self.can_proceed(cost)
        if decision.ok:
            return True

        if decision.wait_ms is None or decision.wait_ms > max_wait_ms:
            log.warning(
                "Required wait time exceeds maximum",
                extra={"required_wait_ms": decision.wait_ms, "max_wait_ms": max_wait_ms, "reason": decision.reason},
            )
            return False

        log.info(
            f"Waiting {decision.wait_ms}ms for quota to replenish",
            extra={"wait_ms": decision.wait_ms, "estimated_cost": cost, "reason": decision.reason},
        )
        self._clock.sleep(decision.wait_ms / 1000.0)
        self._refresh()
        return self.can_proceed(cost).ok

    def reset(self) -> None:
        """Reinitialize both constraints. Called once per batch."""
        self._remaining = float(self.limits.max_credits)
        self._last_update = self._clock.monotonic()
        self._total_used = 0
        self._requests.clear()
        log.info(
            "Quota throttle reset",
            extra={"max_credits": self.limits.max_credits, "max_requests_per_window": self.limits.max_requests},
        )

    @property
    def total_used(self) -> int:
        return self._total_used

    @property
    def remaining(self) -> int:
        return int(self._current_credits(self._clock.monotonic()))

    @property
    def requests_in_window(self) -> int:
        return self._prune(self._clock.monotonic())

    def status(self) -> QuotaStatus:
        in_window = self.requests_in_window
        return QuotaStatus(
            remaining=self.remaining,
            total_used=self._total_used,
            replenish_rate=self.limits.replenish_rate,
            max_credits=self.limits.max_credits,
            requests_in_window=in_window,
            max_requests_per_window=self.limits.max_requests,
            request_limit_remaining=self.limits.max_requests - in_window,
        )


__all__ = [
    "REQUEST_LIMIT",
    "INSUFFICIENT_CREDITS",
    "QuotaLimits",
    "QuotaDecision",
    "QuotaStatus",
    "QuotaThrottle",
]
