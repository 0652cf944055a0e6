"""
Exception taxonomy for customs-sync.

Remote failures derive from ``RemoteApiError`` and carry an error ``code``, the
HTTP status (when there is one) and raw ``details``. Expected outcomes such as
skipped records or an exhausted quota are not exceptions: they are modelled as
``SkipReason`` values and ``QuotaDecision`` results.
"""

from __future__ import annotations

from typing import Any, Optional


class CustomsSyncError(Exception):
    """Base exception for customs-sync."""


class RemoteApiError(CustomsSyncError):
    """Error reported by (or while talking to) the remote order API."""

    def __init__(
        self,
        message: str,
        code: str = "REMOTE_ERROR",
        status_code: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.status_code is not None and self.status_code >= 500


class TransportError(RemoteApiError):
    """Network failure or 5xx response, surfaced after client retries are exhausted."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None) -> None:
        super().__init__(message, "TRANSPORT_ERROR", status_code, details)

    @property
    def retryable(self) -> bool:
        return True


class AuthError(RemoteApiError):
    """
    Authentication rejected. The client has already forced a credential refresh,
    so the caller may retry the operation.
    """

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message, "AUTH_ERROR", 401, details)

    @property
    def retryable(self) -> bool:
        return True


class QuotaError(RemoteApiError):
    """Remote rate limit hit (HTTP 429)."""

    def __init__(
        self,
        message: str,
        remaining_credits: Optional[int] = None,
        retry_after_ms: Optional[int] = None,
    ) -> None:
        super().__init__(
            message,
            "QUOTA_EXCEEDED",
            429,
            {"remaining_credits": remaining_credits, "retry_after_ms": retry_after_ms},
        )
        self.remaining_credits = remaining_credits
        self.retry_after_ms = retry_after_ms


class GraphQLValidationError(RemoteApiError):
    """The remote rejected the query or mutation document itself. Never retried."""

    def __init__(self, message: str, errors: Any = None) -> None:
        super().__init__(message, "GRAPHQL_ERROR", None, errors)
        self.errors = errors


class MutationError(RemoteApiError):
    """The remote accepted the request but rejected the change (field-level user errors)."""

    def __init__(self, message: str, user_errors: Any = None) -> None:
        super().__init__(message, "USER_ERROR", None, user_errors)
        self.user_errors = user_errors


class AllocationInvariantViolation(CustomsSyncError):
    """Allocated customs total exceeds the record total. Indicates a defect."""

    def __init__(self, record_id: str, allocated: Any, limit: Any) -> None:
        super().__init__(
            f"allocation_invariant_violation: allocated {allocated} exceeds record total {limit}"
        )
        self.record_id = record_id
        self.allocated = allocated
        self.limit = limit


class PersistenceError(CustomsSyncError):
    """Cursor or batch summary storage failed."""


__all__ = [
    "CustomsSyncError",
    "RemoteApiError",
    "TransportError",
    "AuthError",
    "QuotaError",
    "GraphQLValidationError",
    "MutationError",
    "AllocationInvariantViolation",
    "PersistenceError",
]
