"""
GraphQL client for the remote order API.

Implements both ``RecordSource`` (paginated orders query) and ``MutationSink``
(customs value update and tagging) over HTTP with ``requests``. Transient
failures (network errors and 5xx responses) are retried with exponential
backoff through tenacity; authentication, validation and rate-limit failures
are surfaced immediately.

Error mapping:

- network failure / 5xx      -> ``TransportError`` (retried)
- 401                        -> credential refresh, then ``AuthError``
- 429                        -> ``QuotaError`` with ``retry_after_ms``
- other 4xx / bad JSON       -> ``RemoteApiError``
- GraphQL ``errors``         -> ``GraphQLValidationError``
- mutation ``user_errors``   -> ``MutationError``

Usage:
    client = GraphQLClient.from_settings(get_settings())
    page = client.query(record_filter, cursor=None)
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, List, Optional, Sequence

import requests
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from customs_sync.config import Settings
from customs_sync.domain.models import Record, RecordFilter
from customs_sync.domain.results import LineItemUpdate, MutationReceipt, Page
from customs_sync.errors import (
    AuthError,
    GraphQLValidationError,
    MutationError,
    QuotaError,
    RemoteApiError,
    TransportError,
)
from customs_sync.utils.logging import get_logger

log = get_logger(__name__)

ORDERS_QUERY = """
query GetOrders(
  $cursor: String
  $status: String!
  $startDate: ISODateTime!
  $endDate: ISODateTime
  $customerId: String
  $first: Int
) {
  orders(
    customer_account_id: $customerId
    fulfillment_status: $status
    order_date_from: $startDate
    order_date_to: $endDate
  ) {
    request_id
    complexity
    data(after: $cursor, first: $first) {
      pageInfo {
        hasNextPage
        endCursor
      }
      edges {
        node {
          id
          order_number
          order_date
          total_price
          tags
          shipping_address {
            country
            country_code
          }
          line_items(first: 50) {
            edges {
              node {
                id
                sku
                quantity
                price
                customs_value
              }
            }
          }
        }
      }
    }
  }
}
"""

UPDATE_LINE_ITEMS_MUTATION = """
mutation UpdateLineItems($orderId: String!, $lineItems: [UpdateLineItemInput]!) {
  order_update_line_items(data: {order_id: $orderId, line_items: $lineItems}) {
    request_id
    complexity
    user_errors {
      message
      path
    }
  }
}
"""

ADD_TAGS_MUTATION = """
mutation AddTags($orderId: String!, $tags: [String]!) {
  order_add_tags(data: {order_id: $orderId, tags: $tags}) {
    request_id
    complexity
    user_errors {
      message
      path
    }
  }
}
"""


def _format_datetime(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _credits_remaining(body: Dict[str, Any]) -> Optional[int]:
    credits = ((body.get("extensions") or {}).get("credits")) or {}
    remaining = credits.get("remaining")
    return int(remaining) if remaining is not None else None


def _complexity(payload: Dict[str, Any], body: Dict[str, Any]) -> int:
    value = payload.get("complexity")
    if value is None:
        value = (body.get("extensions") or {}).get("complexity")
    return int(value or 0)


class TokenProvider:
    """
    Holds the API access token and refreshes it from the refresh token on demand.
    """

    def __init__(
        self,
        auth_url: str,
        access_token: str = "",
        refresh_token: str = "",
        session: Optional[requests.Session] = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._auth_url = auth_url
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._session = session or requests.Session()
        self._timeout = timeout_seconds

    @property
    def token(self) -> str:
        if not self._access_token and self._refresh_token:
            self.force_refresh()
        return self._access_token

    def force_refresh(self) -> None:
        """Exchange the refresh token for a new access token."""
        if not self._refresh_token:
            raise AuthError("No refresh token configured")

        log.info("Refreshing API access token")
        try:
            resp = self._session.post(
                self._auth_url,
                json={"refresh_token": self._refresh_token},
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"Token refresh request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise AuthError(
                f"Token refresh failed: HTTP {resp.status_code}",
                {"status": resp.status_code, "body": resp.text},
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise AuthError("Token refresh returned invalid JSON") from exc

        access_token = data.get("access_token")
        if not access_token:
            raise AuthError("Invalid token response: missing access_token", {"keys": sorted(data)})

        self._access_token = access_token
        log.info("Access token refreshed", extra={"expires_in": data.get("expires_in")})


class GraphQLClient:
    """
    HTTP GraphQL client.

    Parameters
    ----------
    api_url : str
        GraphQL endpoint.
    tokens : TokenProvider
        Source of the bearer token; refreshed on 401.
    max_retries : int
        Retries after the first attempt for transient failures.
    retry_delay_seconds : float
        Base delay of the exponential backoff.
    """

    def __init__(
        self,
        api_url: str,
        tokens: TokenProvider,
        session: Optional[requests.Session] = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api_url = api_url
        self._tokens = tokens
        self._session = session or requests.Session()
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._sleep = sleep
        self.request_count = 0

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> "GraphQLClient":
        session = session or requests.Session()
        tokens = TokenProvider(
            auth_url=settings.auth_url,
            access_token=settings.access_token,
            refresh_token=settings.refresh_token,
            session=session,
            timeout_seconds=settings.http_timeout_seconds,
        )
        return cls(
            api_url=settings.api_url,
            tokens=tokens,
            session=session,
            timeout_seconds=settings.http_timeout_seconds,
            max_retries=settings.http_max_retries,
            retry_delay_seconds=settings.http_retry_delay_seconds,
        )

    # -- transport ------------------------------------------------------------

    def _log_retry(self, retry_state) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        log.warning(
            f"Request failed, retrying (attempt {retry_state.attempt_number}/{self._max_retries})",
            extra={"error": str(exc), "attempt": retry_state.attempt_number},
        )

    def _execute(self, document: str, variables: Dict[str, Any]) -> Dict[str, Any]:
        self.request_count += 1
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._tokens.token}",
        }
        try:
            resp = self._session.post(
                self._api_url,
                json={"query": document, "variables": variables},
                headers=headers,
                timeout=self._timeout,
            )
        except requests.RequestException as exc:
            raise TransportError(f"Network request failed: {exc}") from exc

        if resp.status_code == 401:
            log.warning("Received 401, attempting token refresh")
            self._tokens.force_refresh()
            raise AuthError("Authentication failed, token refreshed - please retry")

        if resp.status_code == 429:
            retry_after = resp.headers.get("Retry-After")
            retry_after_ms = int(retry_after) * 1000 if retry_after and retry_after.isdigit() else None
            raise QuotaError("Rate limit exceeded", retry_after_ms=retry_after_ms)

        if resp.status_code >= 500:
            raise TransportError(f"HTTP {resp.status_code}", status_code=resp.status_code, details=resp.text)

        if resp.status_code >= 400:
            raise RemoteApiError(f"HTTP {resp.status_code}", "HTTP_ERROR", resp.status_code, resp.text)

        try:
            body = resp.json()
        except ValueError as exc:
            raise RemoteApiError("Failed to parse response JSON", "PARSE_ERROR", resp.status_code) from exc

        errors = body.get("errors") or []
        if errors:
            messages = ", ".join(str(e.get("message", e)) for e in errors)
            raise GraphQLValidationError(f"GraphQL errors: {messages}", errors)

        log.debug(
            "Received GraphQL response",
            extra={
                "request_count": self.request_count,
                "credits_remaining": _credits_remaining(body),
            },
        )
        return body

    def request(self, document: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute a GraphQL document, retrying network errors and 5xx responses.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._retry_delay, min=self._retry_delay, max=30),
            retry=retry_if_exception_type(TransportError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._execute, document, variables or {})

    # -- RecordSource ---------------------------------------------------------

    def query(self, record_filter: RecordFilter, cursor: Optional[str]) -> Page[Record]:
        variables = {
            "cursor": cursor,
            "status": record_filter.fulfillment_status,
            "startDate": _format_datetime(record_filter.date_from),
            "endDate": _format_datetime(record_filter.date_to),
            "customerId": record_filter.customer_account_id or None,
            "first": record_filter.page_size,
        }
        body = self.request(ORDERS_QUERY, variables)
        orders = ((body.get("data") or {}).get("orders")) or {}
        connection = orders.get("data") or {}
        page_info = connection.get("pageInfo") or {}
        edges = connection.get("edges") or []

        records: List[Record] = [Record.from_graphql(edge["node"]) for edge in edges if edge and edge.get("node")]
        return Page(
            items=records,
            next_cursor=page_info.get("endCursor"),
            has_more=bool(page_info.get("hasNextPage")),
            cost_reported=_complexity(orders, body),
            credits_remaining=_credits_remaining(body),
        )

    def force_refresh(self) -> None:
        self._tokens.force_refresh()

    # -- MutationSink ---------------------------------------------------------

    def _mutate(self, document: str, field: str, variables: Dict[str, Any]) -> MutationReceipt:
        body = self.request(document, variables)
        payload = ((body.get("data") or {}).get(field)) or {}
        user_errors = payload.get("user_errors") or []
        if user_errors:
            messages = ", ".join(str(e.get("message", e)) for e in user_errors)
            raise MutationError(f"{field} rejected: {messages}", user_errors)
        return MutationReceipt(
            cost_reported=_complexity(payload, body),
            credits_remaining=_credits_remaining(body),
            request_id=payload.get("request_id"),
        )

    def apply_field_update(self, record_id: str, updates: Sequence[LineItemUpdate]) -> MutationReceipt:
        line_items = [{"id": u.line_item_id, "customs_value": f"{u.customs_value:.2f}"} for u in updates]
        return self._mutate(
            UPDATE_LINE_ITEMS_MUTATION,
            "order_update_line_items",
            {"orderId": record_id, "lineItems": line_items},
        )

    def apply_tag(self, record_id: str, tag: str) -> MutationReceipt:
        return self._mutate(ADD_TAGS_MUTATION, "order_add_tags", {"orderId": record_id, "tags": [tag]})


__all__ = [
    "ORDERS_QUERY",
    "UPDATE_LINE_ITEMS_MUTATION",
    "ADD_TAGS_MUTATION",
    "TokenProvider",
    "GraphQLClient",
]
