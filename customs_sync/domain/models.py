"""
Domain models for customs-sync.

Defines the order (record) and line item schema as returned by the remote order
API, the query filter used to page through orders, and the persisted processing
cursor. These models are used for validation and type hints across the fetcher,
processor and orchestrator.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


def _to_decimal(raw: Any) -> Decimal:
    if raw in (None, ""):
        return Decimal("0")
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        return Decimal("0")


class LineItem(BaseModel):
    """
    A single line item of an order.
    """

    id: str = Field(..., description="Remote line item identifier.")
    sku: str = Field("", description="Stock keeping unit.")
    unit_price: Decimal = Field(Decimal("0"), description="Unit price; <= 0 means complimentary.")
    quantity: int = Field(1, description="Ordered quantity.")

    model_config = {"frozen": True}

    @property
    def is_billable(self) -> bool:
        return self.unit_price > 0


class Record(BaseModel):
    """
    Representation of a single order eligible for customs processing.
    """

    id: str = Field(..., description="Remote order identifier.")
    order_number: str = Field("", description="Human-facing order number.")
    total: Decimal = Field(Decimal("0"), description="Order total price.")
    destination: Optional[str] = Field(None, description="Shipping country code, if known.")
    tags: List[str] = Field(default_factory=list, description="Order tags.")
    line_items: List[LineItem] = Field(default_factory=list, description="Ordered line items.")
    order_date: Optional[datetime] = Field(None, description="Order timestamp.")

    model_config = {"frozen": True}

    @field_validator("order_date")
    @classmethod
    def _utc_order_date(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def billable_items(self) -> List[LineItem]:
        return [item for item in self.line_items if item.is_billable]

    @classmethod
    def from_graphql(cls, node: Dict[str, Any]) -> "Record":
        """
        Build a record from an ``orders`` connection node.
        """
        address = node.get("shipping_address") or None
        destination: Optional[str] = None
        if address:
            destination = (address.get("country_code") or address.get("country") or "").strip() or None

        edges = ((node.get("line_items") or {}).get("edges")) or []
        items = [
            LineItem(
                id=str(edge["node"]["id"]),
                sku=edge["node"].get("sku") or "",
                unit_price=_to_decimal(edge["node"].get("price")),
                quantity=int(edge["node"].get("quantity") or 0),
            )
            for edge in edges
            if edge and edge.get("node")
        ]

        return cls(
            id=str(node["id"]),
            order_number=str(node.get("order_number") or ""),
            total=_to_decimal(node.get("total_price")),
            destination=destination,
            tags=list(node.get("tags") or []),
            line_items=items,
            order_date=node.get("order_date") or None,
        )


class RecordFilter(BaseModel):
    """
    Query filter for one paginated order stream.
    """

    customer_account_id: str = Field("", description="Remote customer account.")
    fulfillment_status: str = Field(..., description="Fulfillment status to query.")
    date_from: datetime = Field(..., description="Lower bound on order date (inclusive).")
    date_to: Optional[datetime] = Field(None, description="Optional upper bound on order date.")
    page_size: int = Field(25, description="Orders per page.")

    model_config = {"frozen": True}

    @property
    def label(self) -> str:
        return self.fulfillment_status


class Cursor(BaseModel):
    """
    Persisted processing watermark.
    """

    name: str
    last_processed_date: datetime
    updated_at: datetime
    updated_by_batch_id: Optional[str] = None

    model_config = {"frozen": True}


__all__ = ["LineItem", "Record", "RecordFilter", "Cursor"]
