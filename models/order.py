"""
Order data models.

An Order is created exactly once per OrderReview, by the payment
coordinator, when the provider confirms the capture. It is a snapshot:
items, pricing and addresses are copied out of the review and never point
back at it.

Thread Safety:
    Order is a FROZEN dataclass. Fulfillment and refund bookkeeping produce
    a new instance via dataclasses.replace() which the store swaps in under
    its lock.
"""

from __future__ import annotations

import time
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from models.review import Address, LineItem, OrderReview, ShippingMethod
from models.serialization import (
    coerce_price,
    dump_json,
    format_timestamp,
    parse_json_dict,
    parse_json_list,
    parse_timestamp,
    round2,
    utc_now,
)


class PaymentStatus(Enum):
    """
    Money side of an order, independent of fulfillment.

    Lifecycle:
        PAID -> PARTIALLY_REFUNDED -> REFUNDED
    """

    PAID = "paid"
    """Captured in full."""

    PARTIALLY_REFUNDED = "partially_refunded"
    """Some of the captured amount has been returned."""

    REFUNDED = "refunded"
    """Everything has been returned."""


class FulfillmentStatus(Enum):
    """
    Production and shipping progress.

    Lifecycle (forward only):
        PROCESSING -> IN_PRODUCTION -> SHIPPED -> DELIVERED
    """

    PROCESSING = "processing"
    """Paid, not yet on a machine."""

    IN_PRODUCTION = "in_production"
    """Being stitched."""

    SHIPPED = "shipped"
    """Handed to the carrier."""

    DELIVERED = "delivered"
    """Carrier reports delivery."""

    @property
    def rank(self) -> int:
        return list(FulfillmentStatus).index(self)


def generate_order_number(review_id: int, now_ms: Optional[int] = None) -> str:
    """
    Human-readable order number: ORD-<epoch ms>-<review id>.

    The review id part makes it unique without a central sequence; the
    timestamp keeps numbers roughly sortable.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"ORD-{now_ms}-{review_id}"


@dataclass(frozen=True)
class Order:
    """
    Immutable snapshot of a paid review.

    Only fulfillment/tracking and refund bookkeeping fields change after
    creation, always through dataclasses.replace().
    """

    order_number: str
    order_review_id: int
    customer_id: str
    items: Tuple[LineItem, ...]
    subtotal: float
    shipping: float
    tax: float
    total: float
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    shipping_method: Optional[ShippingMethod] = None
    payment_provider: str = ""
    transaction_id: str = ""
    capture_reference: str = ""
    payment_status: PaymentStatus = PaymentStatus.PAID
    fulfillment_status: FulfillmentStatus = FulfillmentStatus.PROCESSING
    refunded_amount: float = 0.0
    tracking_number: str = ""
    tracking_url: str = ""
    carrier: str = ""
    created_at: datetime = field(default_factory=utc_now)
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_review(
        cls,
        review: OrderReview,
        order_number: str,
        transaction_id: str = "",
        capture_reference: str = "",
        provider: str = "",
    ) -> "Order":
        """
        Build an Order from a review's frozen line items.

        Items are deep-copied so later edits to the review object cannot leak
        into the order.
        """
        return cls(
            order_number=order_number,
            order_review_id=review.id,
            customer_id=review.customer_id,
            items=tuple(deepcopy(review.items)),
            subtotal=review.subtotal,
            shipping=review.shipping,
            tax=review.tax,
            total=review.total,
            shipping_address=review.shipping_address,
            billing_address=review.billing_address,
            shipping_method=review.shipping_method,
            payment_provider=provider or review.payment_provider,
            transaction_id=transaction_id,
            capture_reference=capture_reference,
        )

    def item(self, item_id: str) -> Optional[LineItem]:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    @property
    def refundable_amount(self) -> float:
        return max(round2(self.total - self.refunded_amount), 0.0)

    @property
    def refund_window_start(self) -> datetime:
        """Refund windows run from delivery, else shipping, else creation."""
        return self.delivered_at or self.shipped_at or self.created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_number": self.order_number,
            "order_review_id": self.order_review_id,
            "customer_id": self.customer_id,
            "items": [i.to_dict() for i in self.items],
            "subtotal": self.subtotal,
            "shipping": self.shipping,
            "tax": self.tax,
            "total": self.total,
            "shipping_address": self.shipping_address.to_dict() if self.shipping_address else None,
            "billing_address": self.billing_address.to_dict() if self.billing_address else None,
            "shipping_method": self.shipping_method.to_dict() if self.shipping_method else None,
            "payment_provider": self.payment_provider,
            "transaction_id": self.transaction_id,
            "capture_reference": self.capture_reference,
            "payment_status": self.payment_status.value,
            "fulfillment_status": self.fulfillment_status.value,
            "refunded_amount": self.refunded_amount,
            "tracking_number": self.tracking_number,
            "tracking_url": self.tracking_url,
            "carrier": self.carrier,
            "created_at": format_timestamp(self.created_at),
            "shipped_at": format_timestamp(self.shipped_at),
            "delivered_at": format_timestamp(self.delivered_at),
        }

    def to_customer_dict(self) -> Dict[str, Any]:
        data = self.to_dict()
        data.pop("capture_reference", None)
        return data

    def to_row(self) -> Dict[str, Any]:
        row = self.to_dict()
        row["items"] = dump_json(row["items"])
        for key in ("shipping_address", "billing_address", "shipping_method"):
            row[key] = dump_json(row[key]) if row[key] else None
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        try:
            payment_status = PaymentStatus(row.get("payment_status"))
        except ValueError:
            payment_status = PaymentStatus.PAID
        try:
            fulfillment_status = FulfillmentStatus(row.get("fulfillment_status"))
        except ValueError:
            fulfillment_status = FulfillmentStatus.PROCESSING

        return cls(
            order_number=str(row["order_number"]),
            order_review_id=int(row["order_review_id"]),
            customer_id=str(row.get("customer_id", "")),
            items=tuple(LineItem.from_dict(d) for d in parse_json_list(row.get("items"), "items")),
            subtotal=coerce_price(row.get("subtotal")),
            shipping=coerce_price(row.get("shipping")),
            tax=coerce_price(row.get("tax")),
            total=coerce_price(row.get("total")),
            shipping_address=Address.from_dict(parse_json_dict(row.get("shipping_address"), "shipping_address")),
            billing_address=Address.from_dict(parse_json_dict(row.get("billing_address"), "billing_address")),
            shipping_method=ShippingMethod.from_dict(parse_json_dict(row.get("shipping_method"), "shipping_method")),
            payment_provider=row.get("payment_provider") or "",
            transaction_id=row.get("transaction_id") or "",
            capture_reference=row.get("capture_reference") or "",
            payment_status=payment_status,
            fulfillment_status=fulfillment_status,
            refunded_amount=coerce_price(row.get("refunded_amount")),
            tracking_number=row.get("tracking_number") or "",
            tracking_url=row.get("tracking_url") or "",
            carrier=row.get("carrier") or "",
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            shipped_at=parse_timestamp(row.get("shipped_at")),
            delivered_at=parse_timestamp(row.get("delivered_at")),
        )
