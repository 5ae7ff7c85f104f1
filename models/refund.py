"""
Refund request data models.

A RefundRequest is one refund intent against exactly one Order.

Lifecycle:
    PENDING -> UNDER_REVIEW -> APPROVED -> PROCESSING -> COMPLETED
    PENDING | UNDER_REVIEW -> REJECTED | CANCELLED
    APPROVED | PROCESSING -> FAILED -> APPROVED (retry)

Records are append-mutated: status changes add timestamps, nothing is
deleted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from models.serialization import (
    coerce_price,
    dump_json,
    format_timestamp,
    parse_json_list,
    parse_timestamp,
    utc_now,
)


class RefundStatus(Enum):
    """Status of a refund request."""

    PENDING = "pending"
    """Requested, nobody has looked at it yet."""

    UNDER_REVIEW = "under_review"
    """An operator is looking at it."""

    APPROVED = "approved"
    """Approved; provider call about to start."""

    PROCESSING = "processing"
    """Provider call in flight."""

    COMPLETED = "completed"
    """Money returned."""

    REJECTED = "rejected"
    """Declined by an operator, with a reason."""

    CANCELLED = "cancelled"
    """Withdrawn before a decision."""

    FAILED = "failed"
    """Provider call failed; can be approved again."""

    @property
    def is_terminal(self) -> bool:
        return self in (RefundStatus.COMPLETED, RefundStatus.REJECTED, RefundStatus.CANCELLED)

    @property
    def is_active(self) -> bool:
        """Counts toward the one-open-refund-per-order rule."""
        return not self.is_terminal


class RefundType(Enum):
    FULL = "full"
    PARTIAL = "partial"


class RefundReason(Enum):
    """Why the customer wants money back."""

    DAMAGED_DEFECTIVE = "damaged_defective"
    WRONG_ITEM = "wrong_item"
    NOT_AS_DESCRIBED = "not_as_described"
    CHANGED_MIND = "changed_mind"
    DUPLICATE_ORDER = "duplicate_order"
    SHIPPING_DELAY = "shipping_delay"
    QUALITY_ISSUES = "quality_issues"
    OTHER = "other"

    @property
    def label(self) -> str:
        return _REASON_LABELS[self]


_REASON_LABELS = {
    RefundReason.DAMAGED_DEFECTIVE: "Damaged or Defective",
    RefundReason.WRONG_ITEM: "Wrong Item Received",
    RefundReason.NOT_AS_DESCRIBED: "Not as Described",
    RefundReason.CHANGED_MIND: "Changed Mind",
    RefundReason.DUPLICATE_ORDER: "Duplicate Order",
    RefundReason.SHIPPING_DELAY: "Shipping Delay",
    RefundReason.QUALITY_ISSUES: "Quality Issues",
    RefundReason.OTHER: "Other",
}


class RefundMethod(Enum):
    ORIGINAL_PAYMENT = "original_payment"
    STORE_CREDIT = "store_credit"
    MANUAL = "manual"


@dataclass(frozen=True)
class RefundItem:
    """
    One refunded line.

    amount = unit_price * quantity + tax_share + shipping_share
    """

    line_item_id: str
    quantity: int
    unit_price: float
    tax_share: float
    shipping_share: float
    amount: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "line_item_id": self.line_item_id,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "tax_share": self.tax_share,
            "shipping_share": self.shipping_share,
            "amount": self.amount,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefundItem":
        return cls(
            line_item_id=str(data.get("line_item_id", "")),
            quantity=int(coerce_price(data.get("quantity", 0))),
            unit_price=coerce_price(data.get("unit_price")),
            tax_share=coerce_price(data.get("tax_share")),
            shipping_share=coerce_price(data.get("shipping_share")),
            amount=coerce_price(data.get("amount")),
        )


@dataclass
class RefundRequest:
    """
    A refund intent against one Order.

    `capture_reference` is copied from the Order at creation and may be
    overridden by an operator when the provider needs one we don't have.
    `failure_reason` holds raw provider text and `internal_notes` the
    operator-only audit trail (retry markers); neither is shown to
    customers.
    """

    id: int
    order_number: str
    customer_id: str
    requested_amount: float
    original_amount: float
    refund_type: RefundType
    reason: RefundReason
    description: str = ""
    status: RefundStatus = RefundStatus.PENDING
    refund_method: RefundMethod = RefundMethod.ORIGINAL_PAYMENT
    currency: str = "USD"
    items: List[RefundItem] = field(default_factory=list)
    admin_notes: str = ""
    internal_notes: str = ""
    rejection_reason: str = ""
    failure_reason: str = ""
    provider: str = ""
    capture_reference: str = ""
    provider_refund_id: str = ""
    attempts: int = 0
    requested_by: str = "customer"
    requested_at: datetime = field(default_factory=utc_now)
    reviewed_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "order_number": self.order_number,
            "customer_id": self.customer_id,
            "requested_amount": self.requested_amount,
            "original_amount": self.original_amount,
            "refund_type": self.refund_type.value,
            "reason": self.reason.value,
            "reason_label": self.reason.label,
            "description": self.description,
            "status": self.status.value,
            "refund_method": self.refund_method.value,
            "currency": self.currency,
            "items": [i.to_dict() for i in self.items],
            "admin_notes": self.admin_notes,
            "internal_notes": self.internal_notes,
            "rejection_reason": self.rejection_reason,
            "failure_reason": self.failure_reason,
            "provider": self.provider,
            "capture_reference": self.capture_reference,
            "provider_refund_id": self.provider_refund_id,
            "attempts": self.attempts,
            "requested_by": self.requested_by,
            "requested_at": format_timestamp(self.requested_at),
            "reviewed_at": format_timestamp(self.reviewed_at),
            "processed_at": format_timestamp(self.processed_at),
            "completed_at": format_timestamp(self.completed_at),
            "failed_at": format_timestamp(self.failed_at),
            "cancelled_at": format_timestamp(self.cancelled_at),
        }

    def to_customer_dict(self) -> Dict[str, Any]:
        """Customer view: operator-curated text only, no provider detail."""
        data = self.to_dict()
        for key in ("internal_notes", "failure_reason", "capture_reference", "provider_refund_id", "attempts"):
            data.pop(key, None)
        return data

    def to_row(self) -> Dict[str, Any]:
        row = self.to_dict()
        row.pop("reason_label")
        row["refund_items"] = dump_json(row.pop("items"))
        return row

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RefundRequest":
        return cls(
            id=int(row["id"]),
            order_number=str(row.get("order_number", "")),
            customer_id=str(row.get("customer_id", "")),
            requested_amount=coerce_price(row.get("requested_amount")),
            original_amount=coerce_price(row.get("original_amount")),
            refund_type=_enum(RefundType, row.get("refund_type"), RefundType.FULL),
            reason=_enum(RefundReason, row.get("reason"), RefundReason.OTHER),
            description=row.get("description") or "",
            status=_enum(RefundStatus, row.get("status"), RefundStatus.PENDING),
            refund_method=_enum(RefundMethod, row.get("refund_method"), RefundMethod.ORIGINAL_PAYMENT),
            currency=row.get("currency") or "USD",
            items=[RefundItem.from_dict(d) for d in parse_json_list(row.get("refund_items"), "refund_items")],
            admin_notes=row.get("admin_notes") or "",
            internal_notes=row.get("internal_notes") or "",
            rejection_reason=row.get("rejection_reason") or "",
            failure_reason=row.get("failure_reason") or "",
            provider=row.get("provider") or "",
            capture_reference=row.get("capture_reference") or "",
            provider_refund_id=row.get("provider_refund_id") or "",
            attempts=int(coerce_price(row.get("attempts", 0))),
            requested_by=row.get("requested_by") or "customer",
            requested_at=parse_timestamp(row.get("requested_at")) or utc_now(),
            reviewed_at=parse_timestamp(row.get("reviewed_at")),
            processed_at=parse_timestamp(row.get("processed_at")),
            completed_at=parse_timestamp(row.get("completed_at")),
            failed_at=parse_timestamp(row.get("failed_at")),
            cancelled_at=parse_timestamp(row.get("cancelled_at")),
        )


def _enum(enum_cls, value, default):
    try:
        return enum_cls(value)
    except ValueError:
        return default


@dataclass
class RefundOutcome:
    """
    Result of an approve/retry attempt.

    `manual_reference_required` is set when the provider needs a capture
    reference. If none was on file the refund stays where it was; if the
    provider rejected the one we sent, the refund is FAILED and the operator
    retries with a corrected reference.
    """

    refund: RefundRequest
    succeeded: bool
    message: str = ""
    manual_reference_required: bool = False

    @classmethod
    def create_completed(cls, refund: RefundRequest, message: str = "Refund completed.") -> "RefundOutcome":
        return cls(refund=refund, succeeded=True, message=message)

    @classmethod
    def create_failed(
        cls,
        refund: RefundRequest,
        message: str,
        manual_reference_required: bool = False
    ) -> "RefundOutcome":
        return cls(
            refund=refund,
            succeeded=False,
            message=message,
            manual_reference_required=manual_reference_required,
        )

    @classmethod
    def create_manual_reference_required(cls, refund: RefundRequest, provider: str) -> "RefundOutcome":
        return cls(
            refund=refund,
            succeeded=False,
            message=f"{provider} refund needs a capture reference. Supply it and approve again.",
            manual_reference_required=True,
        )

    def to_dict(self, customer_view: bool = False) -> Dict[str, Any]:
        return {
            "success": self.succeeded,
            "message": self.message,
            "manual_reference_required": self.manual_reference_required,
            "refund": self.refund.to_customer_dict() if customer_view else self.refund.to_dict(),
        }
