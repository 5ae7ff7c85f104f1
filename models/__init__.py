"""
Data models for StitchOrderWeb.

This module contains the dataclasses for:
- EmbroideryDesign: Artwork placement with dimensions and options
- PricingBreakdown: Frozen per-unit price of a line item
- OrderReview: Submitted cart awaiting design approval and payment
- Order: Immutable paid order created from an approved review
- RefundRequest: Refund intent against one order

Review, order and refund rows keep their structured columns as JSON
text; from_row() tolerates malformed columns (empty list / None).
"""

from .design import EmbroideryDesign, DesignOptions, SelectedOption
from .pricing import CostBreakdown, PriceQuote, PricingBreakdown, MaterialSpec
from .review import OrderReview, LineItem, ReviewStatus, Actor
from .order import Order, PaymentStatus, FulfillmentStatus
from .refund import RefundRequest, RefundOutcome, RefundStatus

__all__ = [
    # Design models
    "EmbroideryDesign",
    "DesignOptions",
    "SelectedOption",
    # Pricing models
    "CostBreakdown",
    "PriceQuote",
    "PricingBreakdown",
    "MaterialSpec",
    # Review models
    "OrderReview",
    "LineItem",
    "ReviewStatus",
    "Actor",
    # Order models
    "Order",
    "PaymentStatus",
    "FulfillmentStatus",
    # Refund models
    "RefundRequest",
    "RefundOutcome",
    "RefundStatus",
]
