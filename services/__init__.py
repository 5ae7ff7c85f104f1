"""
Services layer for StitchOrderWeb.

This module contains the business logic services:
- OrderStore: Lock-protected review/order/refund tables
- NotificationHub: Best-effort fan-out to subscribers and SSE streams
- ReviewService: Design review state machine
- PaymentCoordinator: Checkout, capture and webhook dispatch
- OrderService: Order lookups and fulfillment
- RefundService: Refund state machine

Thread Model:
    Flask request threads call the services directly. Multi-step
    operations that must not interleave (payment materialization,
    refund creation) run inside OrderStore.atomic().
"""

from .store import OrderStore
from .notifier import NotificationHub
from .review_service import ReviewService
from .payment_service import PaymentCoordinator, WebhookRegistry
from .order_service import OrderService
from .refund_service import RefundService

__all__ = [
    "OrderStore",
    "NotificationHub",
    "ReviewService",
    "PaymentCoordinator",
    "WebhookRegistry",
    "OrderService",
    "RefundService",
]
