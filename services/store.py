"""
In-process row store standing in for the relational persistence layer.

Reviews, orders and refunds are kept as flat rows (dicts) with their
structured columns serialized to JSON text, exactly as a SQL table would
hold them. Every read goes through the model's from_row(), so malformed
column content is handled the same way it would be against a real
database.

Thread Safety:
    - A single threading.RLock guards all tables
    - atomic() exposes the lock for multi-step operations (check state,
      insert order, transition review) that must not interleave with a
      concurrent webhook delivery
    - insert_order() enforces one Order per review and unique order numbers

Usage:
    store = OrderStore()
    review = store.insert_review(review)      # assigns id
    with store.atomic():
        review = store.get_review(review.id)
        store.insert_order(order)             # ConflictError on duplicate
"""

from __future__ import annotations

import itertools
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from core.exceptions import ConflictError, NotFoundError
from logging_config import get_logger
from models.order import Order
from models.refund import RefundRequest, RefundStatus
from models.review import OrderReview, ReviewStatus


logger = get_logger(__name__)


class OrderStore:
    """Thread-safe tables for reviews, orders and refund requests."""

    def __init__(self):
        self._reviews: Dict[int, Dict[str, Any]] = {}
        self._orders: Dict[str, Dict[str, Any]] = {}
        self._orders_by_review: Dict[int, str] = {}
        self._refunds: Dict[int, Dict[str, Any]] = {}
        self._review_ids = itertools.count(1)
        self._refund_ids = itertools.count(1)
        self._lock = threading.RLock()

    @contextmanager
    def atomic(self) -> Iterator["OrderStore"]:
        """Hold the store lock across several calls."""
        with self._lock:
            yield self

    # =========================================================================
    # REVIEWS
    # =========================================================================

    def insert_review(self, review: OrderReview) -> OrderReview:
        """Assign an id and store the review; returns the stored copy."""
        with self._lock:
            review.id = next(self._review_ids)
            self._reviews[review.id] = review.to_row()
            logger.debug(f"Inserted review {review.id}")
            return OrderReview.from_row(self._reviews[review.id])

    def get_review(self, review_id: int) -> OrderReview:
        with self._lock:
            row = self._reviews.get(review_id)
            if row is None:
                raise NotFoundError("Order review", review_id)
            return OrderReview.from_row(row)

    def save_review(self, review: OrderReview) -> OrderReview:
        with self._lock:
            if review.id not in self._reviews:
                raise NotFoundError("Order review", review.id)
            self._reviews[review.id] = review.to_row()
            return OrderReview.from_row(self._reviews[review.id])

    def put_review_row(self, row: Dict[str, Any]) -> None:
        """Load a raw row as-is (imports, legacy data, tests)."""
        with self._lock:
            review_id = int(row["id"])
            self._reviews[review_id] = dict(row)
            # Keep generated ids above imported ones
            highest = max(self._reviews)
            self._review_ids = itertools.count(highest + 1)

    def list_reviews(
        self,
        status: Optional[ReviewStatus] = None,
        customer_id: Optional[str] = None
    ) -> List[OrderReview]:
        with self._lock:
            rows = [self._reviews[k] for k in sorted(self._reviews)]
        reviews = [OrderReview.from_row(row) for row in rows]
        if status is not None:
            reviews = [r for r in reviews if r.status == status]
        if customer_id is not None:
            reviews = [r for r in reviews if r.customer_id == customer_id]
        return reviews

    def find_review_by_payment_reference(self, reference: str) -> Optional[OrderReview]:
        if not reference:
            return None
        with self._lock:
            for row in self._reviews.values():
                if row.get("payment_reference") == reference:
                    return OrderReview.from_row(row)
        return None

    # =========================================================================
    # ORDERS
    # =========================================================================

    def insert_order(self, order: Order) -> Order:
        """
        Store a new Order.

        Raises:
            ConflictError: an Order already exists for the review, or the
                order number is taken
        """
        with self._lock:
            existing = self._orders_by_review.get(order.order_review_id)
            if existing is not None:
                raise ConflictError(
                    f"Order {existing} already exists for review {order.order_review_id}",
                    {"order_review_id": order.order_review_id, "order_number": existing},
                )
            if order.order_number in self._orders:
                raise ConflictError(
                    f"Duplicate order number {order.order_number}",
                    {"order_number": order.order_number},
                )
            self._orders[order.order_number] = order.to_row()
            self._orders_by_review[order.order_review_id] = order.order_number
            logger.info(f"Inserted order {order.order_number} for review {order.order_review_id}")
            return Order.from_row(self._orders[order.order_number])

    def get_order(self, order_number: str) -> Order:
        with self._lock:
            row = self._orders.get(order_number)
            if row is None:
                raise NotFoundError("Order", order_number)
            return Order.from_row(row)

    def get_order_for_review(self, review_id: int) -> Optional[Order]:
        with self._lock:
            order_number = self._orders_by_review.get(review_id)
            if order_number is None:
                return None
            return Order.from_row(self._orders[order_number])

    def save_order(self, order: Order) -> Order:
        with self._lock:
            current = self._orders.get(order.order_number)
            if current is None:
                raise NotFoundError("Order", order.order_number)
            if int(current["order_review_id"]) != order.order_review_id:
                raise ConflictError(
                    "order_review_id cannot change after creation",
                    {"order_number": order.order_number},
                )
            self._orders[order.order_number] = order.to_row()
            return Order.from_row(self._orders[order.order_number])

    def list_orders(self, customer_id: Optional[str] = None) -> List[Order]:
        with self._lock:
            rows = list(self._orders.values())
        orders = [Order.from_row(row) for row in rows]
        if customer_id is not None:
            orders = [o for o in orders if o.customer_id == customer_id]
        return sorted(orders, key=lambda o: o.created_at)

    # =========================================================================
    # REFUNDS
    # =========================================================================

    def insert_refund(self, refund: RefundRequest) -> RefundRequest:
        with self._lock:
            refund.id = next(self._refund_ids)
            self._refunds[refund.id] = refund.to_row()
            return RefundRequest.from_row(self._refunds[refund.id])

    def get_refund(self, refund_id: int) -> RefundRequest:
        with self._lock:
            row = self._refunds.get(refund_id)
            if row is None:
                raise NotFoundError("Refund request", refund_id)
            return RefundRequest.from_row(row)

    def save_refund(self, refund: RefundRequest) -> RefundRequest:
        with self._lock:
            if refund.id not in self._refunds:
                raise NotFoundError("Refund request", refund.id)
            self._refunds[refund.id] = refund.to_row()
            return RefundRequest.from_row(self._refunds[refund.id])

    def list_refunds(
        self,
        order_number: Optional[str] = None,
        status: Optional[RefundStatus] = None
    ) -> List[RefundRequest]:
        with self._lock:
            rows = [self._refunds[k] for k in sorted(self._refunds)]
        refunds = [RefundRequest.from_row(row) for row in rows]
        if order_number is not None:
            refunds = [r for r in refunds if r.order_number == order_number]
        if status is not None:
            refunds = [r for r in refunds if r.status == status]
        return refunds
