"""
Order lookups and fulfillment tracking.

Orders are immutable snapshots except for fulfillment/tracking fields
(here) and refund bookkeeping (services.refund_service). Fulfillment only
moves forward: processing -> in_production -> shipped -> delivered.
"""

from __future__ import annotations

from dataclasses import replace
from typing import List, Optional

from core.exceptions import ActorNotPermittedError, InvalidTransitionError, NotFoundError, ValidationError
from logging_config import get_logger
from models.order import FulfillmentStatus, Order
from models.review import Actor
from models.serialization import utc_now
from services.notifier import ORDER_STATUS_CHANGED, NotificationHub, customer_key, order_key
from services.store import OrderStore


logger = get_logger(__name__)


class OrderService:
    """Read access to orders plus the fulfillment transitions."""

    def __init__(self, store: OrderStore, notifier: NotificationHub):
        self.store = store
        self.notifier = notifier

    def get_order(self, order_number: str, customer_id: Optional[str] = None) -> Order:
        order = self.store.get_order(order_number)
        if customer_id is not None and order.customer_id != customer_id:
            raise NotFoundError("Order", order_number)
        return order

    def list_orders(self, customer_id: Optional[str] = None) -> List[Order]:
        return self.store.list_orders(customer_id=customer_id)

    def update_fulfillment(
        self,
        order_number: str,
        status: str,
        actor: Actor,
        tracking_number: Optional[str] = None,
        tracking_url: Optional[str] = None,
        carrier: Optional[str] = None,
    ) -> Order:
        """
        Advance fulfillment and/or set tracking details.

        Raises:
            ValidationError: unknown status, or shipping without a tracking number
            InvalidTransitionError: moving backwards
        """
        if actor is not Actor.OPERATOR:
            raise ActorNotPermittedError("update fulfillment", actor.value, Actor.OPERATOR.value)
        try:
            target = FulfillmentStatus(status)
        except ValueError:
            raise ValidationError("status", f"Unknown fulfillment status: {status}", status)

        with self.store.atomic():
            order = self.store.get_order(order_number)
            if target.rank < order.fulfillment_status.rank:
                raise InvalidTransitionError(
                    "order", order_number, order.fulfillment_status.value, target.value
                )

            changes = {"fulfillment_status": target}
            if tracking_number is not None:
                changes["tracking_number"] = tracking_number
            if tracking_url is not None:
                changes["tracking_url"] = tracking_url
            if carrier is not None:
                changes["carrier"] = carrier

            if target is FulfillmentStatus.SHIPPED and not (tracking_number or order.tracking_number):
                raise ValidationError("tracking_number", "A tracking number is required to mark an order shipped")
            if target.rank >= FulfillmentStatus.SHIPPED.rank and order.shipped_at is None:
                changes["shipped_at"] = utc_now()
            if target is FulfillmentStatus.DELIVERED and order.delivered_at is None:
                changes["delivered_at"] = utc_now()

            order = self.store.save_order(replace(order, **changes))

        logger.info(f"Order {order_number} fulfillment -> {target.value}")
        self.notifier.publish_many(
            ORDER_STATUS_CHANGED,
            (order_key(order.order_number), customer_key(order.customer_id)),
            order.to_customer_dict(),
            order.to_dict(),
        )
        return order
