"""
Notification fan-out for connected clients.

Every committed transition of a review, order or refund is published here
with the full post-transition snapshot. Subscribers (browser streams, the
admin dashboard) watch one key or the wildcard key.

Delivery is best-effort and at-most-once:
    - publish() never raises; subscriber errors are logged and swallowed
    - stream queues are bounded; a full queue drops the event for that
      stream only
    - nothing in the order pipeline reads back from here

Keys:
    review:<id>     - one order review
    order:<number>  - one order
    refund:<id>     - one refund request
    customer:<id>   - everything for one customer
    *               - everything (operator room)

Usage:
    hub = NotificationHub()
    token = hub.subscribe("review:42", lambda event: print(event))
    hub.publish(DESIGN_REVIEW_UPDATED, "review:42", review.to_dict())
    hub.unsubscribe(token)
"""

from __future__ import annotations

import itertools
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from logging_config import get_logger
from models.serialization import format_timestamp, utc_now


logger = get_logger(__name__)


# Event names
DESIGN_REVIEW_UPDATED = "design-review-updated"
PICTURE_REPLY_UPLOADED = "picture-reply-uploaded"
CUSTOMER_CONFIRMATION_RECEIVED = "customer-confirmation-received"
ORDER_STATUS_CHANGED = "order-status-changed"
REFUND_STATUS_CHANGED = "refund-status-changed"
STOCK_ALERT = "stock-alert"

WILDCARD = "*"


def review_key(review_id: int) -> str:
    return f"review:{review_id}"


def order_key(order_number: str) -> str:
    return f"order:{order_number}"


def refund_key(refund_id: int) -> str:
    return f"refund:{refund_id}"


def customer_key(customer_id: str) -> str:
    return f"customer:{customer_id}"


@dataclass(frozen=True)
class Notification:
    """One published event."""

    event: str
    key: str
    payload: Dict[str, Any]
    published_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event,
            "key": self.key,
            "payload": self.payload,
            "published_at": format_timestamp(self.published_at),
        }


class EventStream:
    """
    Bounded queue subscription, consumed by the server-sent events route.

    Close it when the client disconnects.
    """

    def __init__(self, hub: "NotificationHub", key: str, maxsize: int):
        self.key = key
        self._hub = hub
        self._queue: "queue.Queue[Notification]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.token = hub.subscribe(key, self._offer)

    def _offer(self, notification: Notification) -> None:
        try:
            self._queue.put_nowait(notification)
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Stream for {self.key} full, dropped {notification.event}")

    def get(self, timeout: Optional[float] = None) -> Optional[Notification]:
        """Next notification, or None after `timeout` seconds."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def close(self) -> None:
        self._hub.unsubscribe(self.token)


class NotificationHub:
    """
    Thread-safe publish/subscribe relay.

    Callbacks run on the publishing thread, so they must be quick;
    EventStream only enqueues.
    """

    def __init__(self, stream_queue_size: int = 100):
        self._subscribers: Dict[int, Tuple[str, Callable[[Notification], None]]] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()
        self.stream_queue_size = stream_queue_size

    def subscribe(self, key: str, callback: Callable[[Notification], None]) -> int:
        with self._lock:
            token = next(self._tokens)
            self._subscribers[token] = (key, callback)
        logger.debug(f"Subscriber {token} watching {key}")
        return token

    def unsubscribe(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def open_stream(self, key: str) -> EventStream:
        return EventStream(self, key, self.stream_queue_size)

    def subscriber_count(self, key: Optional[str] = None) -> int:
        with self._lock:
            if key is None:
                return len(self._subscribers)
            return sum(1 for k, _ in self._subscribers.values() if k == key)

    def publish(
        self,
        event: str,
        key: str,
        payload: Dict[str, Any],
        operator_payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Deliver to subscribers of `key` and of the wildcard.

        The wildcard (operator room) gets `operator_payload` when given,
        so operators see fields the customer view leaves out.

        Returns the number of successful deliveries. Never raises.
        """
        return self.publish_many(event, (key,), payload, operator_payload)

    def publish_many(
        self,
        event: str,
        keys: Iterable[str],
        payload: Dict[str, Any],
        operator_payload: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Publish once per key; a subscriber watching several keys gets each."""
        delivered = 0
        try:
            keys = list(keys)
            with self._lock:
                targets = list(self._subscribers.items())

            for key in keys:
                notification = Notification(event=event, key=key, payload=payload)
                operator_notification = notification
                if operator_payload is not None:
                    operator_notification = Notification(event=event, key=key, payload=operator_payload)

                for token, (watched, callback) in targets:
                    if watched == key:
                        delivery = notification
                    elif watched == WILDCARD and key == keys[0]:
                        delivery = operator_notification
                    else:
                        continue
                    try:
                        callback(delivery)
                        delivered += 1
                    except Exception as e:
                        logger.warning(f"Subscriber {token} failed on {event} for {key}: {e}")
        except Exception as e:
            logger.error(f"Failed to publish {event}: {e}", exc_info=True)

        logger.debug(f"Published {event} to {keys} ({delivered} deliveries)")
        return delivered
