"""
Unit tests for the notification hub and event streams.
"""

import pytest

from services.notifier import (
    DESIGN_REVIEW_UPDATED,
    WILDCARD,
    NotificationHub,
    customer_key,
    review_key,
)


# Fixtures

@pytest.fixture
def hub():
    return NotificationHub(stream_queue_size=2)


class TestPublish:
    """Best-effort fan-out."""

    def test_only_matching_key(self, hub):
        received = []
        hub.subscribe(review_key(1), received.append)
        hub.subscribe(review_key(2), lambda n: pytest.fail("wrong key"))

        delivered = hub.publish(DESIGN_REVIEW_UPDATED, review_key(1), {"id": 1})

        assert delivered == 1
        assert received[0].payload == {"id": 1}
        assert received[0].key == "review:1"

    def test_failing_subscriber_is_swallowed(self, hub):
        received = []

        def explode(notification):
            raise RuntimeError("client went away")

        hub.subscribe(review_key(1), explode)
        hub.subscribe(review_key(1), received.append)

        delivered = hub.publish(DESIGN_REVIEW_UPDATED, review_key(1), {})

        assert delivered == 1
        assert len(received) == 1

    def test_wildcard_receives_each_event_once(self, hub):
        received = []
        hub.subscribe(WILDCARD, received.append)

        hub.publish_many(DESIGN_REVIEW_UPDATED, (review_key(1), customer_key("c")), {})

        assert [n.key for n in received] == ["review:1"]

    def test_wildcard_gets_operator_payload(self, hub):
        customer, operator = [], []
        hub.subscribe(review_key(1), customer.append)
        hub.subscribe(WILDCARD, operator.append)

        hub.publish_many(
            DESIGN_REVIEW_UPDATED, (review_key(1), customer_key("c")),
            {"id": 1}, {"id": 1, "internal_notes": "rush"},
        )

        assert customer[0].payload == {"id": 1}
        assert [n.payload for n in operator] == [{"id": 1, "internal_notes": "rush"}]

    def test_publish_many_reaches_each_key(self, hub):
        received = []
        hub.subscribe(review_key(1), received.append)
        hub.subscribe(customer_key("c"), received.append)

        assert hub.publish_many(DESIGN_REVIEW_UPDATED, (review_key(1), customer_key("c")), {}) == 2

    def test_unsubscribe(self, hub):
        received = []
        token = hub.subscribe(review_key(1), received.append)

        hub.unsubscribe(token)
        hub.publish(DESIGN_REVIEW_UPDATED, review_key(1), {})

        assert received == []
        assert hub.subscriber_count() == 0

    def test_no_subscribers(self, hub):
        assert hub.publish(DESIGN_REVIEW_UPDATED, review_key(1), {}) == 0


class TestEventStream:
    """Bounded queues for server-sent events."""

    def test_stream_receives_in_order(self, hub):
        stream = hub.open_stream(review_key(1))

        hub.publish("a", review_key(1), {})
        hub.publish("b", review_key(1), {})

        assert stream.get(timeout=0.1).event == "a"
        assert stream.get(timeout=0.1).event == "b"
        assert stream.get(timeout=0.01) is None

    def test_full_queue_drops_for_that_stream_only(self, hub):
        slow = hub.open_stream(review_key(1))
        received = []
        hub.subscribe(review_key(1), received.append)

        for n in range(3):
            hub.publish(f"e{n}", review_key(1), {})

        assert slow.dropped == 1
        assert len(received) == 3

    def test_close_unsubscribes(self, hub):
        stream = hub.open_stream(review_key(1))
        assert hub.subscriber_count(review_key(1)) == 1

        stream.close()

        assert hub.subscriber_count(review_key(1)) == 0

    def test_to_dict(self, hub):
        stream = hub.open_stream(review_key(1))
        hub.publish(DESIGN_REVIEW_UPDATED, review_key(1), {"status": "pending"})

        data = stream.get(timeout=0.1).to_dict()

        assert data["event"] == DESIGN_REVIEW_UPDATED
        assert data["payload"] == {"status": "pending"}
        assert data["published_at"]
