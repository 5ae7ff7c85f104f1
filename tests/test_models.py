"""
Unit tests for the data models and their persisted-row handling.
"""

import pytest

from models.design import EmbroideryDesign
from models.order import FulfillmentStatus, generate_order_number
from models.refund import RefundReason, RefundRequest, RefundStatus, RefundType
from models.review import OrderReview, ReviewStatus
from models.serialization import coerce_price, parse_json_list, round2


# Fixtures

@pytest.fixture
def review_row():
    """A persisted review row with valid scalar columns."""
    return {
        "id": 7,
        "user_id": "cust-9",
        "status": "needs-changes",
        "order_data": '[{"id": "li-1", "quantity": 2, "pricing": {"base_price": 10}}]',
        "subtotal": 20.0,
        "shipping": 0,
        "tax": 0,
        "total": 20.0,
        "admin_picture_replies": "[]",
        "customer_confirmations": "[]",
        "status_history": "[]",
    }


class TestSerializationHelpers:
    """JSON column and money helpers."""

    def test_round2_is_half_up(self):
        assert round2(0.125) == 0.13
        assert round2(2.675) == 2.68

    def test_parse_json_list_filters_non_objects(self):
        assert parse_json_list('[{"a": 1}, 3, "x", null]') == [{"a": 1}]

    @pytest.mark.parametrize("raw", ["{not json", '{"a": 1}', "42", None, ""])
    def test_parse_json_list_malformed(self, raw):
        assert parse_json_list(raw, "col") == []

    @pytest.mark.parametrize("value,expected", [
        ("4.50", 4.5), (3, 3.0), (None, 0.0), (True, 0.0), ("abc", 0.0), (float("nan"), 0.0),
    ])
    def test_coerce_price(self, value, expected):
        assert coerce_price(value) == expected


class TestReviewRows:
    """OrderReview.from_row tolerates broken columns."""

    def test_malformed_columns_load_as_empty(self, review_row):
        review_row["admin_picture_replies"] = "{broken"
        review_row["customer_confirmations"] = '{"not": "a list"}'
        review_row["status_history"] = None
        review_row["shipping_address"] = "[1, 2]"

        review = OrderReview.from_row(review_row)

        assert review.picture_replies == []
        assert review.confirmations == []
        assert review.history == []
        assert review.shipping_address is None
        assert review.status == ReviewStatus.NEEDS_CHANGES
        assert review.items[0].id == "li-1"

    def test_unknown_status_falls_back_to_pending(self, review_row):
        review_row["status"] = "on-fire"

        assert OrderReview.from_row(review_row).status == ReviewStatus.PENDING

    def test_row_round_trip_keeps_line_ids(self, review_row):
        review = OrderReview.from_row(review_row)

        again = OrderReview.from_row(review.to_row())

        assert [i.id for i in again.items] == ["li-1"]
        assert again.items[0].unit_price == 10.0
        assert again.items[0].line_total == 20.0

    def test_customer_view_hides_internal_fields(self, review_row):
        review = OrderReview.from_row(review_row)
        review.internal_notes = "call the supplier"

        data = review.to_customer_dict()

        assert "internal_notes" not in data
        assert "history" not in data
        assert "payment_reference" not in data
        assert data["status_label"] == "Changes Requested"


class TestStatuses:
    """Enum helpers."""

    def test_review_labels(self):
        assert ReviewStatus.APPROVED_PROCESSING.label == "Approved - In Production"
        assert ReviewStatus.APPROVED_PROCESSING.is_terminal
        assert not ReviewStatus.REJECTED.is_terminal
        assert not ReviewStatus.PENDING_PAYMENT.is_terminal

    def test_fulfillment_rank_is_ordered(self):
        ranks = [s.rank for s in (
            FulfillmentStatus.PROCESSING,
            FulfillmentStatus.IN_PRODUCTION,
            FulfillmentStatus.SHIPPED,
            FulfillmentStatus.DELIVERED,
        )]
        assert ranks == sorted(ranks)

    def test_refund_activity(self):
        assert RefundStatus.FAILED.is_active
        assert RefundStatus.PENDING.is_active
        assert not RefundStatus.CANCELLED.is_active
        assert RefundReason.DAMAGED_DEFECTIVE.label == "Damaged or Defective"


class TestOrderNumber:
    def test_format(self):
        assert generate_order_number(42, now_ms=1700000000000) == "ORD-1700000000000-42"


class TestRefundRequest:
    """Refund records and their customer view."""

    def test_customer_view_hides_provider_detail(self):
        refund = RefundRequest(
            id=1,
            order_number="ORD-1-1",
            customer_id="c",
            requested_amount=10.0,
            original_amount=10.0,
            refund_type=RefundType.FULL,
            reason=RefundReason.OTHER,
            failure_reason="stripe: card_declined raw text",
            capture_reference="pi_123",
            admin_notes="Refund approved",
            internal_notes="[RETRY ATTEMPT]",
        )

        data = refund.to_customer_dict()

        assert "failure_reason" not in data
        assert "capture_reference" not in data
        assert "internal_notes" not in data
        assert data["admin_notes"] == "Refund approved"
        assert data["status"] == "pending"

    def test_from_row_with_bad_items_column(self):
        refund = RefundRequest.from_row({
            "id": 3,
            "order_number": "ORD-1-1",
            "refund_type": "partial",
            "reason": "nonsense",
            "status": "processing",
            "refund_items": "not json",
        })

        assert refund.items == []
        assert refund.reason == RefundReason.OTHER
        assert refund.refund_type == RefundType.PARTIAL
        assert refund.status == RefundStatus.PROCESSING


class TestDesign:
    """EmbroideryDesign helpers."""

    def test_duplicate_resets_placement(self):
        design = EmbroideryDesign.from_dict({
            "id": "d1", "image": "/a.png", "width": 3, "height": 2,
            "scale": 1.5, "rotation": 45, "placement_notes": "Back",
            "options": {"threads": [{"name": "Gold", "price": 1}]},
        })

        copy = design.duplicate()

        assert copy.id != design.id
        assert copy.scale == 1.0
        assert copy.rotation == 0.0
        assert copy.placement_notes == ""
        assert copy.options.to_dict() == design.options.to_dict()

    def test_non_numeric_dimensions_pass_through(self):
        design = EmbroideryDesign.from_dict({"width": "wide", "height": 2.111})

        assert design.width == "wide"
        assert design.height == 2.11
