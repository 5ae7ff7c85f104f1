"""
Unit tests for the order review state machine.
"""

import json
import threading

import pytest

import services.review_service as review_module
from conftest import CUSTOMER, custom_item, design_payload, shipping_method, success_event
from core.exceptions import (
    ActorNotPermittedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from models.review import Actor, ReviewStatus
from services.notifier import (
    CUSTOMER_CONFIRMATION_RECEIVED,
    DESIGN_REVIEW_UPDATED,
    PICTURE_REPLY_UPLOADED,
    WILDCARD,
    review_key,
)
from services.review_service import ReviewService, check_transition


# Fixtures

@pytest.fixture
def two_item_review(review_service):
    return review_service.submit_review(
        CUSTOMER,
        [custom_item(cart_item_id="cart-a"), custom_item(quantity=3, cart_item_id="cart-b")],
        shipping_method=shipping_method(),
    )


@pytest.fixture
def events(hub):
    """Events published for review 1, in order."""
    received = []
    hub.subscribe(review_key(1), lambda n: received.append(n.event))
    return received


def _reply(review_service, review_id, item_id="li-1"):
    return review_service.upload_picture_replies(
        review_id, [{"item_id": item_id, "image": f"/proofs/{item_id}.png"}], Actor.OPERATOR
    )


class TestSubmitReview:
    """Creating reviews from a cart."""

    def test_creates_pending_review_with_line_ids(self, two_item_review):
        assert two_item_review.status == ReviewStatus.PENDING
        assert [i.id for i in two_item_review.items] == ["li-1", "li-2"]
        assert two_item_review.items[1].source_ref == "cart-b"

    def test_pricing_is_frozen_on_line(self, engine, two_item_review):
        item = two_item_review.items[0]
        expected = engine.calculate_material_cost(3, 2).total

        assert item.pricing.base_price == 20.0
        assert item.pricing.embroidery_material_price == expected
        assert item.unit_price == round(20.0 + expected, 2)

    def test_totals(self, two_item_review):
        review = two_item_review
        assert review.subtotal == round(sum(i.line_total for i in review.items), 2)
        assert review.shipping == 5.0
        assert review.total == round(review.subtotal + 5.0, 2)

    def test_tax_rate_applied(self, store, engine, hub):
        service = ReviewService(store, engine, hub, tax_rate=0.1)

        review = service.submit_review(CUSTOMER, [dict(custom_item(designs=[], base_price=10.0), is_custom=False)])

        assert review.tax == 1.0
        assert review.total == 11.0

    def test_missing_placement_notes(self, review_service):
        with pytest.raises(ValidationError) as exc_info:
            review_service.submit_review(CUSTOMER, [custom_item(designs=[design_payload(notes="  ")])])

        assert exc_info.value.field == "placement_notes"

    def test_bad_dimension_names_field(self, review_service):
        with pytest.raises(ValidationError) as exc_info:
            review_service.submit_review(CUSTOMER, [custom_item(designs=[design_payload(height=20)])])

        assert exc_info.value.field == "height"

    @pytest.mark.parametrize("quantity", [0, -1, 10001, 1.5, "2", True])
    def test_bad_quantity(self, review_service, quantity):
        with pytest.raises(ValidationError) as exc_info:
            review_service.submit_review(CUSTOMER, [custom_item(quantity=quantity)])

        assert exc_info.value.field == "quantity"

    def test_empty_cart(self, review_service):
        with pytest.raises(ValidationError):
            review_service.submit_review(CUSTOMER, [])

    def test_operator_cannot_submit(self, review_service):
        with pytest.raises(ActorNotPermittedError):
            review_service.submit_review(CUSTOMER, [custom_item()], actor=Actor.OPERATOR)

    def test_nothing_stored_on_failure(self, review_service, store):
        with pytest.raises(ValidationError):
            review_service.submit_review(CUSTOMER, [custom_item(), custom_item(quantity=0)])

        assert store.list_reviews() == []


class TestTransitionTable:
    """Actor ownership of edges."""

    def test_wrong_state(self):
        with pytest.raises(InvalidTransitionError):
            check_transition(1, ReviewStatus.PENDING, ReviewStatus.APPROVED_PROCESSING, Actor.SYSTEM)

    def test_wrong_actor(self):
        with pytest.raises(ActorNotPermittedError):
            check_transition(1, ReviewStatus.PENDING_PAYMENT, ReviewStatus.APPROVED_PROCESSING, Actor.OPERATOR)

    def test_owner_passes(self):
        check_transition(1, ReviewStatus.PENDING, ReviewStatus.NEEDS_CHANGES, Actor.OPERATOR)


class TestPictureReplies:
    """Operator proofs."""

    def test_moves_to_needs_changes(self, review_service, submitted_review, events):
        review = _reply(review_service, submitted_review.id)

        assert review.status == ReviewStatus.NEEDS_CHANGES
        assert review.picture_replies[0].item_id == "li-1"
        assert review.picture_reply_uploaded_at is not None
        assert PICTURE_REPLY_UPLOADED in events

    def test_unknown_item_rejected(self, review_service, submitted_review, store):
        with pytest.raises(ValidationError) as exc_info:
            _reply(review_service, submitted_review.id, item_id="hat")

        assert exc_info.value.field == "item_id"
        assert store.get_review(submitted_review.id).status == ReviewStatus.PENDING

    def test_customer_cannot_upload(self, review_service, submitted_review):
        with pytest.raises(ActorNotPermittedError):
            review_service.upload_picture_replies(
                submitted_review.id, [{"item_id": "li-1", "image": "/x.png"}], Actor.CUSTOMER
            )

    def test_second_round_keeps_history(self, review_service, submitted_review):
        _reply(review_service, submitted_review.id)
        review = _reply(review_service, submitted_review.id)

        assert len(review.picture_replies) == 2
        assert review.picture_replies[1].sequence > review.picture_replies[0].sequence

    def test_not_after_payment_stage(self, review_service, payable_review):
        with pytest.raises(InvalidTransitionError):
            _reply(review_service, payable_review.id)


class TestConfirmations:
    """Customer answers to proofs."""

    def test_declined_item_stays_in_needs_changes(self, review_service, two_item_review):
        _reply(review_service, two_item_review.id, "li-1")

        review = review_service.submit_confirmations(
            two_item_review.id, CUSTOMER, [{"item_id": "li-1", "accepted": False, "note": "Too small"}]
        )

        assert review.status == ReviewStatus.NEEDS_CHANGES
        assert review.customer_confirmed_at is None

    def test_all_replied_items_accepted(self, review_service, two_item_review, events):
        _reply(review_service, two_item_review.id, "li-1")

        review = review_service.submit_confirmations(
            two_item_review.id, CUSTOMER, [{"item_id": "li-1", "accepted": True}]
        )

        assert review.status == ReviewStatus.PENDING_PAYMENT
        assert CUSTOMER_CONFIRMATION_RECEIVED in events

    def test_waits_for_every_replied_item(self, review_service, two_item_review):
        _reply(review_service, two_item_review.id, "li-1")
        _reply(review_service, two_item_review.id, "li-2")

        review = review_service.submit_confirmations(
            two_item_review.id, CUSTOMER, [{"item_id": "li-1", "accepted": True}]
        )
        assert review.status == ReviewStatus.NEEDS_CHANGES

        review = review_service.submit_confirmations(
            two_item_review.id, CUSTOMER, [{"item_id": "li-2", "accepted": True}]
        )
        assert review.status == ReviewStatus.PENDING_PAYMENT

    def test_answer_older_than_latest_reply_does_not_count(self, review_service, submitted_review):
        _reply(review_service, submitted_review.id)
        review_service.submit_confirmations(
            submitted_review.id, CUSTOMER, [{"item_id": "li-1", "accepted": False}]
        )
        review = _reply(review_service, submitted_review.id)

        assert review.outstanding_item_ids() == ["li-1"]

        review = review_service.submit_confirmations(
            submitted_review.id, CUSTOMER, [{"item_id": "li-1", "accepted": True}]
        )
        assert review.status == ReviewStatus.PENDING_PAYMENT

    def test_item_without_reply(self, review_service, two_item_review):
        _reply(review_service, two_item_review.id, "li-1")

        with pytest.raises(ValidationError) as exc_info:
            review_service.submit_confirmations(
                two_item_review.id, CUSTOMER, [{"item_id": "li-2", "accepted": True}]
            )

        assert exc_info.value.field == "item_id"

    def test_accepted_must_be_boolean(self, review_service, submitted_review):
        _reply(review_service, submitted_review.id)

        with pytest.raises(ValidationError) as exc_info:
            review_service.submit_confirmations(
                submitted_review.id, CUSTOMER, [{"item_id": "li-1", "accepted": "yes"}]
            )

        assert exc_info.value.field == "accepted"

    def test_other_customer_sees_not_found(self, review_service, submitted_review):
        _reply(review_service, submitted_review.id)

        with pytest.raises(NotFoundError):
            review_service.submit_confirmations(
                submitted_review.id, "someone-else", [{"item_id": "li-1", "accepted": True}]
            )

    def test_before_any_reply(self, review_service, submitted_review):
        with pytest.raises(InvalidTransitionError):
            review_service.submit_confirmations(
                submitted_review.id, CUSTOMER, [{"item_id": "li-1", "accepted": True}]
            )


class TestMarkPaid:
    """Only the payment coordinator may mark reviews paid."""

    def test_operator_cannot_mark_paid(self, review_service, payable_review):
        with pytest.raises(ActorNotPermittedError):
            review_service.mark_paid(payable_review.id, Actor.OPERATOR, "ORD-1-1")

    def test_system_marks_paid(self, review_service, payable_review):
        review = review_service.mark_paid(payable_review.id, Actor.SYSTEM, "ORD-1-1", provider="stripe")

        assert review.status == ReviewStatus.APPROVED_PROCESSING
        assert review.order_number == "ORD-1-1"
        assert review.history[-1].actor == "system"


class TestRejectAndResubmit:
    """Rejection, reopening and resubmission."""

    def test_reject_requires_reason(self, review_service, submitted_review):
        with pytest.raises(ValidationError):
            review_service.reject_review(submitted_review.id, "   ", Actor.OPERATOR)

    def test_reject_from_pending_payment(self, review_service, payable_review):
        review = review_service.reject_review(payable_review.id, "Copyrighted logo", Actor.OPERATOR)

        assert review.status == ReviewStatus.REJECTED
        assert review.rejection_reason == "Copyrighted logo"
        assert review.to_customer_dict()["status_label"] == "Not Approved"

    def test_reopen(self, review_service, submitted_review):
        review_service.reject_review(submitted_review.id, "Blurry art", Actor.OPERATOR)

        review = review_service.reopen_review(submitted_review.id, Actor.OPERATOR)

        assert review.status == ReviewStatus.PENDING

    def test_resubmit_creates_new_review(self, review_service, submitted_review):
        review_service.reject_review(submitted_review.id, "Blurry art", Actor.OPERATOR)

        fresh = review_service.resubmit_review(submitted_review.id, CUSTOMER)

        assert fresh.id != submitted_review.id
        assert fresh.status == ReviewStatus.PENDING
        assert fresh.resubmitted_from == submitted_review.id
        assert fresh.total == submitted_review.total
        assert review_service.get_review(submitted_review.id).status == ReviewStatus.REJECTED

    def test_resubmit_requires_rejection(self, review_service, submitted_review):
        with pytest.raises(InvalidTransitionError):
            review_service.resubmit_review(submitted_review.id, CUSTOMER)


class TestNotes:
    def test_customer_cannot_edit_notes(self, review_service, submitted_review):
        with pytest.raises(ActorNotPermittedError):
            review_service.update_notes(submitted_review.id, Actor.CUSTOMER, admin_notes="hi")

    def test_notes_do_not_change_status(self, review_service, submitted_review):
        review = review_service.update_notes(
            submitted_review.id, Actor.OPERATOR, admin_notes="Looks good", internal_notes="rush"
        )

        assert review.status == ReviewStatus.PENDING
        assert review.internal_notes == "rush"

    def test_operator_room_gets_full_snapshot(self, review_service, submitted_review, hub):
        customer, operator = [], []
        hub.subscribe(review_key(submitted_review.id), customer.append)
        hub.subscribe(WILDCARD, operator.append)

        review_service.update_notes(submitted_review.id, Actor.OPERATOR, internal_notes="rush")

        assert "internal_notes" not in customer[-1].payload
        assert "history" not in customer[-1].payload
        assert operator[-1].payload["internal_notes"] == "rush"
        assert operator[-1].payload["history"]


class TestConcurrentPayment:
    """A payment webhook never lands between a transition's load and save."""

    def test_webhook_during_rejection_sees_rejected_review(
        self, monkeypatch, review_service, coordinator, store, payable_review
    ):
        results = []
        webhook = threading.Thread(
            target=lambda: results.append(coordinator.handle_payment_succeeded(success_event(payable_review)))
        )
        real_check = review_module.check_transition

        def check_then_deliver_webhook(*args, **kwargs):
            real_check(*args, **kwargs)
            if webhook.ident is None:
                webhook.start()
                webhook.join(timeout=0.2)

        monkeypatch.setattr(review_module, "check_transition", check_then_deliver_webhook)

        review = review_service.reject_review(payable_review.id, "Copyrighted logo", Actor.OPERATOR)
        webhook.join(timeout=5)

        assert not webhook.is_alive()
        assert results == [None]
        assert review.status == ReviewStatus.REJECTED
        stored = store.get_review(payable_review.id)
        assert stored.status == ReviewStatus.REJECTED
        assert stored.history[-1].to_status == ReviewStatus.REJECTED.value
        assert store.get_order_for_review(payable_review.id) is None
        assert store.list_orders() == []


class TestNotifierFailures:
    def test_failing_subscriber_does_not_break_transition(self, review_service, submitted_review, hub, store):
        def explode(notification):
            raise RuntimeError("socket closed")

        hub.subscribe(review_key(submitted_review.id), explode)

        review = _reply(review_service, submitted_review.id)

        assert review.status == ReviewStatus.NEEDS_CHANGES
        assert store.get_review(submitted_review.id).status == ReviewStatus.NEEDS_CHANGES

    def test_submission_publishes_update(self, review_service, events):
        review_service.submit_review(CUSTOMER, [custom_item()])

        assert events == [DESIGN_REVIEW_UPDATED]


class TestLegacyReplyMigration:
    """One-time rewrite of cart-id references to line ids."""

    def _store_legacy_replies(self, store, review, item_refs):
        row = review.to_row()
        row["admin_picture_replies"] = json.dumps([
            {"id": f"r{n}", "item_id": ref, "image": "/p.png", "note": "", "sequence": n,
             "created_at": "2024-01-01T00:00:00+00:00"}
            for n, ref in enumerate(item_refs, start=1)
        ])
        row["status"] = "needs-changes"
        store.put_review_row(row)

    def test_unique_match_is_rewritten(self, review_service, store, two_item_review):
        self._store_legacy_replies(store, two_item_review, ["cart-b_variant", "li-1"])

        migrated = review_service.migrate_legacy_reply_ids(two_item_review.id)

        review = store.get_review(two_item_review.id)
        assert migrated == 1
        assert [r.item_id for r in review.picture_replies] == ["li-2", "li-1"]

    def test_ambiguous_reference_left_alone(self, review_service, store):
        review = review_service.submit_review(
            CUSTOMER, [custom_item(cart_item_id="hat"), custom_item(cart_item_id="hat-2")]
        )
        self._store_legacy_replies(store, review, ["hat-2-front"])

        assert review_service.migrate_legacy_reply_ids(review.id) == 0
        assert store.get_review(review.id).picture_replies[0].item_id == "hat-2-front"
