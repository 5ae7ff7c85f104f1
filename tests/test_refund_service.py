"""
Unit tests for the refund request state machine.
"""

import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import CUSTOMER
from core.exceptions import (
    ActorNotPermittedError,
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ProviderError,
    ValidationError,
)
from core.payment_gateway import RefundResult
from models.order import PaymentStatus
from models.refund import RefundStatus
from models.review import Actor
from models.serialization import round2, utc_now
from services.notifier import REFUND_STATUS_CHANGED, WILDCARD, refund_key
from services.refund_service import RETRY_MARKER, RefundService


# Fixtures

@pytest.fixture
def full_refund(refund_service, paid_order):
    return refund_service.create_refund(
        paid_order.order_number, Actor.CUSTOMER, customer_id=CUSTOMER,
        reason="damaged_defective", description="Stitching came loose",
    )


@pytest.fixture
def order_without_capture(store, paid_order):
    """Paid order whose provider capture id was never recorded."""
    return store.save_order(replace(paid_order, capture_reference=""))


def _partial(refund_service, order, amount, **kwargs):
    return refund_service.create_refund(
        order.order_number, Actor.CUSTOMER, customer_id=CUSTOMER,
        refund_type="partial", amount=amount, **kwargs
    )


class TestCreateRefund:
    """Opening refund requests."""

    def test_full_refund_amount(self, full_refund, paid_order):
        assert full_refund.status == RefundStatus.PENDING
        assert full_refund.requested_amount == paid_order.total
        assert full_refund.capture_reference == paid_order.capture_reference
        assert full_refund.provider == "stripe"

    def test_one_active_refund_per_order(self, refund_service, full_refund, paid_order):
        with pytest.raises(ConflictError):
            _partial(refund_service, paid_order, 1.0)

    def test_rejected_refund_frees_the_order(self, refund_service, full_refund, paid_order):
        refund_service.reject_refund(full_refund.id, "Outside policy", Actor.OPERATOR)

        again = _partial(refund_service, paid_order, 1.0)

        assert again.status == RefundStatus.PENDING

    def test_other_customer_sees_not_found(self, refund_service, paid_order):
        with pytest.raises(NotFoundError):
            refund_service.create_refund(paid_order.order_number, Actor.CUSTOMER, customer_id="someone-else")

    def test_system_cannot_request(self, refund_service, paid_order):
        with pytest.raises(ActorNotPermittedError):
            refund_service.create_refund(paid_order.order_number, Actor.SYSTEM)

    def test_unknown_reason(self, refund_service, paid_order):
        with pytest.raises(ValidationError) as exc_info:
            refund_service.create_refund(
                paid_order.order_number, Actor.CUSTOMER, customer_id=CUSTOMER, reason="bored"
            )

        assert exc_info.value.field == "reason"

    def test_full_refund_with_wrong_amount(self, refund_service, paid_order):
        with pytest.raises(ValidationError) as exc_info:
            refund_service.create_refund(
                paid_order.order_number, Actor.CUSTOMER, customer_id=CUSTOMER, amount=1.0
            )

        assert exc_info.value.field == "amount"


class TestPartialAmounts:
    """Partial refunds must reconcile and stay within what is refundable."""

    def test_itemized_amount_from_order_snapshot(self, refund_service, paid_order):
        refund = _partial(refund_service, paid_order, None, items=[{"line_item_id": "li-1", "quantity": 1}])

        item = refund.items[0]
        assert item.unit_price == paid_order.items[0].unit_price
        assert item.shipping_share == paid_order.shipping
        assert refund.requested_amount == paid_order.total

    def test_itemized_and_stated_must_agree(self, refund_service, paid_order):
        with pytest.raises(ValidationError) as exc_info:
            _partial(refund_service, paid_order, 1.0, items=[{"line_item_id": "li-1", "quantity": 1}])

        assert exc_info.value.field == "amount"

    def test_wrong_item_amount(self, refund_service, paid_order):
        with pytest.raises(ValidationError) as exc_info:
            _partial(refund_service, paid_order, None, items=[{"line_item_id": "li-1", "amount": 0.5}])

        assert exc_info.value.field == "items"

    def test_unknown_line_item(self, refund_service, paid_order):
        with pytest.raises(ValidationError) as exc_info:
            _partial(refund_service, paid_order, None, items=[{"line_item_id": "cart-hat-1"}])

        assert exc_info.value.field == "items"

    def test_quantity_above_purchased(self, refund_service, paid_order):
        with pytest.raises(ValidationError) as exc_info:
            _partial(refund_service, paid_order, None, items=[{"line_item_id": "li-1", "quantity": 2}])

        assert exc_info.value.field == "quantity"

    def test_more_than_refundable(self, refund_service, paid_order):
        with pytest.raises(ValidationError) as exc_info:
            _partial(refund_service, paid_order, paid_order.total + 10)

        assert exc_info.value.field == "amount"

    @pytest.mark.parametrize("amount", [0, -5, None])
    def test_needs_positive_amount(self, refund_service, paid_order, amount):
        with pytest.raises(ValidationError):
            _partial(refund_service, paid_order, amount)


class TestRefundWindow:
    def test_customer_outside_window(self, store, hub, gateways, paid_order):
        later = RefundService(store, hub, gateways, refund_window_days=30,
                              clock=lambda: utc_now() + timedelta(days=31))

        with pytest.raises(ConflictError):
            later.create_refund(paid_order.order_number, Actor.CUSTOMER, customer_id=CUSTOMER)

    def test_operator_not_bound_by_window(self, store, hub, gateways, paid_order):
        later = RefundService(store, hub, gateways, refund_window_days=30,
                              clock=lambda: utc_now() + timedelta(days=31))

        refund = later.create_refund(paid_order.order_number, Actor.OPERATOR)

        assert refund.requested_by == "operator"


class TestApproveRefund:
    """Approval executes the provider refund."""

    def test_success_completes_and_updates_order(self, refund_service, gateways, store, full_refund, paid_order):
        outcome = refund_service.approve_refund(full_refund.id, Actor.OPERATOR, admin_notes="Sorry!")

        assert outcome.succeeded
        assert outcome.refund.status == RefundStatus.COMPLETED
        assert outcome.refund.provider_refund_id == "stripe-refund-1"
        assert outcome.refund.attempts == 1

        args, kwargs = gateways["stripe"].issue_refund.call_args
        assert args[0] == paid_order.capture_reference
        assert args[1] == paid_order.total
        assert args[2]["order_review_id"] == paid_order.order_review_id
        assert kwargs["reason"] == "damaged_defective"

        order = store.get_order(paid_order.order_number)
        assert order.refunded_amount == paid_order.total
        assert order.payment_status == PaymentStatus.REFUNDED

    def test_partial_refund_marks_order_partially_refunded(self, refund_service, store, paid_order):
        refund = _partial(refund_service, paid_order, 5.0)

        refund_service.approve_refund(refund.id, Actor.OPERATOR)

        order = store.get_order(paid_order.order_number)
        assert order.refunded_amount == 5.0
        assert order.payment_status == PaymentStatus.PARTIALLY_REFUNDED
        assert order.refundable_amount == round2(paid_order.total - 5.0)

    def test_fully_refunded_order_rejects_new_requests(self, refund_service, full_refund, paid_order):
        refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        with pytest.raises(ConflictError):
            _partial(refund_service, paid_order, 1.0)

    def test_approving_completed_refund_is_noop(self, refund_service, gateways, full_refund):
        refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        outcome = refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        assert outcome.succeeded
        assert outcome.message == "Refund already completed."
        assert gateways["stripe"].issue_refund.call_count == 1

    def test_customer_cannot_approve(self, refund_service, full_refund):
        with pytest.raises(ActorNotPermittedError):
            refund_service.approve_refund(full_refund.id, Actor.CUSTOMER)

    def test_in_flight_refund_cannot_be_approved_again(self, refund_service, store, full_refund):
        full_refund.status = RefundStatus.PROCESSING
        store.save_refund(full_refund)

        with pytest.raises(InvalidTransitionError):
            refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

    def test_store_credit_skips_provider(self, refund_service, gateways, paid_order):
        refund = refund_service.create_refund(
            paid_order.order_number, Actor.CUSTOMER, customer_id=CUSTOMER, refund_method="store_credit"
        )

        outcome = refund_service.approve_refund(refund.id, Actor.OPERATOR)

        assert outcome.succeeded
        gateways["stripe"].issue_refund.assert_not_called()

    def test_unconfigured_provider(self, store, hub, full_refund):
        service = RefundService(store, hub, {})

        with pytest.raises(ConfigurationError):
            service.approve_refund(full_refund.id, Actor.OPERATOR)

        assert store.get_refund(full_refund.id).status == RefundStatus.PENDING

    def test_publishes_each_step(self, refund_service, hub, full_refund):
        received = []
        hub.subscribe(refund_key(full_refund.id), lambda n: received.append(n.payload["status"]))

        refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        assert received == ["approved", "processing", "completed"]

    def test_subscribers_run_outside_store_lock(self, refund_service, hub, store, full_refund):
        unblocked = []

        def read_from_another_thread(notification):
            worker = threading.Thread(target=store.get_refund, args=(full_refund.id,))
            worker.start()
            worker.join(timeout=1)
            unblocked.append((notification.payload["status"], not worker.is_alive()))

        hub.subscribe(refund_key(full_refund.id), read_from_another_thread)

        refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        assert unblocked == [("approved", True), ("processing", True), ("completed", True)]

    def test_operator_room_sees_provider_detail(self, refund_service, hub, full_refund):
        customer, operator = [], []
        hub.subscribe(refund_key(full_refund.id), customer.append)
        hub.subscribe(WILDCARD, operator.append)

        refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        customer_final = customer[-1].payload
        operator_final = [n.payload for n in operator if n.event == REFUND_STATUS_CHANGED][-1]
        assert "provider_refund_id" not in customer_final
        assert operator_final["provider_refund_id"] == "stripe-refund-1"
        assert operator_final["attempts"] == 1


class TestManualReference:
    """Refunds the provider cannot match to a payment."""

    def test_missing_reference_leaves_refund_unchanged(self, refund_service, gateways, store, order_without_capture):
        refund = refund_service.create_refund(order_without_capture.order_number, Actor.OPERATOR)

        outcome = refund_service.approve_refund(refund.id, Actor.OPERATOR)

        assert not outcome.succeeded
        assert outcome.manual_reference_required
        assert store.get_refund(refund.id).status == RefundStatus.PENDING
        gateways["stripe"].issue_refund.assert_not_called()

    def test_operator_supplied_reference(self, refund_service, gateways, order_without_capture):
        refund = refund_service.create_refund(order_without_capture.order_number, Actor.OPERATOR)
        refund_service.approve_refund(refund.id, Actor.OPERATOR)

        outcome = refund_service.approve_refund(refund.id, Actor.OPERATOR, capture_reference=" pi_manual ")

        assert outcome.succeeded
        assert gateways["stripe"].issue_refund.call_args.args[0] == "pi_manual"

    def test_gateway_that_can_look_up_the_payment(self, refund_service, review_service, gateways, order_without_capture):
        review_service.attach_payment_reference(order_without_capture.order_review_id, "stripe", "cs_test_1")
        gateways["stripe"].requires_capture_reference = False
        refund = refund_service.create_refund(order_without_capture.order_number, Actor.OPERATOR)

        outcome = refund_service.approve_refund(refund.id, Actor.OPERATOR)

        assert outcome.succeeded
        args = gateways["stripe"].issue_refund.call_args.args
        assert args[0] == ""
        assert args[2]["checkout_session"] == "cs_test_1"

    def test_no_reference_and_no_checkout_session(self, refund_service, gateways, store, order_without_capture):
        gateways["stripe"].requires_capture_reference = False
        refund = refund_service.create_refund(order_without_capture.order_number, Actor.OPERATOR)
        refund_service.start_review(refund.id, Actor.OPERATOR)

        outcome = refund_service.approve_refund(refund.id, Actor.OPERATOR)

        assert outcome.manual_reference_required
        assert not outcome.succeeded
        assert store.get_refund(refund.id).status == RefundStatus.UNDER_REVIEW
        gateways["stripe"].issue_refund.assert_not_called()

    def test_provider_cannot_find_payment(self, refund_service, gateways, full_refund):
        gateways["stripe"].issue_refund.return_value = RefundResult(
            success=False, manual_reference_required=True, message="No such payment_intent: 'pi_1'"
        )

        outcome = refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        assert outcome.manual_reference_required
        assert outcome.refund.status == RefundStatus.FAILED
        assert outcome.refund.failure_reason == "No such payment_intent: 'pi_1'"

    def test_retry_after_failure(self, refund_service, gateways, full_refund):
        gateways["stripe"].issue_refund.return_value = RefundResult(
            success=False, manual_reference_required=True, message="No such payment_intent"
        )
        refund_service.approve_refund(full_refund.id, Actor.OPERATOR)
        gateways["stripe"].issue_refund.return_value = RefundResult(success=True, refund_id="re_2")

        outcome = refund_service.approve_refund(full_refund.id, Actor.OPERATOR, capture_reference="pi_fixed")

        assert outcome.succeeded
        assert outcome.refund.attempts == 2
        assert RETRY_MARKER in outcome.refund.internal_notes
        assert RETRY_MARKER not in outcome.refund.admin_notes
        assert RETRY_MARKER not in str(outcome.to_dict(customer_view=True))
        assert outcome.refund.failure_reason == ""


class TestProviderErrors:
    def test_provider_error_fails_refund(self, refund_service, gateways, store, full_refund, paid_order):
        gateways["stripe"].issue_refund.side_effect = ProviderError("stripe", "card_declined: raw detail")

        outcome = refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        assert not outcome.succeeded
        assert not outcome.manual_reference_required
        assert outcome.refund.status == RefundStatus.FAILED
        assert outcome.refund.failure_reason == "card_declined: raw detail"
        assert store.get_order(paid_order.order_number).payment_status == PaymentStatus.PAID

    def test_customer_view_hides_provider_message(self, refund_service, gateways, full_refund):
        gateways["stripe"].issue_refund.side_effect = ProviderError("stripe", "card_declined: raw detail")

        outcome = refund_service.approve_refund(full_refund.id, Actor.OPERATOR)
        data = outcome.to_dict(customer_view=True)

        assert "failure_reason" not in data["refund"]
        assert "raw detail" not in data["message"]

    def test_declined_without_exception(self, refund_service, gateways, full_refund):
        gateways["stripe"].issue_refund.return_value = RefundResult(success=False, status="failed")

        outcome = refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        assert outcome.refund.status == RefundStatus.FAILED
        assert outcome.refund.failure_reason == "stripe declined the refund"

    def test_unexpected_error_fails_refund_and_propagates(self, refund_service, gateways, store, full_refund):
        gateways["stripe"].issue_refund.side_effect = ValueError("unreadable provider body")

        with pytest.raises(ValueError):
            refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        refund = store.get_refund(full_refund.id)
        assert refund.status == RefundStatus.FAILED
        assert "unreadable provider body" in refund.failure_reason

        gateways["stripe"].issue_refund.side_effect = None
        outcome = refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        assert outcome.succeeded
        assert outcome.refund.attempts == 2


class TestReviewRejectCancel:
    """Operator review, rejection and customer cancellation."""

    def test_start_review(self, refund_service, full_refund):
        refund = refund_service.start_review(full_refund.id, Actor.OPERATOR, admin_notes="Checking photos")

        assert refund.status == RefundStatus.UNDER_REVIEW
        assert refund.reviewed_at is not None

    def test_customer_cannot_start_review(self, refund_service, full_refund):
        with pytest.raises(ActorNotPermittedError):
            refund_service.start_review(full_refund.id, Actor.CUSTOMER)

    def test_reject_requires_reason(self, refund_service, full_refund):
        with pytest.raises(ValidationError) as exc_info:
            refund_service.reject_refund(full_refund.id, "  ", Actor.OPERATOR)

        assert exc_info.value.field == "rejection_reason"

    def test_reject(self, refund_service, full_refund):
        refund = refund_service.reject_refund(full_refund.id, "Item was worn", Actor.OPERATOR)

        assert refund.status == RefundStatus.REJECTED
        assert refund.to_customer_dict()["rejection_reason"] == "Item was worn"

    def test_rejected_cannot_be_approved(self, refund_service, full_refund):
        refund_service.reject_refund(full_refund.id, "Item was worn", Actor.OPERATOR)

        with pytest.raises(InvalidTransitionError):
            refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

    def test_customer_cancels(self, refund_service, full_refund):
        refund = refund_service.cancel_refund(full_refund.id, Actor.CUSTOMER, customer_id=CUSTOMER)

        assert refund.status == RefundStatus.CANCELLED
        assert refund.cancelled_at is not None

    def test_cancel_someone_elses_refund(self, refund_service, full_refund):
        with pytest.raises(NotFoundError):
            refund_service.cancel_refund(full_refund.id, Actor.CUSTOMER, customer_id="someone-else")

    def test_cannot_cancel_completed(self, refund_service, full_refund):
        refund_service.approve_refund(full_refund.id, Actor.OPERATOR)

        with pytest.raises(InvalidTransitionError):
            refund_service.cancel_refund(full_refund.id, Actor.CUSTOMER, customer_id=CUSTOMER)

    def test_get_refund_ownership(self, refund_service, full_refund):
        assert refund_service.get_refund(full_refund.id, customer_id=CUSTOMER).id == full_refund.id

        with pytest.raises(NotFoundError):
            refund_service.get_refund(full_refund.id, customer_id="someone-else")


class TestRefundStats:
    def test_stats(self, refund_service, full_refund, paid_order):
        refund_service.reject_refund(full_refund.id, "Duplicate request", Actor.OPERATOR)
        partial = _partial(refund_service, paid_order, 5.0)
        refund_service.approve_refund(partial.id, Actor.OPERATOR)

        stats = refund_service.refund_stats()

        assert stats["total_requests"] == 2
        assert stats["by_status"]["rejected"] == 1
        assert stats["by_status"]["completed"] == 1
        assert stats["open_requests"] == 0
        assert stats["total_requested"] == 5.0
        assert stats["total_refunded"] == 5.0

    def test_list_filters(self, refund_service, full_refund, paid_order):
        assert [r.id for r in refund_service.list_refunds(order_number=paid_order.order_number)] == [full_refund.id]
        assert refund_service.list_refunds(status=RefundStatus.COMPLETED) == []
        assert refund_service.list_refunds(customer_id="someone-else") == []

    def test_status_event_published(self, refund_service, hub, paid_order):
        received = []
        hub.subscribe(refund_key(1), lambda n: received.append(n.event))

        _partial(refund_service, paid_order, 5.0)

        assert received == [REFUND_STATUS_CHANGED]
