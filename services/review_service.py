"""
Order review state machine.

Owns the pre-payment lifecycle of a submitted cart, including the proofing
dialogue between operator and customer:

    pending ──(operator: picture replies)──> needs-changes
    needs-changes ──(operator: another proof round)──> needs-changes
    needs-changes ──(customer: all proofs accepted)──> pending-payment
    pending-payment ──(system: payment captured)──> approved-processing
    pending | needs-changes | pending-payment ──(operator)──> rejected
    rejected ──(operator: reopen)──> pending

Actor-tagged transitions:
    Every edge belongs to exactly one Actor. A transition attempted by the
    wrong actor raises ActorNotPermittedError; from the wrong state,
    InvalidTransitionError. Neither mutates anything.

Proofing log:
    Picture replies and confirmations are append-only. A confirmation is
    keyed to the line item; the item's current answer is its latest
    confirmation, and it only counts if it is newer than the item's latest
    reply.

Flow:
    1. Customer submits -> items priced once, pricing frozen
    2. Operator uploads picture replies
    3. Customer confirms (accept/reject per item)
    4. Payment coordinator marks paid (see services.payment_service)

Every committed change is published through the NotificationHub with the
post-change snapshot.
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Optional

from core.exceptions import (
    ActorNotPermittedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from logging_config import get_logger, get_review_logger
from models.design import EmbroideryDesign
from models.pricing import PricingBreakdown
from models.review import (
    Actor,
    Address,
    CustomerConfirmation,
    LineItem,
    OrderReview,
    PictureReply,
    ReviewStatus,
    ShippingMethod,
    StatusChange,
)
from models.serialization import coerce_price, round2, utc_now
from modules.pricing import PricingEngine
from services.notifier import (
    CUSTOMER_CONFIRMATION_RECEIVED,
    DESIGN_REVIEW_UPDATED,
    PICTURE_REPLY_UPLOADED,
    NotificationHub,
    customer_key,
    review_key,
)
from services.store import OrderStore


logger = get_logger(__name__)


MAX_QUANTITY = 10000

# (from, to) -> the only actor allowed to drive that edge
ALLOWED_TRANSITIONS = {
    (ReviewStatus.PENDING, ReviewStatus.NEEDS_CHANGES): Actor.OPERATOR,
    (ReviewStatus.NEEDS_CHANGES, ReviewStatus.NEEDS_CHANGES): Actor.OPERATOR,
    (ReviewStatus.NEEDS_CHANGES, ReviewStatus.PENDING_PAYMENT): Actor.CUSTOMER,
    (ReviewStatus.PENDING_PAYMENT, ReviewStatus.APPROVED_PROCESSING): Actor.SYSTEM,
    (ReviewStatus.PENDING, ReviewStatus.REJECTED): Actor.OPERATOR,
    (ReviewStatus.NEEDS_CHANGES, ReviewStatus.REJECTED): Actor.OPERATOR,
    (ReviewStatus.PENDING_PAYMENT, ReviewStatus.REJECTED): Actor.OPERATOR,
    (ReviewStatus.REJECTED, ReviewStatus.PENDING): Actor.OPERATOR,
}


def check_transition(
    review_id: Any,
    current: ReviewStatus,
    target: ReviewStatus,
    actor: Actor
) -> None:
    """
    Raise unless `actor` may move a review from `current` to `target`.

    Raises:
        InvalidTransitionError: the edge does not exist
        ActorNotPermittedError: the edge exists but belongs to another actor
    """
    owner = ALLOWED_TRANSITIONS.get((current, target))
    if owner is None:
        raise InvalidTransitionError("review", review_id, current.value, target.value)
    if owner is not actor:
        raise ActorNotPermittedError(
            f"move review {review_id} to '{target.value}'",
            actor.value,
            owner.value,
        )


def _new_entry_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:10]}"


class ReviewService:
    """
    Transitions for OrderReview records.

    Each public method loads the review, validates, mutates and saves inside
    store.atomic(), then notifies once the lock is released. A payment
    webhook therefore lands either before the load or after the save, never
    in between. Validation failures leave the stored review untouched.
    """

    def __init__(
        self,
        store: OrderStore,
        pricing: PricingEngine,
        notifier: NotificationHub,
        tax_rate: float = 0.0,
    ):
        self.store = store
        self.pricing = pricing
        self.notifier = notifier
        self.tax_rate = tax_rate

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_review(self, review_id: int, customer_id: Optional[str] = None) -> OrderReview:
        """
        Load a review. With customer_id, reviews owned by someone else are
        reported as not found.
        """
        review = self.store.get_review(review_id)
        if customer_id is not None and review.customer_id != customer_id:
            raise NotFoundError("Order review", review_id)
        return review

    def list_reviews(
        self,
        status: Optional[ReviewStatus] = None,
        customer_id: Optional[str] = None
    ) -> List[OrderReview]:
        return self.store.list_reviews(status=status, customer_id=customer_id)

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def submit_review(
        self,
        customer_id: str,
        items: List[Dict[str, Any]],
        shipping_address: Optional[Dict[str, Any]] = None,
        shipping_method: Optional[Dict[str, Any]] = None,
        customer_notes: str = "",
        billing_address: Optional[Dict[str, Any]] = None,
        actor: Actor = Actor.CUSTOMER,
        resubmitted_from: Optional[int] = None,
    ) -> OrderReview:
        """
        Create a review in 'pending' from a cart payload.

        Every line is priced here, once. The resulting breakdown is frozen on
        the line item and copied into the Order later; nothing re-prices it.

        Args:
            customer_id: Owner of the review
            items: Cart lines: product_id, product_name, base_price,
                quantity, is_custom, cart_item_id, designs[]
            shipping_address: Address dict
            shipping_method: {name, price, eta} from the rate lookup
            customer_notes: Free text (already sanitized by the route)

        Raises:
            ValidationError: empty cart, bad quantity, bad dimensions,
                missing placement notes
        """
        if actor is not Actor.CUSTOMER:
            raise ActorNotPermittedError("submit a review", actor.value, Actor.CUSTOMER.value)
        if not customer_id:
            raise ValidationError("customer_id", "Customer id is required")
        if not items:
            raise ValidationError("items", "At least one item is required")

        line_items = [self._build_line_item(index, raw) for index, raw in enumerate(items, start=1)]
        method = ShippingMethod.from_dict(shipping_method)

        subtotal = round2(sum(item.line_total for item in line_items))
        shipping = method.price if method else 0.0
        tax = round2(subtotal * self.tax_rate)
        now = utc_now()

        review = OrderReview(
            id=0,
            customer_id=str(customer_id),
            items=line_items,
            subtotal=subtotal,
            shipping=shipping,
            tax=tax,
            total=round2(subtotal + shipping + tax),
            status=ReviewStatus.PENDING,
            shipping_address=Address.from_dict(shipping_address),
            billing_address=Address.from_dict(billing_address),
            shipping_method=method,
            customer_notes=customer_notes or "",
            submitted_at=now,
            resubmitted_from=resubmitted_from,
        )
        review.history.append(StatusChange(None, ReviewStatus.PENDING.value, actor.value, now))

        review = self.store.insert_review(review)
        get_review_logger(review.id).info(
            f"Submitted by customer {review.customer_id}: {len(line_items)} item(s), total {review.total:.2f}"
        )
        self._notify(review, DESIGN_REVIEW_UPDATED)
        return review

    def _build_line_item(self, index: int, raw: Dict[str, Any]) -> LineItem:
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index - 1}]", "Item must be an object")

        quantity = raw.get("quantity", 1)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= MAX_QUANTITY:
            raise ValidationError("quantity", f"Quantity must be a whole number between 1 and {MAX_QUANTITY}", quantity)

        base_price = coerce_price(raw.get("base_price", 0))
        if base_price < 0:
            raise ValidationError("base_price", "Base price cannot be negative", base_price)

        designs = [EmbroideryDesign.from_dict(d) for d in raw.get("designs") or [] if isinstance(d, dict)]
        is_custom = bool(raw.get("is_custom", False))
        if is_custom and not designs:
            raise ValidationError("designs", "Custom embroidery items need at least one design")
        if not is_custom and not raw.get("product_id"):
            raise ValidationError("product_id", "Product id is required for catalog items")

        for design in designs:
            design.validate_for_submission()
        design_pricing = self.pricing.price_designs(designs)

        return LineItem(
            id=f"li-{index}",
            quantity=quantity,
            pricing=PricingBreakdown(
                base_price=round2(base_price),
                embroidery_material_price=design_pricing.material_price,
                embroidery_options_price=design_pricing.options_price,
            ),
            product_id=str(raw["product_id"]) if raw.get("product_id") else None,
            product_name=str(raw.get("product_name", "")),
            is_custom=is_custom,
            source_ref=str(raw.get("cart_item_id") or raw.get("product_id") or ""),
            designs=designs,
        )

    def resubmit_review(
        self,
        review_id: int,
        customer_id: str,
        items: Optional[List[Dict[str, Any]]] = None,
        customer_notes: Optional[str] = None,
    ) -> OrderReview:
        """
        Start a fresh review from a rejected one.

        The rejected review is left exactly as it is. Without `items`, the
        rejected review's lines are submitted again (and priced again).
        """
        source = self.get_review(review_id, customer_id=customer_id)
        if source.status is not ReviewStatus.REJECTED:
            raise InvalidTransitionError("review", review_id, source.status.value, "resubmitted")

        if items is None:
            items = [
                {
                    "product_id": item.product_id,
                    "product_name": item.product_name,
                    "base_price": item.pricing.base_price,
                    "quantity": item.quantity,
                    "is_custom": item.is_custom,
                    "cart_item_id": item.source_ref,
                    "designs": [d.to_dict() for d in item.designs],
                }
                for item in source.items
            ]

        return self.submit_review(
            customer_id=customer_id,
            items=items,
            shipping_address=source.shipping_address.to_dict() if source.shipping_address else None,
            shipping_method=source.shipping_method.to_dict() if source.shipping_method else None,
            customer_notes=source.customer_notes if customer_notes is None else customer_notes,
            billing_address=source.billing_address.to_dict() if source.billing_address else None,
            resubmitted_from=source.id,
        )

    # =========================================================================
    # OPERATOR ACTIONS
    # =========================================================================

    def upload_picture_replies(
        self,
        review_id: int,
        replies: List[Dict[str, Any]],
        actor: Actor,
        admin_notes: Optional[str] = None,
    ) -> OrderReview:
        """
        Append proof pictures and move the review to 'needs-changes'.

        Each reply must name a line item by its exact id. Earlier replies for
        the same item stay in the log.
        """
        with self.store.atomic():
            review = self.store.get_review(review_id)
            check_transition(review.id, review.status, ReviewStatus.NEEDS_CHANGES, actor)

            if not replies:
                raise ValidationError("replies", "At least one picture reply is required")

            now = utc_now()
            sequence = review.next_sequence()
            new_replies = []
            for raw in replies:
                item_id = str(raw.get("item_id") or "")
                if review.item(item_id) is None:
                    raise ValidationError("item_id", f"Review {review.id} has no line item '{item_id}'", item_id)
                image = str(raw.get("image") or "").strip()
                if not image:
                    raise ValidationError("image", f"Picture reply for '{item_id}' has no image")
                new_replies.append(PictureReply(
                    id=_new_entry_id("reply"),
                    item_id=item_id,
                    image=image,
                    note=str(raw.get("note") or ""),
                    sequence=sequence,
                    created_at=now,
                ))
                sequence += 1

            review.picture_replies.extend(new_replies)
            review.picture_reply_uploaded_at = now
            review.reviewed_at = review.reviewed_at or now
            if admin_notes is not None:
                review.admin_notes = admin_notes

            self._record(review, ReviewStatus.NEEDS_CHANGES, actor, f"{len(new_replies)} picture reply(s)")
            review = self.store.save_review(review)
        self._notify(review, PICTURE_REPLY_UPLOADED, DESIGN_REVIEW_UPDATED)
        return review

    def reject_review(self, review_id: int, reason: str, actor: Actor) -> OrderReview:
        """Reject with a customer-visible reason."""
        with self.store.atomic():
            review = self.store.get_review(review_id)
            check_transition(review.id, review.status, ReviewStatus.REJECTED, actor)
            if not reason or not reason.strip():
                raise ValidationError("reason", "A rejection reason is required")

            review.rejection_reason = reason.strip()
            review.reviewed_at = utc_now()
            self._record(review, ReviewStatus.REJECTED, actor, review.rejection_reason)
            review = self.store.save_review(review)
        self._notify(review, DESIGN_REVIEW_UPDATED)
        return review

    def reopen_review(self, review_id: int, actor: Actor, note: str = "") -> OrderReview:
        """Send a rejected review back to 'pending' (e.g. after the customer re-uploads art)."""
        with self.store.atomic():
            review = self.store.get_review(review_id)
            check_transition(review.id, review.status, ReviewStatus.PENDING, actor)

            self._record(review, ReviewStatus.PENDING, actor, note or "Reopened")
            review = self.store.save_review(review)
        self._notify(review, DESIGN_REVIEW_UPDATED)
        return review

    def update_notes(
        self,
        review_id: int,
        actor: Actor,
        admin_notes: Optional[str] = None,
        internal_notes: Optional[str] = None,
    ) -> OrderReview:
        """Edit operator notes. Not a transition; allowed in any state."""
        if actor is not Actor.OPERATOR:
            raise ActorNotPermittedError("edit review notes", actor.value, Actor.OPERATOR.value)
        with self.store.atomic():
            review = self.store.get_review(review_id)
            if admin_notes is not None:
                review.admin_notes = admin_notes
            if internal_notes is not None:
                review.internal_notes = internal_notes
            review = self.store.save_review(review)
        self._notify(review, DESIGN_REVIEW_UPDATED)
        return review

    # =========================================================================
    # CUSTOMER ACTIONS
    # =========================================================================

    def submit_confirmations(
        self,
        review_id: int,
        customer_id: str,
        confirmations: List[Dict[str, Any]],
        actor: Actor = Actor.CUSTOMER,
    ) -> OrderReview:
        """
        Record the customer's answers to the picture replies.

        The review advances to 'pending-payment' only when every replied item
        has an answer newer than its latest reply and all of those answers
        are 'accepted'. Otherwise it stays in 'needs-changes'.
        """
        if actor is not Actor.CUSTOMER:
            raise ActorNotPermittedError("confirm picture replies", actor.value, Actor.CUSTOMER.value)

        with self.store.atomic():
            review = self.get_review(review_id, customer_id=customer_id)
            if review.status is not ReviewStatus.NEEDS_CHANGES:
                raise InvalidTransitionError(
                    "review", review.id, review.status.value, ReviewStatus.PENDING_PAYMENT.value
                )
            if not confirmations:
                raise ValidationError("confirmations", "At least one confirmation is required")

            now = utc_now()
            sequence = review.next_sequence()
            for raw in confirmations:
                item_id = str(raw.get("item_id") or "")
                if not review.replies_for(item_id):
                    raise ValidationError("item_id", f"No picture reply to confirm for item '{item_id}'", item_id)
                accepted = raw.get("accepted")
                if not isinstance(accepted, bool):
                    raise ValidationError("accepted", "accepted must be true or false", accepted)
                review.confirmations.append(CustomerConfirmation(
                    id=_new_entry_id("confirm"),
                    item_id=item_id,
                    accepted=accepted,
                    note=str(raw.get("note") or ""),
                    sequence=sequence,
                    created_at=now,
                ))
                sequence += 1

            review_logger = get_review_logger(review.id)
            outstanding = review.outstanding_item_ids()
            declined = [
                item_id for item_id in review.replied_item_ids()
                if item_id not in outstanding and not review.current_confirmation(item_id).accepted
            ]

            if not outstanding and not declined:
                review.customer_confirmed_at = now
                self._record(review, ReviewStatus.PENDING_PAYMENT, actor, "All proofs accepted")
            elif declined:
                review_logger.info(f"Customer declined proofs for {declined}; waiting for corrected replies")
            else:
                review_logger.info(f"Still waiting on confirmations for {outstanding}")

            review = self.store.save_review(review)
        self._notify(review, CUSTOMER_CONFIRMATION_RECEIVED, DESIGN_REVIEW_UPDATED)
        return review

    # =========================================================================
    # SYSTEM ACTIONS
    # =========================================================================

    def mark_paid(
        self,
        review_id: int,
        actor: Actor,
        order_number: str,
        provider: str = "",
        notify: bool = True,
    ) -> OrderReview:
        """
        'pending-payment' -> 'approved-processing'.

        Only the payment coordinator (Actor.SYSTEM) may call this, and only
        after it has stored the Order. The coordinator holds store.atomic()
        around the call and passes notify=False, publishing through
        notify_updated() once the lock is released.
        """
        with self.store.atomic():
            review = self.store.get_review(review_id)
            check_transition(review.id, review.status, ReviewStatus.APPROVED_PROCESSING, actor)

            review.paid_at = utc_now()
            review.order_number = order_number
            if provider:
                review.payment_provider = provider
            self._record(review, ReviewStatus.APPROVED_PROCESSING, actor, f"Order {order_number}")
            review = self.store.save_review(review)
        if notify:
            self.notify_updated(review)
        return review

    def attach_payment_reference(self, review_id: int, provider: str, reference: str) -> OrderReview:
        """Remember the provider session/order id. Bookkeeping, no transition."""
        with self.store.atomic():
            review = self.store.get_review(review_id)
            review.payment_provider = provider
            review.payment_reference = reference
            return self.store.save_review(review)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def migrate_legacy_reply_ids(self, review_id: int) -> int:
        """
        One-time fix-up for replies/confirmations stored with cart ids.

        Older rows referenced items by the client's cart id (often the
        product id with a suffix). An entry is rewritten to a line item id
        only when exactly one line item's source reference is a prefix or
        substring of the stored id; ambiguous entries are left alone.

        Returns:
            Number of entries rewritten
        """
        with self.store.atomic():
            review = self.store.get_review(review_id)
            known = {item.id for item in review.items}
            review_logger = get_review_logger(review.id)

            def resolve(stored_id: str) -> Optional[str]:
                if stored_id in known:
                    return stored_id
                candidates = [
                    item.id for item in review.items
                    if item.source_ref and (stored_id.startswith(item.source_ref) or item.source_ref in stored_id)
                ]
                if len(candidates) == 1:
                    return candidates[0]
                review_logger.warning(
                    f"Cannot migrate reference '{stored_id}': {len(candidates)} candidate item(s)"
                )
                return None

            migrated = 0
            replies = []
            for reply in review.picture_replies:
                target = resolve(reply.item_id)
                if target and target != reply.item_id:
                    reply = PictureReply(reply.id, target, reply.image, reply.note, reply.sequence, reply.created_at)
                    migrated += 1
                replies.append(reply)

            confirmations = []
            for confirmation in review.confirmations:
                target = resolve(confirmation.item_id)
                if target and target != confirmation.item_id:
                    confirmation = CustomerConfirmation(
                        confirmation.id, target, confirmation.accepted,
                        confirmation.note, confirmation.sequence, confirmation.created_at,
                    )
                    migrated += 1
                confirmations.append(confirmation)

            if migrated:
                review.picture_replies = replies
                review.confirmations = confirmations
                self.store.save_review(review)
                review_logger.info(f"Migrated {migrated} legacy item reference(s)")
        return migrated

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _record(self, review: OrderReview, target: ReviewStatus, actor: Actor, note: str = "") -> None:
        previous = review.status
        review.status = target
        review.history.append(StatusChange(previous.value, target.value, actor.value, utc_now(), note))
        get_review_logger(review.id).info(f"{previous.value} -> {target.value} by {actor.value}")

    def notify_updated(self, review: OrderReview) -> None:
        """Publish design-review-updated for a change committed elsewhere."""
        self._notify(review, DESIGN_REVIEW_UPDATED)

    def _notify(self, review: OrderReview, *events: str) -> None:
        # Customers get the reduced view; the operator room the full snapshot
        payload = review.to_customer_dict()
        operator_payload = review.to_dict()
        keys = (review_key(review.id), customer_key(review.customer_id))
        for event in events:
            self.notifier.publish_many(event, keys, payload, operator_payload)
