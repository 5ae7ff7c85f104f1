"""
Stripe payment gateway.

Checkout uses hosted Checkout Sessions; capture happens on Stripe's side and
arrives as a webhook (checkout.session.completed / payment_intent.succeeded).
Refunds are issued against the PaymentIntent id, which is what we store as
the capture reference. Orders recorded without one fall back to the
Checkout Session the review was paid through.

Amounts cross this boundary in cents.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping, Optional

import stripe

from core.exceptions import ProviderError, ProviderTimeoutError, ValidationError
from core.payment_gateway import (
    OUTCOME_FAILED,
    OUTCOME_OTHER,
    OUTCOME_REFUNDED,
    OUTCOME_SUCCEEDED,
    CaptureResult,
    CheckoutLineItem,
    CheckoutSession,
    PaymentEvent,
    PaymentGateway,
    RefundResult,
    from_minor_units,
    review_id_from,
    to_minor_units,
)
from logging_config import get_logger


logger = get_logger(__name__)


# Our refund reasons -> Stripe's enum
DUPLICATE_REASON = "duplicate_order"


class StripeGateway(PaymentGateway):
    """Stripe Checkout + Refunds via the official SDK."""

    name = "stripe"
    # A missing payment intent can be recovered from the Checkout Session
    requires_capture_reference = False

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        timeout: float = 15.0,
        currency: str = "usd",
    ):
        super().__init__(timeout=timeout, currency=currency)
        self.webhook_secret = webhook_secret
        stripe.api_key = secret_key
        stripe.max_network_retries = 2
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    # -------------------------------------------------------------------------
    # Checkout
    # -------------------------------------------------------------------------

    def create_checkout_session(
        self,
        line_items: List[CheckoutLineItem],
        success_url: str,
        cancel_url: str,
        customer_info: Dict[str, Any],
        shipping_address: Optional[Dict[str, Any]],
        metadata: Dict[str, Any],
    ) -> CheckoutSession:
        stripe_items = [
            {
                "price_data": {
                    "currency": self.currency,
                    "product_data": {"name": item.name},
                    "unit_amount": to_minor_units(item.unit_amount),
                },
                "quantity": item.quantity,
            }
            for item in line_items
            if item.unit_amount > 0
        ]

        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": stripe_items,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if metadata.get("order_review_id") is not None:
            params["client_reference_id"] = str(metadata["order_review_id"])
        if customer_info.get("email"):
            params["customer_email"] = customer_info["email"]

        session = self._call("create checkout session", stripe.checkout.Session.create, **params)
        logger.info(f"Created Stripe checkout session {session.id} for {metadata}")
        return CheckoutSession(provider=self.name, session_id=session.id, checkout_url=session.url)

    def capture_order(self, provider_order_id: str, metadata: Dict[str, Any]) -> CaptureResult:
        """
        Check a PaymentIntent. Stripe captures on its own; this only reports
        whether it has.
        """
        intent = self._call("retrieve payment intent", stripe.PaymentIntent.retrieve, provider_order_id)
        succeeded = intent.status == "succeeded"
        return CaptureResult(
            success=succeeded,
            transaction_id=intent.id,
            capture_reference=intent.id,
            amount=from_minor_units(getattr(intent, "amount_received", 0)),
            status=intent.status,
            message="" if succeeded else f"Payment intent is {intent.status}",
        )

    # -------------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------------

    def issue_refund(
        self,
        capture_reference: str,
        amount: float,
        metadata: Dict[str, Any],
        reason: Optional[str] = None,
    ) -> RefundResult:
        if not capture_reference:
            capture_reference = self._payment_intent_for(metadata.get("checkout_session"))
        if not capture_reference:
            return RefundResult(
                success=False,
                manual_reference_required=True,
                message="No payment intent on file",
            )

        try:
            refund = stripe.Refund.create(
                payment_intent=capture_reference,
                amount=to_minor_units(amount),
                reason="duplicate" if reason == DUPLICATE_REASON else "requested_by_customer",
                metadata=metadata,
            )
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                logger.warning(f"Stripe does not know payment intent {capture_reference}")
                return RefundResult(
                    success=False,
                    manual_reference_required=True,
                    message=f"Unknown payment intent {capture_reference}",
                )
            raise ProviderError(self.name, f"Stripe rejected the refund: {e.user_message or e}")
        except stripe.APIConnectionError as e:
            raise ProviderTimeoutError(self.name, "refund", self.timeout) from e
        except stripe.StripeError as e:
            raise ProviderError(self.name, f"Stripe refund failed: {e.user_message or e}")

        logger.info(f"Stripe refund {refund.id} status={refund.status} for {capture_reference}")
        return RefundResult(
            success=refund.status in ("succeeded", "pending"),
            refund_id=refund.id,
            status=refund.status,
            message="" if refund.status != "failed" else "Stripe reported the refund as failed",
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def construct_event(self, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and decode the event.

        Without a webhook secret (local development) the payload is accepted
        unverified.
        """
        if self.webhook_secret:
            try:
                stripe.Webhook.construct_event(
                    payload, headers.get("Stripe-Signature", ""), self.webhook_secret
                )
            except stripe.SignatureVerificationError as e:
                raise ValidationError("Stripe-Signature", f"Invalid Stripe signature: {e}")
            except ValueError as e:
                raise ValidationError("payload", f"Invalid Stripe payload: {e}")
        else:
            logger.warning("STRIPE_WEBHOOK_SECRET not set - accepting unverified webhook")

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise ValidationError("payload", f"Invalid JSON payload: {e}")
        if not isinstance(event, dict):
            raise ValidationError("payload", "Webhook payload must be an object")
        return event

    def parse_event(self, event: Dict[str, Any]) -> PaymentEvent:
        event_type = str(event.get("type", ""))
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        outcome = OUTCOME_OTHER
        amount = 0.0
        transaction_id = ""
        payment_reference = ""
        message = ""

        if event_type.startswith("checkout.session."):
            payment_reference = str(obj.get("id") or "")
            transaction_id = str(obj.get("payment_intent") or "")
            amount = from_minor_units(obj.get("amount_total"))
            if event_type in ("checkout.session.completed", "checkout.session.async_payment_succeeded"):
                outcome = OUTCOME_SUCCEEDED if obj.get("payment_status") == "paid" else OUTCOME_OTHER
            elif event_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
                outcome = OUTCOME_FAILED
                message = "Checkout session expired" if event_type.endswith("expired") else "Payment failed"
        elif event_type.startswith("payment_intent."):
            transaction_id = str(obj.get("id") or "")
            amount = from_minor_units(obj.get("amount_received") or obj.get("amount"))
            if event_type == "payment_intent.succeeded":
                outcome = OUTCOME_SUCCEEDED
            elif event_type == "payment_intent.payment_failed":
                outcome = OUTCOME_FAILED
                message = ((obj.get("last_payment_error") or {}).get("message")) or "Payment failed"
        elif event_type == "charge.refunded":
            transaction_id = str(obj.get("payment_intent") or "")
            amount = from_minor_units(obj.get("amount_refunded"))
            outcome = OUTCOME_REFUNDED

        return PaymentEvent(
            event_id=str(event.get("id", "")),
            event_type=event_type,
            provider=self.name,
            outcome=outcome,
            review_id=review_id_from(metadata, obj.get("client_reference_id")),
            amount=amount,
            transaction_id=transaction_id,
            capture_reference=transaction_id,
            payment_reference=payment_reference,
            message=message,
            raw=event,
        )

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _payment_intent_for(self, session_id: Optional[str]) -> str:
        if not session_id:
            return ""
        session = self._call("retrieve checkout session", stripe.checkout.Session.retrieve, session_id)
        intent = getattr(session, "payment_intent", None) or ""
        # Expanded sessions carry the whole PaymentIntent object
        intent = getattr(intent, "id", intent)
        if intent:
            logger.info(f"Resolved payment intent {intent} from checkout session {session_id}")
        return str(intent)

    def _call(self, operation: str, func, *args, **kwargs):
        try:
            return func(*args, **kwargs)
        except stripe.APIConnectionError as e:
            logger.error(f"Stripe {operation} failed to connect: {e}")
            raise ProviderTimeoutError(self.name, operation, self.timeout) from e
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise ProviderError(self.name, f"Stripe {operation} failed: {e.user_message or e}")
