"""
PayPal payment gateway (REST v2, via requests).

Unlike Stripe, PayPal orders are captured synchronously by us after the
buyer approves (capture_order), and PayPal also sends a
PAYMENT.CAPTURE.COMPLETED webhook. Refunds need the *capture* id, not the
order id; older orders may not have one on file, in which case the refund
reports manual_reference_required and an operator supplies it.

Thread Safety:
    The OAuth access token is cached and refreshed under a lock.
"""

from __future__ import annotations

import json
import threading
import time
from typing import Any, Dict, List, Mapping, Optional

import requests

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
    review_id_from,
)
from logging_config import get_logger
from models.serialization import coerce_price, round2


logger = get_logger(__name__)

API_BASES = {
    "sandbox": "https://api-m.sandbox.paypal.com",
    "live": "https://api-m.paypal.com",
}

# PayPal error names meaning "we don't know that capture id"
UNKNOWN_CAPTURE_ERRORS = {"RESOURCE_NOT_FOUND", "INVALID_RESOURCE_ID"}

# Refresh the token this many seconds before PayPal says it expires
TOKEN_SLACK_SECONDS = 60


class PayPalGateway(PaymentGateway):
    """PayPal Orders v2 + Payments v2 over plain HTTPS."""

    name = "paypal"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        mode: str = "sandbox",
        webhook_id: str = "",
        timeout: float = 15.0,
        currency: str = "usd",
        session: Optional[requests.Session] = None,
    ):
        super().__init__(timeout=timeout, currency=currency)
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self.base_url = API_BASES.get(mode, API_BASES["sandbox"])
        self.session = session or requests.Session()
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _access_token(self) -> str:
        with self._token_lock:
            if self._token and time.time() < self._token_expires_at:
                return self._token

            try:
                response = self.session.post(
                    f"{self.base_url}/v1/oauth2/token",
                    auth=(self.client_id, self.client_secret),
                    data={"grant_type": "client_credentials"},
                    headers={"Accept": "application/json"},
                    timeout=self.timeout,
                )
            except requests.Timeout as e:
                raise ProviderTimeoutError(self.name, "authenticate", self.timeout) from e
            except requests.RequestException as e:
                raise ProviderError(self.name, f"PayPal authentication failed: {e}")

            if response.status_code != 200:
                raise ProviderError(
                    self.name,
                    "PayPal authentication failed",
                    {"status_code": response.status_code},
                )

            data = self._json(response, "authenticate")
            if not data.get("access_token"):
                raise ProviderError(self.name, "PayPal authentication returned no access token")
            self._token = data["access_token"]
            self._token_expires_at = time.time() + int(data.get("expires_in", 300)) - TOKEN_SLACK_SECONDS
            return self._token

    def _request(self, method: str, path: str, operation: str, body: Optional[Dict[str, Any]] = None) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        try:
            return self.session.request(
                method,
                f"{self.base_url}{path}",
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            logger.error(f"PayPal {operation} timed out after {self.timeout}s")
            raise ProviderTimeoutError(self.name, operation, self.timeout) from e
        except requests.RequestException as e:
            logger.error(f"PayPal {operation} failed: {e}")
            raise ProviderError(self.name, f"PayPal {operation} failed: {e}")

    def _json(self, response: requests.Response, operation: str) -> Dict[str, Any]:
        """Decode a successful response body; anything but a JSON object is a provider fault."""
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"PayPal {operation} returned an unreadable body: {e}")
            raise ProviderError(self.name, f"PayPal {operation} returned an unreadable response")
        if not isinstance(data, dict):
            logger.error(f"PayPal {operation} returned {type(data).__name__}, expected an object")
            raise ProviderError(self.name, f"PayPal {operation} returned an unexpected response")
        return data

    @staticmethod
    def _error_name(response: requests.Response) -> str:
        try:
            return str(response.json().get("name", ""))
        except (ValueError, AttributeError):
            return ""

    def _raise_for(self, response: requests.Response, operation: str) -> None:
        if response.status_code < 400:
            return
        name = self._error_name(response)
        logger.error(f"PayPal {operation} returned {response.status_code} {name}")
        raise ProviderError(
            self.name,
            f"PayPal {operation} failed ({name or response.status_code})",
            {"status_code": response.status_code, "error_name": name},
        )

    def _money(self, amount: float) -> Dict[str, str]:
        return {"currency_code": self.currency.upper(), "value": f"{round2(amount):.2f}"}

    # -------------------------------------------------------------------------
    # Checkout / capture
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
        products = [i for i in line_items if i.kind == "product"]
        item_total = round2(sum(i.amount for i in products))
        shipping = round2(sum(i.amount for i in line_items if i.kind == "shipping"))
        tax = round2(sum(i.amount for i in line_items if i.kind == "tax"))
        reference = str(metadata.get("order_review_id", ""))

        purchase_unit: Dict[str, Any] = {
            "reference_id": reference,
            "custom_id": reference,
            "amount": dict(
                self._money(item_total + shipping + tax),
                breakdown={
                    "item_total": self._money(item_total),
                    "shipping": self._money(shipping),
                    "tax_total": self._money(tax),
                },
            ),
            "items": [
                {
                    "name": item.name[:127],
                    "quantity": str(item.quantity),
                    "unit_amount": self._money(item.unit_amount),
                }
                for item in products
            ],
        }
        if shipping_address:
            purchase_unit["shipping"] = {
                "name": {"full_name": shipping_address.get("name", "")},
                "address": {
                    "address_line_1": shipping_address.get("line1", ""),
                    "address_line_2": shipping_address.get("line2", ""),
                    "admin_area_2": shipping_address.get("city", ""),
                    "admin_area_1": shipping_address.get("state", ""),
                    "postal_code": shipping_address.get("postal_code", ""),
                    "country_code": shipping_address.get("country", "US"),
                },
            }

        body = {
            "intent": "CAPTURE",
            "purchase_units": [purchase_unit],
            "application_context": {
                "return_url": success_url,
                "cancel_url": cancel_url,
                "user_action": "PAY_NOW",
            },
        }
        response = self._request("POST", "/v2/checkout/orders", "create order", body)
        self._raise_for(response, "create order")
        data = self._json(response, "create order")

        approve_url = next(
            (link["href"] for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            "",
        )
        logger.info(f"Created PayPal order {data.get('id')} for review {reference}")
        return CheckoutSession(provider=self.name, session_id=str(data.get("id", "")), checkout_url=approve_url)

    def capture_order(self, provider_order_id: str, metadata: Dict[str, Any]) -> CaptureResult:
        response = self._request(
            "POST", f"/v2/checkout/orders/{provider_order_id}/capture", "capture order", {}
        )
        if response.status_code == 422 and self._error_name(response) == "UNPROCESSABLE_ENTITY":
            return CaptureResult(success=False, status="UNPROCESSABLE", message="Order cannot be captured")
        self._raise_for(response, "capture order")
        data = self._json(response, "capture order")

        capture: Dict[str, Any] = {}
        for unit in data.get("purchase_units", []):
            captures = (unit.get("payments") or {}).get("captures") or []
            if captures:
                capture = captures[0]
                break

        completed = data.get("status") == "COMPLETED" and capture.get("status") == "COMPLETED"
        return CaptureResult(
            success=completed,
            transaction_id=str(capture.get("id", "")),
            capture_reference=str(capture.get("id", "")),
            amount=coerce_price((capture.get("amount") or {}).get("value")),
            status=str(capture.get("status") or data.get("status", "")),
            message="" if completed else "PayPal did not complete the capture",
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
            return RefundResult(
                success=False,
                manual_reference_required=True,
                message="No PayPal capture id on file",
            )

        body: Dict[str, Any] = {"amount": self._money(amount)}
        if metadata.get("refund_id") is not None:
            body["invoice_id"] = f"REFUND-{metadata['refund_id']}"
        if reason:
            body["note_to_payer"] = reason[:255]

        response = self._request(
            "POST", f"/v2/payments/captures/{capture_reference}/refund", "refund", body
        )
        if response.status_code in (400, 404) and self._error_name(response) in UNKNOWN_CAPTURE_ERRORS:
            logger.warning(f"PayPal does not know capture {capture_reference}")
            return RefundResult(
                success=False,
                manual_reference_required=True,
                message=f"Unknown PayPal capture id {capture_reference}",
            )
        self._raise_for(response, "refund")
        data = self._json(response, "refund")

        status = str(data.get("status", ""))
        logger.info(f"PayPal refund {data.get('id')} status={status} for capture {capture_reference}")
        return RefundResult(
            success=status in ("COMPLETED", "PENDING"),
            refund_id=str(data.get("id", "")),
            status=status,
            message="" if status != "FAILED" else "PayPal reported the refund as failed",
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def construct_event(self, payload: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Decode the webhook and, when PAYPAL_WEBHOOK_ID is set, have PayPal
        verify the transmission signature.
        """
        try:
            event = json.loads(payload)
        except ValueError as e:
            raise ValidationError("payload", f"Invalid JSON payload: {e}")
        if not isinstance(event, dict):
            raise ValidationError("payload", "Webhook payload must be an object")

        if not self.webhook_id:
            logger.warning("PAYPAL_WEBHOOK_ID not set - accepting unverified webhook")
            return event

        body = {
            "auth_algo": headers.get("PAYPAL-AUTH-ALGO", ""),
            "cert_url": headers.get("PAYPAL-CERT-URL", ""),
            "transmission_id": headers.get("PAYPAL-TRANSMISSION-ID", ""),
            "transmission_sig": headers.get("PAYPAL-TRANSMISSION-SIG", ""),
            "transmission_time": headers.get("PAYPAL-TRANSMISSION-TIME", ""),
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        response = self._request(
            "POST", "/v1/notifications/verify-webhook-signature", "verify webhook", body
        )
        self._raise_for(response, "verify webhook")
        if self._json(response, "verify webhook").get("verification_status") != "SUCCESS":
            raise ValidationError("PAYPAL-TRANSMISSION-SIG", "Invalid PayPal webhook signature")
        return event

    def parse_event(self, event: Dict[str, Any]) -> PaymentEvent:
        event_type = str(event.get("event_type", ""))
        resource = event.get("resource") or {}
        related = ((resource.get("supplementary_data") or {}).get("related_ids")) or {}

        outcomes = {
            "PAYMENT.CAPTURE.COMPLETED": OUTCOME_SUCCEEDED,
            "PAYMENT.CAPTURE.DENIED": OUTCOME_FAILED,
            "PAYMENT.CAPTURE.DECLINED": OUTCOME_FAILED,
            "PAYMENT.CAPTURE.REFUNDED": OUTCOME_REFUNDED,
        }
        outcome = outcomes.get(event_type, OUTCOME_OTHER)
        capture_id = str(resource.get("id", "")) if event_type.startswith("PAYMENT.CAPTURE.") else ""

        return PaymentEvent(
            event_id=str(event.get("id", "")),
            event_type=event_type,
            provider=self.name,
            outcome=outcome,
            review_id=review_id_from(None, resource.get("custom_id"), resource.get("invoice_id")),
            amount=coerce_price((resource.get("amount") or {}).get("value")),
            transaction_id=capture_id,
            capture_reference=capture_id,
            payment_reference=str(related.get("order_id", "")),
            message=str(event.get("summary", "")) if outcome == OUTCOME_FAILED else "",
            raw=event,
        )
