"""
Refund routes.

Customer:
- POST /api/refunds                    - request a refund
- GET  /api/refunds                    - own refunds
- GET  /api/refunds/<id>
- POST /api/refunds/<id>/cancel

Operator:
- GET  /api/admin/refunds              - (optional ?status=&order_number=)
- GET  /api/admin/refunds/stats
- POST /api/admin/refunds              - refund on the customer's behalf
- POST /api/admin/refunds/<id>/review
- POST /api/admin/refunds/<id>/approve - executes with the provider
- POST /api/admin/refunds/<id>/reject
"""

from typing import Any, Dict

from flask import Blueprint, request

from core.exceptions import ValidationError
from logging_config import get_logger
from models.refund import RefundStatus
from models.review import Actor
from routes.helpers import (
    MAX_NOTE_LENGTH,
    MAX_REASON_LENGTH,
    customer_id_from_request,
    json_body,
    optional_text,
    sanitize_text,
    service,
)


# Module logger
logger = get_logger(__name__)

refunds_bp = Blueprint("refunds", __name__)


def _create_kwargs(data: Dict[str, Any]) -> Dict[str, Any]:
    items = data.get("items")
    if items is not None and not isinstance(items, list):
        raise ValidationError("items", "items must be a list")
    return {
        "refund_type": str(data.get("refund_type") or "full"),
        "reason": str(data.get("reason") or "other"),
        "description": sanitize_text(data.get("description"), MAX_NOTE_LENGTH),
        "amount": data.get("amount"),
        "items": [i for i in items or [] if isinstance(i, dict)],
        "refund_method": str(data.get("refund_method") or "original_payment"),
    }


# =============================================================================
# CUSTOMER
# =============================================================================

@refunds_bp.route("/api/refunds", methods=["POST"])
def request_refund():
    customer_id = customer_id_from_request()
    data = json_body()
    refund = service("REFUND_SERVICE").create_refund(
        str(data.get("order_number") or ""),
        Actor.CUSTOMER,
        customer_id=customer_id,
        **_create_kwargs(data),
    )
    return {"success": True, "refund": refund.to_customer_dict()}, 201


@refunds_bp.route("/api/refunds", methods=["GET"])
def list_my_refunds():
    refunds = service("REFUND_SERVICE").list_refunds(customer_id=customer_id_from_request())
    return {"success": True, "refunds": [r.to_customer_dict() for r in refunds]}


@refunds_bp.route("/api/refunds/<int:refund_id>", methods=["GET"])
def get_my_refund(refund_id: int):
    refund = service("REFUND_SERVICE").get_refund(refund_id, customer_id=customer_id_from_request())
    return {"success": True, "refund": refund.to_customer_dict()}


@refunds_bp.route("/api/refunds/<int:refund_id>/cancel", methods=["POST"])
def cancel_my_refund(refund_id: int):
    refund = service("REFUND_SERVICE").cancel_refund(
        refund_id, Actor.CUSTOMER, customer_id=customer_id_from_request()
    )
    return {"success": True, "refund": refund.to_customer_dict()}


# =============================================================================
# OPERATOR
# =============================================================================

@refunds_bp.route("/api/admin/refunds", methods=["GET"])
def admin_list_refunds():
    status = None
    raw_status = request.args.get("status")
    if raw_status:
        try:
            status = RefundStatus(raw_status)
        except ValueError:
            raise ValidationError("status", f"Unknown refund status: {raw_status}", raw_status)
    refunds = service("REFUND_SERVICE").list_refunds(
        order_number=request.args.get("order_number") or None, status=status
    )
    return {"success": True, "refunds": [r.to_dict() for r in refunds]}


@refunds_bp.route("/api/admin/refunds/stats", methods=["GET"])
def admin_refund_stats():
    return {"success": True, "stats": service("REFUND_SERVICE").refund_stats()}


@refunds_bp.route("/api/admin/refunds", methods=["POST"])
def admin_create_refund():
    data = json_body()
    refund = service("REFUND_SERVICE").create_refund(
        str(data.get("order_number") or ""),
        Actor.OPERATOR,
        **_create_kwargs(data),
    )
    return {"success": True, "refund": refund.to_dict()}, 201


@refunds_bp.route("/api/admin/refunds/<int:refund_id>/review", methods=["POST"])
def admin_start_review(refund_id: int):
    data = json_body()
    refund = service("REFUND_SERVICE").start_review(
        refund_id, Actor.OPERATOR, admin_notes=optional_text(data, "admin_notes")
    )
    return {"success": True, "refund": refund.to_dict()}


@refunds_bp.route("/api/admin/refunds/<int:refund_id>/approve", methods=["POST"])
def admin_approve_refund(refund_id: int):
    """
    Approve and execute. Body may carry "capture_reference" when the
    provider needs one that is not on file.

    200 completed, 409 manual reference required, 502 provider failure.
    """
    data = json_body()
    outcome = service("REFUND_SERVICE").approve_refund(
        refund_id,
        Actor.OPERATOR,
        admin_notes=optional_text(data, "admin_notes"),
        capture_reference=sanitize_text(data.get("capture_reference"), 128) or None,
    )
    if outcome.succeeded:
        status_code = 200
    elif outcome.manual_reference_required:
        status_code = 409
    else:
        status_code = 502
    return outcome.to_dict(), status_code


@refunds_bp.route("/api/admin/refunds/<int:refund_id>/reject", methods=["POST"])
def admin_reject_refund(refund_id: int):
    data = json_body()
    refund = service("REFUND_SERVICE").reject_refund(
        refund_id,
        sanitize_text(data.get("reason"), MAX_REASON_LENGTH),
        Actor.OPERATOR,
        admin_notes=optional_text(data, "admin_notes"),
    )
    return {"success": True, "refund": refund.to_dict()}
