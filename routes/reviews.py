"""
Design review routes.

Customer:
- POST /api/reviews                          - submit a cart for review
- GET  /api/reviews                          - own reviews
- GET  /api/reviews/<id>                     - one review
- POST /api/reviews/<id>/confirmations       - answer picture replies
- POST /api/reviews/<id>/resubmit            - new review from a rejected one

Operator:
- GET   /api/admin/reviews                   - queue (optional ?status=)
- GET   /api/admin/reviews/<id>
- POST  /api/admin/reviews/<id>/picture-replies  (JSON or multipart upload)
- POST  /api/admin/reviews/<id>/reject
- POST  /api/admin/reviews/<id>/reopen
- PATCH /api/admin/reviews/<id>/notes
"""

import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import Blueprint, current_app, request
from werkzeug.utils import secure_filename

from core.exceptions import ValidationError
from logging_config import get_logger
from models.review import Actor, ReviewStatus
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

reviews_bp = Blueprint("reviews", __name__)

# Constants
ALLOWED_IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp"}


def _allowed_image(filename: str) -> bool:
    """Check if file extension is allowed."""
    return "." in filename and filename.rsplit(".", 1)[1].lower() in ALLOWED_IMAGE_EXTENSIONS


def _status_filter() -> Optional[ReviewStatus]:
    raw = request.args.get("status")
    if not raw:
        return None
    try:
        return ReviewStatus(raw)
    except ValueError:
        raise ValidationError("status", f"Unknown review status: {raw}", raw)


def _clean_items(items: Any) -> List[Dict[str, Any]]:
    """Sanitize the free text inside cart lines before they reach the service."""
    if not isinstance(items, list):
        raise ValidationError("items", "items must be a list")
    cleaned = []
    for item in items:
        if not isinstance(item, dict):
            raise ValidationError("items", "Each item must be an object")
        item = dict(item)
        item["product_name"] = sanitize_text(item.get("product_name"), 200)
        designs = []
        for design in item.get("designs") or []:
            if isinstance(design, dict):
                design = dict(design)
                design["placement_notes"] = sanitize_text(design.get("placement_notes"), MAX_NOTE_LENGTH)
            designs.append(design)
        item["designs"] = designs
        cleaned.append(item)
    return cleaned


# =============================================================================
# CUSTOMER
# =============================================================================

@reviews_bp.route("/api/reviews", methods=["POST"])
def submit_review():
    """Submit the cart; every line is priced here and frozen."""
    customer_id = customer_id_from_request()
    data = json_body()

    review = service("REVIEW_SERVICE").submit_review(
        customer_id=customer_id,
        items=_clean_items(data.get("items", [])),
        shipping_address=data.get("shipping_address"),
        shipping_method=data.get("shipping_method"),
        customer_notes=sanitize_text(data.get("customer_notes"), MAX_NOTE_LENGTH),
        billing_address=data.get("billing_address"),
    )
    return {"success": True, "review": review.to_customer_dict()}, 201


@reviews_bp.route("/api/reviews", methods=["GET"])
def list_my_reviews():
    customer_id = customer_id_from_request()
    reviews = service("REVIEW_SERVICE").list_reviews(status=_status_filter(), customer_id=customer_id)
    return {"success": True, "reviews": [r.to_customer_dict() for r in reviews]}


@reviews_bp.route("/api/reviews/<int:review_id>", methods=["GET"])
def get_my_review(review_id: int):
    review = service("REVIEW_SERVICE").get_review(review_id, customer_id=customer_id_from_request())
    return {"success": True, "review": review.to_customer_dict()}


@reviews_bp.route("/api/reviews/<int:review_id>/confirmations", methods=["POST"])
def submit_confirmations(review_id: int):
    """
    Accept or decline picture replies.

    Body: {"confirmations": [{"item_id": "li-1", "accepted": true, "note": ""}]}
    """
    customer_id = customer_id_from_request()
    data = json_body()

    confirmations = []
    for raw in data.get("confirmations") or []:
        if not isinstance(raw, dict):
            raise ValidationError("confirmations", "Each confirmation must be an object")
        confirmations.append({
            "item_id": raw.get("item_id"),
            "accepted": raw.get("accepted"),
            "note": sanitize_text(raw.get("note"), MAX_NOTE_LENGTH),
        })

    review = service("REVIEW_SERVICE").submit_confirmations(review_id, customer_id, confirmations)
    return {"success": True, "review": review.to_customer_dict()}


@reviews_bp.route("/api/reviews/<int:review_id>/resubmit", methods=["POST"])
def resubmit_review(review_id: int):
    customer_id = customer_id_from_request()
    data = json_body()
    items = _clean_items(data["items"]) if data.get("items") is not None else None

    review = service("REVIEW_SERVICE").resubmit_review(
        review_id,
        customer_id,
        items=items,
        customer_notes=optional_text(data, "customer_notes"),
    )
    return {"success": True, "review": review.to_customer_dict()}, 201


# =============================================================================
# OPERATOR
# =============================================================================

@reviews_bp.route("/api/admin/reviews", methods=["GET"])
def admin_list_reviews():
    reviews = service("REVIEW_SERVICE").list_reviews(status=_status_filter())
    return {"success": True, "reviews": [r.to_dict() for r in reviews]}


@reviews_bp.route("/api/admin/reviews/<int:review_id>", methods=["GET"])
def admin_get_review(review_id: int):
    return {"success": True, "review": service("REVIEW_SERVICE").get_review(review_id).to_dict()}


@reviews_bp.route("/api/admin/reviews/<int:review_id>/picture-replies", methods=["POST"])
def upload_picture_replies(review_id: int):
    """
    Attach proof pictures to line items.

    JSON: {"replies": [{"item_id", "image", "note"}], "admin_notes": "..."}
    Multipart: repeated `item_id`, `image` (file) and optional `note`
    fields, matched by position.
    """
    if request.files:
        replies = _save_uploaded_replies(review_id)
        admin_notes = optional_text(request.form.to_dict(), "admin_notes")
    else:
        data = json_body()
        replies = []
        for raw in data.get("replies") or []:
            if not isinstance(raw, dict):
                raise ValidationError("replies", "Each reply must be an object")
            replies.append({
                "item_id": raw.get("item_id"),
                "image": str(raw.get("image") or "").strip(),
                "note": sanitize_text(raw.get("note"), MAX_NOTE_LENGTH),
            })
        admin_notes = optional_text(data, "admin_notes")

    review = service("REVIEW_SERVICE").upload_picture_replies(
        review_id, replies, Actor.OPERATOR, admin_notes=admin_notes
    )
    return {"success": True, "review": review.to_dict()}


def _save_uploaded_replies(review_id: int) -> List[Dict[str, Any]]:
    """Write uploaded proof images under UPLOAD_FOLDER/reviews/<id>/."""
    item_ids = request.form.getlist("item_id")
    notes = request.form.getlist("note")
    files = request.files.getlist("image")
    if not files or len(files) != len(item_ids):
        raise ValidationError("image", "Each uploaded image needs a matching item_id")

    target_dir = Path(current_app.config["UPLOAD_FOLDER"]) / "reviews" / str(review_id)
    target_dir.mkdir(parents=True, exist_ok=True)

    replies = []
    for index, (item_id, upload) in enumerate(zip(item_ids, files)):
        filename = secure_filename(upload.filename or "")
        if not filename or not _allowed_image(filename):
            raise ValidationError("image", f"Unsupported image file: {upload.filename}", upload.filename)
        stored_name = f"{uuid.uuid4().hex[:8]}_{filename}"
        upload.save(str(target_dir / stored_name))
        logger.info(f"Saved picture reply for review {review_id}: {stored_name}")
        replies.append({
            "item_id": item_id,
            "image": f"/uploads/reviews/{review_id}/{stored_name}",
            "note": sanitize_text(notes[index] if index < len(notes) else "", MAX_NOTE_LENGTH),
        })
    return replies


@reviews_bp.route("/api/admin/reviews/<int:review_id>/reject", methods=["POST"])
def reject_review(review_id: int):
    data = json_body()
    review = service("REVIEW_SERVICE").reject_review(
        review_id, sanitize_text(data.get("reason"), MAX_REASON_LENGTH), Actor.OPERATOR
    )
    return {"success": True, "review": review.to_dict()}


@reviews_bp.route("/api/admin/reviews/<int:review_id>/reopen", methods=["POST"])
def reopen_review(review_id: int):
    data = json_body()
    review = service("REVIEW_SERVICE").reopen_review(
        review_id, Actor.OPERATOR, note=sanitize_text(data.get("note"), MAX_REASON_LENGTH)
    )
    return {"success": True, "review": review.to_dict()}


@reviews_bp.route("/api/admin/reviews/<int:review_id>/notes", methods=["PATCH"])
def update_notes(review_id: int):
    data = json_body()
    review = service("REVIEW_SERVICE").update_notes(
        review_id,
        Actor.OPERATOR,
        admin_notes=optional_text(data, "admin_notes"),
        internal_notes=optional_text(data, "internal_notes"),
    )
    return {"success": True, "review": review.to_dict()}
