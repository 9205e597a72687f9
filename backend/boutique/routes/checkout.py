# Overview: Flask API routes for the checkout queue; parses input and returns JSON responses.

# backend/boutique/routes/checkout.py
"""
Checkout Queue API Routes

Enqueue returns 202 straight away. The reservation outcome is read back from
the item (or the per-order report) once a drain pass has processed it.
"""

from flask import Blueprint, current_app, jsonify, request

from ..models import CheckoutQueueItem
from ..services.checkout_queue import QueueError, QueueItemNotFoundError, get_checkout_queue
from ..validation import (
    CHECKOUT_ITEM_POLICY,
    ValidationError,
    coerce_int,
    flatten_variant,
    parse_variant,
    validate_payload,
)

checkout_bp = Blueprint("checkout", __name__, url_prefix="/api/checkout")


# =============================================================================
# ENQUEUE
# =============================================================================

@checkout_bp.post("/items")
def enqueue_item_route():
    """
    Queue one reservation request.

    Request body:
    {
        "order_id": "ORD-1001",
        "user_id": "u-42",
        "product_id": "P1",
        "quantity": 2,
        "batch_id": "batch_1",  (optional, located when omitted)
        "variant": {"size": "M", "color": "Black"}  (optional)
    }

    Returns:
        202: Item queued (status pending)
        400: Invalid input
    """
    try:
        patch = validate_payload(
            model=CheckoutQueueItem,
            payload=flatten_variant(request.get_json(silent=True)),
            policy=CHECKOUT_ITEM_POLICY,
        )
        if patch["quantity"] <= 0:
            raise ValidationError("quantity must be > 0")
        variant = parse_variant(patch.get("variant_size"), patch.get("variant_color"))

        item_id = get_checkout_queue().enqueue(
            patch["order_id"],
            patch["user_id"],
            patch["product_id"],
            patch["quantity"],
            variant,
            batch_id=patch.get("batch_id"),
        )
    except (ValidationError, QueueError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to enqueue checkout item")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"item_id": item_id, "status": "pending"}), 202


@checkout_bp.post("/orders/<order_id>")
def enqueue_order_route(order_id: str):
    """Queue one item per line of an existing order."""
    try:
        item_ids = get_checkout_queue().enqueue_order(order_id)
    except QueueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to enqueue order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"order_id": order_id, "item_ids": item_ids}), 202


# =============================================================================
# QUERIES
# =============================================================================

@checkout_bp.get("/items")
def list_items_route():
    try:
        limit = coerce_int("limit", request.args.get("limit", "100"))
        items = get_checkout_queue().list_items(request.args.get("status"), limit=max(1, min(limit, 500)))
    except (ValidationError, QueueError) as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"items": [item.to_dict() for item in items]}), 200


@checkout_bp.get("/items/<int:item_id>")
def get_item_route(item_id: int):
    try:
        item = get_checkout_queue().get_item(item_id)
    except QueueItemNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(item.to_dict()), 200


@checkout_bp.get("/orders/<order_id>")
def order_report_route(order_id: str):
    try:
        report = get_checkout_queue().order_reservation_report(order_id)
    except QueueItemNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(report), 200


@checkout_bp.get("/stats")
def stats_route():
    queue = get_checkout_queue()
    return jsonify({"counts": queue.stats(), "draining": queue.is_draining}), 200


# =============================================================================
# PROCESSING
# =============================================================================

@checkout_bp.post("/drain")
def drain_route():
    """
    Run one drain pass in the request.

    Returns:
        200: Drain report
        409: A pass is already running in this process
    """
    data = request.get_json(silent=True) or {}
    try:
        limit = coerce_int("limit", data["limit"]) if data.get("limit") is not None else None
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    try:
        report = get_checkout_queue().drain(limit=limit)
    except Exception:
        current_app.logger.exception("Checkout drain failed")
        return jsonify({"error": "Internal server error"}), 500

    if not report.started:
        return jsonify({"error": "A drain pass is already running"}), 409
    return jsonify(report.to_dict()), 200


@checkout_bp.post("/items/<int:item_id>/retry")
def retry_item_route(item_id: int):
    try:
        item = get_checkout_queue().retry_item(item_id)
    except QueueItemNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except QueueError as e:
        return jsonify({"error": str(e)}), 409
    return jsonify(item.to_dict()), 200
