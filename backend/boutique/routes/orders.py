# Overview: Flask API routes for orders; parses input and returns JSON responses.

# backend/boutique/routes/orders.py
"""
Order API Routes

Order creation here only records the order and its payment deadline; pass
"enqueue": true to queue its lines for stock reservation in the same call.
Cancellation restores reserved stock and reports lines that could not be
restored instead of hiding them.
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import order_service
from ..services.checkout_queue import get_checkout_queue
from ..services.expiry_monitor import OrderExpiryMonitor
from ..validation import ValidationError, coerce_int, parse_variant

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _parse_lines(raw_lines) -> list[order_service.LineRequest]:
    if not isinstance(raw_lines, list) or not raw_lines:
        raise ValidationError("lines must be a non-empty list")
    lines = []
    for raw in raw_lines:
        if not isinstance(raw, dict) or not raw.get("product_id"):
            raise ValidationError("each line needs a product_id")
        variant = raw.get("variant") or {}
        if not isinstance(variant, dict):
            raise ValidationError("variant must be an object with size and color")
        lines.append(order_service.LineRequest(
            product_id=str(raw["product_id"]),
            quantity=coerce_int("quantity", raw.get("quantity")),
            batch_id=raw.get("batch_id"),
            variant=parse_variant(variant.get("size"), variant.get("color")),
        ))
    return lines


@orders_bp.post("")
def create_order_route():
    """
    Request body:
    {
        "id": "ORD-1001",  (optional)
        "user_id": "u-42",
        "customer_role": "customer" | "reseller",
        "final_total": 150000,
        "preorder_only": false,
        "enqueue": true,
        "lines": [{"product_id": "P1", "quantity": 2, "variant": {"size": "M", "color": "Black"}}]
    }

    Returns:
        201: Order created (with queued item ids when enqueue is set)
        400: Invalid input
    """
    data = request.get_json(silent=True) or {}
    try:
        user_id = data.get("user_id")
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id is required")
        order = order_service.create_order(
            order_id=data.get("id"),
            user_id=user_id.strip(),
            lines=_parse_lines(data.get("lines")),
            final_total=coerce_int("final_total", data.get("final_total", 0)),
            customer_role=data.get("customer_role") or order_service.ROLE_CUSTOMER,
            preorder_only=bool(data.get("preorder_only", False)),
        )
        item_ids = get_checkout_queue().enqueue_order(order.id) if data.get("enqueue") else []
    except (ValidationError, order_service.OrderError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"order": order.to_dict(), "queue_item_ids": item_ids}), 201


@orders_bp.get("")
def list_orders_route():
    try:
        limit = coerce_int("limit", request.args.get("limit", "100"))
        orders = order_service.list_orders(
            status=request.args.get("status"),
            user_id=request.args.get("user_id"),
            limit=max(1, min(limit, 500)),
        )
    except (ValidationError, order_service.OrderError) as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"orders": [o.to_dict(include_lines=False) for o in orders]}), 200


@orders_bp.get("/<order_id>")
def get_order_route(order_id: str):
    try:
        order = order_service.get_order(order_id)
    except order_service.OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(order.to_dict()), 200


@orders_bp.post("/<order_id>/status")
def transition_order_route(order_id: str):
    """Request body: {"status": "processing", "reason": "..."}"""
    data = request.get_json(silent=True) or {}
    new_status = data.get("status")
    if not new_status:
        return jsonify({"error": "status is required"}), 400

    try:
        order = order_service.transition_order(order_id, new_status, reason=data.get("reason"))
    except order_service.OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except order_service.OrderTransitionError as e:
        return jsonify({"error": str(e)}), 409
    except order_service.OrderError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to transition order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(order.to_dict()), 200


@orders_bp.post("/<order_id>/cancel")
def cancel_order_route(order_id: str):
    """
    Returns:
        200: Cancelled; "failed" lists lines whose stock could not be restored
        404: Order not found
        409: Order can no longer be cancelled
    """
    data = request.get_json(silent=True) or {}
    try:
        result = order_service.cancel_order(order_id, reason=data.get("reason"))
    except order_service.OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except order_service.OrderTransitionError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to cancel order %s", order_id)
        return jsonify({"error": "Internal server error"}), 500

    payload = result.to_dict()
    payload["complete"] = not result.failed
    return jsonify(payload), 200


@orders_bp.post("/check-expiry")
def check_expiry_route():
    """Run one expiry pass (optionally for one user)."""
    data = request.get_json(silent=True) or {}
    report = OrderExpiryMonitor(user_id=data.get("user_id")).check_once()
    return jsonify(report.to_dict()), 200
