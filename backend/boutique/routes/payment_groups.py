# Overview: Flask API routes for payment groups; parses input and returns JSON responses.

# backend/boutique/routes/payment_groups.py
"""
Payment Group API Routes

A customer selects pending orders and gets one exact amount to transfer. The
amount is matched either by the automated transfer feed (POST /transfers) or
by an admin confirming a manual verification (POST /<id>/confirm).
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import order_service, payment_groups, payment_reconciliation
from ..services.concurrency import TransactionConflictError
from ..services.payment_groups import GroupMismatchError, PaymentGroupError, PaymentGroupNotFoundError
from ..validation import ValidationError, require_positive_int, require_string_list

payment_groups_bp = Blueprint("payment_groups", __name__, url_prefix="/api/payment-groups")


def _group_payload(group) -> dict:
    data = group.to_dict()
    data["amount_display"] = payment_groups.format_amount_with_code(group.exact_payment_amount)
    return data


# =============================================================================
# CREATION / QUERIES
# =============================================================================

@payment_groups_bp.post("")
def create_group_route():
    """
    Open (or reuse) a payment group for a set of orders.

    Request body:
    {
        "user_id": "u-42",
        "order_ids": ["ORD-1", "ORD-2"],
        "verification_mode": "auto" | "manual" | null,
        "user_name": "...",  (optional)
        "user_email": "..."  (optional)
    }

    Returns:
        201: New group
        200: Existing open group for exactly these orders
        400: Invalid input
        404: Order not found
        409: An open group overlaps the selection but differs
    """
    data = request.get_json(silent=True) or {}
    try:
        user_id = data.get("user_id")
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("user_id is required")
        order_ids = require_string_list(data, "order_ids")

        group, created = payment_reconciliation.open_group_for_orders(
            user_id=user_id.strip(),
            order_ids=order_ids,
            verification_mode=data.get("verification_mode"),
            user_name=data.get("user_name"),
            user_email=data.get("user_email"),
        )
    except GroupMismatchError as e:
        return jsonify({"error": str(e), "group": e.group.to_dict()}), 409
    except order_service.OrderNotFoundError as e:
        return jsonify({"error": str(e)}), 404
    except (ValidationError, PaymentGroupError) as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to create payment group")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(_group_payload(group)), 201 if created else 200


@payment_groups_bp.get("")
def list_groups_route():
    user_id = request.args.get("user_id")
    if not user_id:
        return jsonify({"error": "user_id is required"}), 400
    groups = payment_groups.list_user_open_groups(user_id)
    return jsonify({"groups": [_group_payload(g) for g in groups]}), 200


@payment_groups_bp.get("/<group_id>")
def get_group_route(group_id: str):
    group = payment_groups.get_group(group_id)
    if group is None:
        return jsonify({"error": f"Payment group {group_id} not found"}), 404
    return jsonify(_group_payload(group)), 200


@payment_groups_bp.post("/match")
def match_amount_route():
    """Look up the pending group for an amount without settling it."""
    data = request.get_json(silent=True) or {}
    try:
        amount = require_positive_int(data, "amount")
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    group = payment_groups.get_group_by_amount(amount)
    if group is None:
        return jsonify({"error": f"No pending payment group for amount {amount}"}), 404
    return jsonify(_group_payload(group)), 200


# =============================================================================
# MUTATIONS
# =============================================================================

def _mutation_error(e: Exception):
    if isinstance(e, PaymentGroupNotFoundError):
        return jsonify({"error": str(e)}), 404
    if isinstance(e, TransactionConflictError):
        return jsonify({"error": str(e)}), 409
    return jsonify({"error": str(e)}), 400


@payment_groups_bp.patch("/<group_id>")
def update_group_route(group_id: str):
    """Request body: {"verification_mode": "auto" | "manual" | null}"""
    data = request.get_json(silent=True) or {}
    if "verification_mode" not in data:
        return jsonify({"error": "verification_mode is required"}), 400
    try:
        group = payment_groups.update_group(group_id, verification_mode=data["verification_mode"])
        order_service.link_orders_to_group(group)
    except (PaymentGroupError, TransactionConflictError) as e:
        return _mutation_error(e)
    return jsonify(_group_payload(group)), 200


@payment_groups_bp.post("/<group_id>/cancel")
def cancel_group_route(group_id: str):
    try:
        group = payment_reconciliation.cancel_and_release(group_id)
    except (PaymentGroupError, TransactionConflictError) as e:
        return _mutation_error(e)
    return jsonify(_group_payload(group)), 200


@payment_groups_bp.post("/<group_id>/confirm")
def confirm_group_route(group_id: str):
    """Admin confirmed the transfer after manual verification."""
    try:
        result = payment_reconciliation.confirm_group_payment(group_id)
    except (PaymentGroupError, TransactionConflictError) as e:
        return _mutation_error(e)
    return jsonify(result.to_dict()), 200


@payment_groups_bp.post("/transfers")
def apply_transfer_route():
    """
    Incoming transfer from the automated feed.

    Request body: {"amount": 150047, "sender_name": "Rina Putri"}

    Returns:
        200: Group settled
        202: Matched, but the sender check left it for admin review
        404: No single pending auto-verified group holds this amount
    """
    data = request.get_json(silent=True) or {}
    sender_name = data.get("sender_name")
    if sender_name is not None and not isinstance(sender_name, str):
        return jsonify({"error": "sender_name must be a string"}), 400
    try:
        amount = require_positive_int(data, "amount")
        result = payment_reconciliation.apply_transfer(amount, sender_name=sender_name)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except (PaymentGroupError, TransactionConflictError) as e:
        return _mutation_error(e)
    except Exception:
        current_app.logger.exception("Failed to apply transfer")
        return jsonify({"error": "Internal server error"}), 500

    if result is None:
        return jsonify({"error": f"No pending payment group for amount {amount}"}), 404
    return jsonify(result.to_dict()), (200 if result.settled else 202)


@payment_groups_bp.post("/expire")
def expire_groups_route():
    expired = payment_reconciliation.expire_and_release()
    return jsonify({"expired": expired}), 200
