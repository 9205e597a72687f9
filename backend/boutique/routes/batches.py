# Overview: Flask API routes for product batches and stock; parses input and returns JSON responses.

# backend/boutique/routes/batches.py
"""
Product Batch API Routes

Read access to batch documents and per-product stock, plus the admin
operations that change stock outside checkout (batch load, manual adjust).
Reservations never go through these routes; they go through the checkout queue.
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import batch_store, stock_ledger
from ..services.concurrency import TransactionConflictError
from ..validation import ValidationError, coerce_int, parse_variant

batches_bp = Blueprint("batches", __name__, url_prefix="/api/batches")


# =============================================================================
# BATCHES
# =============================================================================

@batches_bp.get("")
def list_batches_route():
    batches = batch_store.list_batches()
    return jsonify({"batches": [b.to_dict(include_products=False) for b in batches]}), 200


@batches_bp.get("/<batch_id>")
def get_batch_route(batch_id: str):
    try:
        return jsonify(batch_store.read_batch(batch_id).to_dict()), 200
    except batch_store.BatchNotFoundError as e:
        return jsonify({"error": str(e)}), 404


@batches_bp.post("")
def create_batch_route():
    """
    Load a new batch.

    Request body:
    {
        "id": "batch_3",
        "products": [{"id": "P1", "stock": 4, ...}, ...]
    }

    Returns:
        201: Batch created
        400: Invalid input
        409: Batch exists or a product is already stored elsewhere
    """
    data = request.get_json(silent=True) or {}
    batch_id = data.get("id")
    products = data.get("products")

    if not isinstance(batch_id, str) or not batch_id.strip():
        return jsonify({"error": "id is required"}), 400
    if not isinstance(products, list):
        return jsonify({"error": "products must be a list"}), 400

    try:
        batch = batch_store.create_batch(batch_id.strip(), products)
    except batch_store.DuplicateProductError as e:
        return jsonify({"error": str(e)}), 409
    except (ValueError, TypeError) as e:
        return jsonify({"error": f"Invalid product data: {e}"}), 400
    except Exception:
        current_app.logger.exception("Failed to create batch")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify(batch.to_dict()), 201


# =============================================================================
# STOCK
# =============================================================================

@batches_bp.get("/products/<product_id>/stock")
def get_stock_route(product_id: str):
    """Query params: size, color (variant cell), batch_id (skip lookup)."""
    try:
        variant = parse_variant(request.args.get("size"), request.args.get("color"))
        batch_id, product = batch_store.find_product(product_id, request.args.get("batch_id"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LookupError as e:
        return jsonify({"error": str(e)}), 404

    return jsonify({
        "product_id": product_id,
        "batch_id": batch_id,
        "stock": product.stock,
        "available": product.available(variant),
        "variant": variant.to_dict() if variant else None,
        "variants": product.variants.to_dict()["stock"] if product.has_variants else None,
    }), 200


@batches_bp.get("/products/<product_id>/movements")
def list_movements_route(product_id: str):
    try:
        limit = coerce_int("limit", request.args.get("limit", "50"))
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    movements = stock_ledger.list_movements(
        product_id,
        order_id=request.args.get("order_id"),
        limit=max(1, min(limit, 500)),
    )
    return jsonify({"movements": [m.to_dict() for m in movements]}), 200


@batches_bp.post("/<batch_id>/products/<product_id>/adjust")
def adjust_stock_route(batch_id: str, product_id: str):
    """
    Manual stock correction.

    Request body:
    {
        "delta": -2,
        "variant": {"size": "M", "color": "Black"},  (optional)
        "note": "damaged in storage"  (optional)
    }

    Returns:
        200: New stock
        400: Invalid input or stock would go negative
        404: Batch / product not found
        409: Too much contention, retry later
    """
    data = request.get_json(silent=True) or {}
    raw_variant = data.get("variant") or {}

    try:
        if "delta" not in data:
            raise ValidationError("delta is required")
        delta = coerce_int("delta", data["delta"])
        if not isinstance(raw_variant, dict):
            raise ValidationError("variant must be an object with size and color")
        variant = parse_variant(raw_variant.get("size"), raw_variant.get("color"))
        new_stock = stock_ledger.adjust(batch_id, product_id, delta, variant, note=data.get("note"))
    except LookupError as e:
        return jsonify({"error": str(e)}), 404
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except TransactionConflictError as e:
        return jsonify({"error": str(e)}), 409
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500

    return jsonify({"product_id": product_id, "batch_id": batch_id, "stock": new_stock}), 200
