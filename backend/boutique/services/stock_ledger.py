# Overview: Reservation and restoration of product stock inside batch documents.

"""
Stock Ledger

All stock arithmetic happens inside a batch_store.write_batch transaction:
availability is checked against the row as re-read by that transaction, so two
reservations racing for the last units can never both commit. Every applied
change appends a StockMovement in the same transaction.

RULES:
- Stock never goes negative (scalar or per-variant cell).
- For products with a variant grid the scalar stock is the sum of the grid and
  is recomputed on every change.
- restore() has no upper bound: it does not check that the units were
  previously reserved. Order cancellation caps itself with
  outstanding_units(), which nets the order's reserve and restore movements.
- Movements record the variant as requested, so per-order accounting matches
  order lines even when a variant request fell back to scalar stock.
"""

from __future__ import annotations

import logging

from sqlalchemy import func

from ..extensions import db
from ..models import StockMovement
from ..records import ProductRecord, VariantKey
from . import batch_store

logger = logging.getLogger(__name__)


REASON_ORDER = "order"
REASON_RESTORE = "restore"
REASON_ADJUSTMENT = "adjustment"


class InsufficientStockError(ValueError):
    """Expected business outcome: not enough units to reserve."""

    def __init__(self, product_id: str, available: int, requested: int, variant: VariantKey | None = None):
        label = product_id
        if variant is not None:
            label = f"{product_id} ({variant.size}/{variant.color})"
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Requested: {requested}"
        )
        self.product_id = product_id
        self.available = available
        self.requested = requested
        self.variant = variant


class VariantRequiredError(ValueError):
    """Product tracks stock per size/color and the request did not name one."""


def _check_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError("quantity must be a positive integer")


def _apply(
    *,
    batch_id: str | None,
    product_id: str,
    delta: int,
    variant: VariantKey | None,
    reason: str,
    order_id: str | None = None,
    queue_item_id: int | None = None,
    note: str | None = None,
) -> ProductRecord:
    if batch_id is None:
        batch_id = batch_store.locate_product(product_id)

    def _change(product: ProductRecord) -> None:
        if variant is None and product.has_variants:
            raise VariantRequiredError(
                f"Product {product_id} tracks stock per variant; size and color are required"
            )

        previous_total = product.stock
        available = product.available(variant)
        if available + delta < 0:
            raise InsufficientStockError(product_id, available, -delta, variant if product.uses_variant(variant) else None)

        product.apply_delta(delta, variant)

        db.session.add(StockMovement(
            batch_id=batch_id,
            product_id=product_id,
            variant_size=variant.size if variant else None,
            variant_color=variant.color if variant else None,
            reason=reason,
            change=delta,
            previous_stock=previous_total,
            new_stock=product.stock,
            order_id=order_id,
            queue_item_id=queue_item_id,
            note=note,
        ))

    product = batch_store.update_product(batch_id, product_id, _change)
    logger.info(
        "stock %s: product=%s batch=%s variant=%s delta=%+d new_stock=%d",
        reason, product_id, batch_id, variant.to_dict() if variant else None, delta, product.stock,
    )
    return product


def reserve(
    batch_id: str | None,
    product_id: str,
    quantity: int,
    variant: VariantKey | None = None,
    *,
    order_id: str | None = None,
    queue_item_id: int | None = None,
) -> int:
    """
    Take ``quantity`` units from a product (or one of its variant cells).

    Returns the product's new total stock.

    Raises:
        InsufficientStockError: fewer units available than requested
        VariantRequiredError: variant product without size/color
        BatchNotFoundError / ProductNotInBatchError: structural data errors
    """
    _check_quantity(quantity)
    product = _apply(
        batch_id=batch_id,
        product_id=product_id,
        delta=-quantity,
        variant=variant,
        reason=REASON_ORDER,
        order_id=order_id,
        queue_item_id=queue_item_id,
    )
    return product.stock


def restore(
    batch_id: str | None,
    product_id: str,
    quantity: int,
    variant: VariantKey | None = None,
    *,
    order_id: str | None = None,
    note: str | None = None,
) -> int:
    """Give ``quantity`` units back. Not capped by what was reserved."""
    _check_quantity(quantity)
    product = _apply(
        batch_id=batch_id,
        product_id=product_id,
        delta=quantity,
        variant=variant,
        reason=REASON_RESTORE,
        order_id=order_id,
        note=note,
    )
    return product.stock


def adjust(
    batch_id: str | None,
    product_id: str,
    delta: int,
    variant: VariantKey | None = None,
    *,
    note: str | None = None,
) -> int:
    """Manual stock correction (stock take, damage). Same never-negative rule."""
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValueError("delta must be a non-zero integer")
    product = _apply(
        batch_id=batch_id,
        product_id=product_id,
        delta=delta,
        variant=variant,
        reason=REASON_ADJUSTMENT,
        note=note,
    )
    return product.stock


def get_stock(product_id: str, variant: VariantKey | None = None, batch_id: str | None = None) -> int:
    _, product = batch_store.find_product(product_id, batch_id)
    return product.available(variant)


def list_movements(
    product_id: str,
    *,
    order_id: str | None = None,
    limit: int = 50,
) -> list[StockMovement]:
    q = db.session.query(StockMovement).filter_by(product_id=product_id)
    if order_id is not None:
        q = q.filter_by(order_id=order_id)
    return q.order_by(StockMovement.created_at.desc(), StockMovement.id.desc()).limit(limit).all()


def outstanding_units(order_id: str, product_id: str, variant: VariantKey | None = None) -> int:
    """Units reserved for an order line key and not yet given back."""
    net = db.session.query(func.coalesce(func.sum(StockMovement.change), 0)).filter(
        StockMovement.order_id == order_id,
        StockMovement.product_id == product_id,
        StockMovement.reason.in_((REASON_ORDER, REASON_RESTORE)),
        StockMovement.variant_size == (variant.size if variant else None),
        StockMovement.variant_color == (variant.color if variant else None),
    ).scalar()
    return max(0, -int(net or 0))
