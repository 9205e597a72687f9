# Overview: Order status transitions, cancellation with stock restore, and payment links.

"""
Order Service

STATE MACHINE:
    pending -> awaiting_verification -> paid -> processing -> shipped -> delivered
    pending -> paid                          (automatic transfer match)
    awaiting_verification -> pending         (payment proof rejected)
    any non-terminal -> cancelled

    delivered and cancelled are terminal.

CANCELLATION:
- The status flip is a conditional UPDATE (WHERE status = <status we read>),
  so of two concurrent cancels exactly one goes on to restore stock.
- Restored units are capped by what the stock ledger shows as still reserved
  for the order (stock_ledger.outstanding_units). Lines whose reservation never
  happened (failed queue item) restore nothing.
- A line that cannot be restored is logged and reported; it does not undo the
  cancellation or stop the remaining lines.

PAYMENT DEADLINES:
    customer: CUSTOMER_PAYMENT_WINDOW_HOURS (6h) after creation
    reseller: RESELLER_PAYMENT_WINDOW_HOURS (24h) after creation
    pre-order only: no deadline
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import Order, OrderLine, PaymentGroup
from ..records import VariantKey
from ..time_utils import epoch_millis, utcnow
from . import stock_ledger
from .concurrency import TransactionConflictError

logger = logging.getLogger(__name__)


# =============================================================================
# ORDER STATUS (CONSTANTS)
# =============================================================================

ORDER_PENDING = "pending"
ORDER_AWAITING_VERIFICATION = "awaiting_verification"
ORDER_PAID = "paid"
ORDER_PROCESSING = "processing"
ORDER_SHIPPED = "shipped"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

ORDER_STATUSES = (
    ORDER_PENDING,
    ORDER_AWAITING_VERIFICATION,
    ORDER_PAID,
    ORDER_PROCESSING,
    ORDER_SHIPPED,
    ORDER_DELIVERED,
    ORDER_CANCELLED,
)

ORDER_TRANSITIONS = {
    ORDER_PENDING: {ORDER_AWAITING_VERIFICATION, ORDER_PAID, ORDER_CANCELLED},
    ORDER_AWAITING_VERIFICATION: {ORDER_PENDING, ORDER_PAID, ORDER_CANCELLED},
    ORDER_PAID: {ORDER_PROCESSING, ORDER_CANCELLED},
    ORDER_PROCESSING: {ORDER_SHIPPED, ORDER_CANCELLED},
    ORDER_SHIPPED: {ORDER_DELIVERED, ORDER_CANCELLED},
    ORDER_DELIVERED: set(),
    ORDER_CANCELLED: set(),
}

ROLE_CUSTOMER = "customer"
ROLE_RESELLER = "reseller"
CUSTOMER_ROLES = (ROLE_CUSTOMER, ROLE_RESELLER)

# Restore failures that are reported per line instead of aborting cancellation
RESTORE_ERRORS = (LookupError, ValueError, TransactionConflictError)


class OrderError(Exception):
    """Raised for invalid order operations."""


class OrderNotFoundError(OrderError, LookupError):
    pass


class OrderTransitionError(OrderError):
    pass


@dataclass
class CancellationResult:
    order: Order
    already_cancelled: bool = False
    restored: dict[int, int] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "already_cancelled": self.already_cancelled,
            "restored": {str(k): v for k, v in self.restored.items()},
            "skipped": list(self.skipped),
            "failed": {str(k): v for k, v in self.failed.items()},
        }


def validate_status(status: str) -> None:
    if status not in ORDER_STATUSES:
        raise OrderError(f"Invalid status '{status}'. Must be one of: {', '.join(ORDER_STATUSES)}")


def can_transition(from_status: str, to_status: str) -> bool:
    validate_status(from_status)
    validate_status(to_status)
    return to_status in ORDER_TRANSITIONS[from_status]


def get_order(order_id: str) -> Order:
    order = db.session.get(Order, order_id, populate_existing=True)
    if order is None:
        raise OrderNotFoundError(f"Order {order_id} not found")
    return order


def list_orders(*, status: str | None = None, user_id: str | None = None, limit: int = 100) -> list[Order]:
    q = db.session.query(Order)
    if status is not None:
        validate_status(status)
        q = q.filter(Order.status == status)
    if user_id is not None:
        q = q.filter(Order.user_id == user_id)
    return q.order_by(Order.created_at.desc(), Order.id).limit(limit).all()


# =============================================================================
# CREATION
# =============================================================================

@dataclass
class LineRequest:
    product_id: str
    quantity: int
    batch_id: str | None = None
    variant: VariantKey | None = None


def create_order(
    *,
    user_id: str,
    lines: list[LineRequest],
    final_total: int,
    customer_role: str = ROLE_CUSTOMER,
    preorder_only: bool = False,
    order_id: str | None = None,
    now: datetime | None = None,
) -> Order:
    """
    Record a pending order with its payment deadline.

    Stock is not touched here; the caller enqueues the lines on the checkout
    queue afterwards.
    """
    if customer_role not in CUSTOMER_ROLES:
        raise OrderError(f"Invalid customer role: {customer_role}")
    if not lines:
        raise OrderError("An order needs at least one line")
    if isinstance(final_total, bool) or not isinstance(final_total, int) or final_total < 0:
        raise OrderError("final_total must be a non-negative integer")
    for line in lines:
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            raise OrderError(f"Line for {line.product_id} needs a positive quantity")

    now = now or utcnow()
    order_id = order_id or f"ORD{epoch_millis(now)}"
    if db.session.get(Order, order_id) is not None:
        raise OrderError(f"Order {order_id} already exists")

    order = Order(
        id=order_id,
        user_id=user_id,
        customer_role=customer_role,
        status=ORDER_PENDING,
        final_total=final_total,
        expires_at=payment_deadline(customer_role, now, preorder_only),
        expiry_notified=False,
        created_at=now,
        updated_at=now,
    )
    order.lines = [
        OrderLine(
            product_id=line.product_id,
            batch_id=line.batch_id,
            quantity=line.quantity,
            variant_size=line.variant.size if line.variant else None,
            variant_color=line.variant.color if line.variant else None,
        )
        for line in lines
    ]
    db.session.add(order)
    db.session.commit()
    logger.info("order %s created for %s (%s), deadline %s", order.id, user_id, customer_role, order.expires_at)
    return order


# =============================================================================
# TRANSITIONS
# =============================================================================

def _claim_status(order: Order, new_status: str, values: dict) -> bool:
    """Move the order out of the status we read. False if someone else moved it first."""
    values = dict(values, status=new_status, updated_at=utcnow())
    moved = db.session.query(Order).filter(
        Order.id == order.id,
        Order.status == order.status,
    ).update(values, synchronize_session=False)
    db.session.commit()
    return moved == 1


def transition_order(order_id: str, new_status: str, *, reason: str | None = None) -> Order:
    """
    Move an order along the status machine.

    Cancellation is routed through cancel_order so stock is restored.

    Raises:
        OrderNotFoundError, OrderTransitionError
    """
    if new_status == ORDER_CANCELLED:
        return cancel_order(order_id, reason=reason).order

    order = get_order(order_id)
    if not can_transition(order.status, new_status):
        raise OrderTransitionError(f"Cannot transition order {order_id} from {order.status} to {new_status}")

    values = {}
    if new_status == ORDER_PAID:
        values["paid_at"] = utcnow()
    if not _claim_status(order, new_status, values):
        raise OrderTransitionError(f"Order {order_id} changed status concurrently")

    logger.info("order %s: %s -> %s", order_id, order.status, new_status)
    return get_order(order_id)


def cancel_order(order_id: str, *, reason: str | None = None) -> CancellationResult:
    """
    Cancel an order and give its reserved stock back.

    Cancelling an already cancelled order is a no-op that restores nothing.
    """
    order = get_order(order_id)
    if order.status == ORDER_CANCELLED:
        return CancellationResult(order=order, already_cancelled=True)
    if not can_transition(order.status, ORDER_CANCELLED):
        raise OrderTransitionError(f"Cannot cancel order {order_id} with status {order.status}")

    now = utcnow()
    claimed = _claim_status(order, ORDER_CANCELLED, {
        "cancelled_at": now,
        "cancellation_reason": reason,
    })
    order = get_order(order_id)
    if not claimed:
        if order.status == ORDER_CANCELLED:
            return CancellationResult(order=order, already_cancelled=True)
        raise OrderTransitionError(f"Order {order_id} changed status concurrently")

    result = CancellationResult(order=order)
    remaining: dict[tuple, int] = {}
    note = f"order cancelled: {reason}" if reason else "order cancelled"

    for line in order.lines:
        variant = line.variant
        key = (line.product_id, variant)
        if key not in remaining:
            remaining[key] = stock_ledger.outstanding_units(order.id, line.product_id, variant)
        units = min(line.quantity, remaining[key])
        if units <= 0:
            result.skipped.append(line.id)
            continue

        try:
            stock_ledger.restore(line.batch_id, line.product_id, units, variant, order_id=order.id, note=note)
        except RESTORE_ERRORS as exc:
            db.session.rollback()
            logger.warning("order %s: could not restore line %s (%s): %s", order.id, line.id, line.product_id, exc)
            result.failed[line.id] = str(exc)
            continue

        remaining[key] -= units
        result.restored[line.id] = units

    logger.info(
        "order %s cancelled (%s): %d lines restored, %d skipped, %d failed",
        order.id, reason or "no reason", len(result.restored), len(result.skipped), len(result.failed),
    )
    return result


# =============================================================================
# PAYMENT LINKS
# =============================================================================

def link_orders_to_group(group: PaymentGroup) -> None:
    """Record the group id and exact amount on each member order."""
    db.session.query(Order).filter(Order.id.in_(list(group.order_ids or []))).update(
        {
            "payment_group_id": group.id,
            "group_payment_amount": group.exact_payment_amount,
            "verification_mode": group.verification_mode,
            "updated_at": utcnow(),
        },
        synchronize_session=False,
    )
    db.session.commit()


def unlink_orders_from_group(group: PaymentGroup) -> int:
    """Clear back-references that still point at ``group``. Returns the number cleared."""
    cleared = db.session.query(Order).filter(Order.payment_group_id == group.id).update(
        {
            "payment_group_id": None,
            "group_payment_amount": None,
            "verification_mode": None,
            "updated_at": utcnow(),
        },
        synchronize_session=False,
    )
    db.session.commit()
    return cleared


def mark_orders_paid(order_ids: list[str]) -> tuple[list[str], list[str]]:
    """
    Mark each payable order paid.

    Orders that are no longer payable (cancelled meanwhile, already paid) are
    skipped with a warning. Returns (paid_ids, skipped_ids).
    """
    paid: list[str] = []
    skipped: list[str] = []
    for order_id in order_ids:
        order = db.session.get(Order, order_id, populate_existing=True)
        if order is None or not can_transition(order.status, ORDER_PAID):
            logger.warning(
                "order %s not marked paid (status %s)", order_id, order.status if order else "missing"
            )
            skipped.append(order_id)
            continue
        if _claim_status(order, ORDER_PAID, {"paid_at": utcnow()}):
            paid.append(order_id)
        else:
            skipped.append(order_id)
    return paid, skipped


# =============================================================================
# EXPIRY
# =============================================================================

def payment_deadline(customer_role: str, created_at: datetime, preorder_only: bool = False) -> datetime | None:
    """Deadline for an unpaid order, or None when it never expires."""
    if preorder_only:
        return None
    if customer_role == ROLE_RESELLER:
        hours = current_app.config.get("RESELLER_PAYMENT_WINDOW_HOURS", 24)
    else:
        hours = current_app.config.get("CUSTOMER_PAYMENT_WINDOW_HOURS", 6)
    return created_at + timedelta(hours=hours)


def pending_orders_with_deadline(user_id: str | None = None) -> list[Order]:
    """Unpaid orders that can still expire, soonest deadline first."""
    q = db.session.query(Order).filter(
        Order.status == ORDER_PENDING,
        Order.expires_at.isnot(None),
    )
    if user_id is not None:
        q = q.filter(Order.user_id == user_id)
    return q.order_by(Order.expires_at, Order.id).all()


def mark_expiry_notified(order_id: str) -> bool:
    """Set the warned flag once. False if it was already set."""
    flagged = db.session.query(Order).filter(
        Order.id == order_id,
        Order.expiry_notified.is_(False),
    ).update({"expiry_notified": True}, synchronize_session=False)
    db.session.commit()
    return flagged == 1
