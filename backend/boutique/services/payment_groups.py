# Overview: Payment groups that bundle orders behind one uniquely coded transfer amount.

"""
Payment Group Ledger

WHY: Customers pay several orders with one bank transfer. The transfer has no
reference field we can rely on, so each group gets a two digit code (10-99)
added to its total. The resulting exact amount identifies the group when the
transfer shows up on the statement.

STATE MACHINE:
    pending_selection <-> pending -> paid
    pending_selection | pending -> cancelled | expired

    pending_selection: user has not picked a verification mode yet
    pending:           waiting for the transfer
    paid / cancelled / expired: terminal

RULES:
- order_ids, original_total, unique_payment_code and exact_payment_amount are
  fixed at creation.
- A new group never takes an exact amount already held by another open group;
  the code is drawn among the free values.
- match_by_amount only resolves a single, unexpired pending group in auto
  mode. An ambiguous amount resolves to nothing and is left for manual review.
  get_group_by_amount is the admin lookup and ignores the mode.
- cancel_group does not touch member orders. Callers clear the order
  back-references themselves (order_service.unlink_orders_from_group).
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..models import Order, PaymentGroup
from ..time_utils import epoch_millis, utcnow
from .concurrency import run_in_transaction

logger = logging.getLogger(__name__)


# =============================================================================
# STATUS / MODE (CONSTANTS)
# =============================================================================

GROUP_PENDING_SELECTION = "pending_selection"
GROUP_PENDING = "pending"
GROUP_PAID = "paid"
GROUP_CANCELLED = "cancelled"
GROUP_EXPIRED = "expired"

OPEN_GROUP_STATUSES = (GROUP_PENDING_SELECTION, GROUP_PENDING)

MODE_AUTO = "auto"
MODE_MANUAL = "manual"
VALID_MODES = (MODE_AUTO, MODE_MANUAL)

CODE_MIN = 10
CODE_MAX = 99

# Orders that may still be bundled for payment
GROUPABLE_ORDER_STATUSES = ("pending",)


class PaymentGroupError(Exception):
    """Raised for payment group operation errors."""


class PaymentGroupNotFoundError(PaymentGroupError, LookupError):
    pass


class GroupMismatchError(PaymentGroupError):
    """An open group overlaps the selected orders but no longer matches them."""

    def __init__(self, group: PaymentGroup, message: str):
        super().__init__(message)
        self.group = group


# =============================================================================
# CODE / AMOUNT HELPERS
# =============================================================================

_rng = random.SystemRandom()


def generate_unique_payment_code(exclude: set[int] | frozenset[int] = frozenset()) -> int:
    """Uniformly random code in [10, 99], skipping ``exclude``."""
    candidates = [code for code in range(CODE_MIN, CODE_MAX + 1) if code not in exclude]
    if not candidates:
        raise PaymentGroupError("No free payment code left for this amount")
    return _rng.choice(candidates)


def calculate_exact_amount(original_total: int, code: int) -> int:
    return original_total + code


def format_amount_with_code(exact_amount: int) -> dict:
    """Split an amount for display so the code (last two digits) can be highlighted."""
    digits = str(exact_amount)
    return {
        "total": f"{exact_amount:,}".replace(",", "."),
        "base_amount": digits[:-2],
        "code": digits[-2:],
    }


# =============================================================================
# CREATION
# =============================================================================

def _taken_codes(original_total: int) -> set[int]:
    rows = db.session.query(PaymentGroup.exact_payment_amount).filter(
        PaymentGroup.status.in_(OPEN_GROUP_STATUSES),
        PaymentGroup.exact_payment_amount.between(original_total + CODE_MIN, original_total + CODE_MAX),
    ).all()
    return {row.exact_payment_amount - original_total for row in rows}


def _new_group_id(now: datetime) -> str:
    stamp = epoch_millis(now)
    while db.session.get(PaymentGroup, f"PG{stamp}") is not None:
        stamp += 1
    return f"PG{stamp}"


def create_group(
    *,
    user_id: str,
    order_ids: list[str],
    original_total: int | None = None,
    verification_mode: str | None = None,
    user_name: str | None = None,
    user_email: str | None = None,
    now: datetime | None = None,
) -> PaymentGroup:
    """
    Bundle pending orders of one user into a payment group.

    original_total is optional; when given it must equal the sum of the
    orders' final totals as stored right now.

    Raises:
        PaymentGroupError: empty selection, unknown/foreign/non-pending order,
            order already in an open group, total mismatch, invalid mode
    """
    now = now or utcnow()

    if verification_mode is not None and verification_mode not in VALID_MODES:
        raise PaymentGroupError(f"Invalid verification mode: {verification_mode}. Must be one of {VALID_MODES}")

    unique_ids = list(dict.fromkeys(order_ids or []))
    if not unique_ids:
        raise PaymentGroupError("A payment group needs at least one order")

    orders = db.session.query(Order).filter(Order.id.in_(unique_ids)).all()
    by_id = {order.id: order for order in orders}
    missing = [oid for oid in unique_ids if oid not in by_id]
    if missing:
        raise PaymentGroupError(f"Orders not found: {', '.join(missing)}")

    for order in orders:
        if order.user_id != user_id:
            raise PaymentGroupError(f"Order {order.id} does not belong to user {user_id}")
        if order.status not in GROUPABLE_ORDER_STATUSES:
            raise PaymentGroupError(f"Order {order.id} cannot be grouped with status {order.status}")

    for group in list_user_open_groups(user_id, now=now):
        overlap = set(group.order_ids or []) & set(unique_ids)
        if overlap:
            raise PaymentGroupError(
                f"Orders already in open payment group {group.id}: {', '.join(sorted(overlap))}"
            )

    total = sum(by_id[oid].final_total for oid in unique_ids)
    if original_total is not None and original_total != total:
        raise PaymentGroupError(f"original_total {original_total} does not match order totals {total}")

    code = generate_unique_payment_code(_taken_codes(total))
    ttl_hours = current_app.config.get("PAYMENT_GROUP_TTL_HOURS", 48)

    group = PaymentGroup(
        id=_new_group_id(now),
        user_id=user_id,
        user_name=user_name,
        user_email=user_email,
        order_ids=unique_ids,
        original_total=total,
        unique_payment_code=code,
        exact_payment_amount=calculate_exact_amount(total, code),
        verification_mode=verification_mode,
        original_mode=verification_mode,
        status=GROUP_PENDING if verification_mode else GROUP_PENDING_SELECTION,
        created_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
    )
    db.session.add(group)
    db.session.commit()

    logger.info(
        "payment group %s created for user %s: %d orders, exact amount %d",
        group.id, user_id, len(unique_ids), group.exact_payment_amount,
    )
    return group


# =============================================================================
# QUERIES
# =============================================================================

def _is_stale(group: PaymentGroup, now: datetime) -> bool:
    return group.status in OPEN_GROUP_STATUSES and group.expires_at <= now


def get_group(group_id: str, now: datetime | None = None) -> PaymentGroup | None:
    """Fetch a group; an open group past its deadline is expired on the way out."""
    group = db.session.get(PaymentGroup, group_id, populate_existing=True)
    if group is None:
        return None
    now = now or utcnow()
    if _is_stale(group, now):
        try:
            group = _expire(group_id, now)
        except PaymentGroupError:
            # Somebody else moved it to a terminal state first.
            group = db.session.get(PaymentGroup, group_id, populate_existing=True)
    return group


def require_group(group_id: str, now: datetime | None = None) -> PaymentGroup:
    group = get_group(group_id, now=now)
    if group is None:
        raise PaymentGroupNotFoundError(f"Payment group {group_id} not found")
    return group


def _pending_by_amount(exact_amount: int, now: datetime, mode: str | None = None) -> list[PaymentGroup]:
    q = db.session.query(PaymentGroup).filter(
        PaymentGroup.exact_payment_amount == exact_amount,
        PaymentGroup.status == GROUP_PENDING,
        PaymentGroup.expires_at > now,
    )
    if mode is not None:
        q = q.filter(PaymentGroup.verification_mode == mode)
    return q.order_by(PaymentGroup.created_at.desc(), PaymentGroup.id).all()


def match_by_amount(exact_amount: int, now: datetime | None = None) -> PaymentGroup | None:
    """
    Resolve a transfer amount to the single pending, unexpired auto-verified
    group holding it.

    Matching is on exact_payment_amount only. Groups in manual mode wait for an
    admin and are never returned. More than one candidate means the amount is
    ambiguous; nothing is returned so a human can decide.
    """
    candidates = _pending_by_amount(exact_amount, now or utcnow(), mode=MODE_AUTO)

    if not candidates:
        return None
    if len(candidates) > 1:
        logger.warning(
            "ambiguous transfer amount %d matches groups %s; leaving for manual review",
            exact_amount, ", ".join(g.id for g in candidates),
        )
        return None
    return candidates[0]


def get_group_by_amount(exact_amount: int, now: datetime | None = None) -> PaymentGroup | None:
    """Admin lookup: newest pending group for an amount, whatever its verification mode."""
    candidates = _pending_by_amount(exact_amount, now or utcnow())
    if len(candidates) > 1:
        logger.warning("amount %d is held by %d pending groups", exact_amount, len(candidates))
    return candidates[0] if candidates else None


def list_user_open_groups(user_id: str, now: datetime | None = None) -> list[PaymentGroup]:
    now = now or utcnow()
    return db.session.query(PaymentGroup).filter(
        PaymentGroup.user_id == user_id,
        PaymentGroup.status.in_(OPEN_GROUP_STATUSES),
        PaymentGroup.expires_at > now,
    ).order_by(PaymentGroup.created_at).all()


def find_reusable_group(
    user_id: str,
    order_ids: list[str],
    original_total: int,
    now: datetime | None = None,
) -> PaymentGroup | None:
    """
    Return the open group that exactly covers this selection, if any.

    Raises GroupMismatchError when an open group shares orders with the
    selection but its order set or total differs; the caller must cancel it
    explicitly before creating a new one.
    """
    wanted = set(order_ids)
    for group in list_user_open_groups(user_id, now=now):
        members = set(group.order_ids or [])
        if not members & wanted:
            continue
        if members == wanted and group.original_total == original_total:
            return group
        raise GroupMismatchError(
            group,
            f"Payment group {group.id} covers a different selection; cancel it before creating a new one",
        )
    return None


# =============================================================================
# MUTATIONS
# =============================================================================

def _mutate(group_id: str, allowed_from: tuple[str, ...], action: str, change) -> PaymentGroup:
    def _op():
        group = db.session.get(PaymentGroup, group_id, populate_existing=True)
        if group is None:
            raise PaymentGroupNotFoundError(f"Payment group {group_id} not found")
        if group.status not in allowed_from:
            raise PaymentGroupError(f"Cannot {action} payment group {group_id} with status {group.status}")
        change(group)
        group.updated_at = utcnow()
        db.session.commit()
        return group

    return run_in_transaction(_op)


def _expire(group_id: str, now: datetime) -> PaymentGroup:
    def _change(group: PaymentGroup) -> None:
        if group.expires_at > now:
            raise PaymentGroupError(f"Payment group {group_id} has not expired yet")
        group.status = GROUP_EXPIRED

    group = _mutate(group_id, OPEN_GROUP_STATUSES, "expire", _change)
    logger.info("payment group %s expired", group_id)
    return group


def update_group(group_id: str, *, verification_mode: str | None) -> PaymentGroup:
    """
    Switch verification mode.

    None puts the group back to pending_selection (user wants to choose again);
    'auto' or 'manual' selects a mode and makes the group pending.
    """
    if verification_mode is not None and verification_mode not in VALID_MODES:
        raise PaymentGroupError(f"Invalid verification mode: {verification_mode}. Must be one of {VALID_MODES}")

    def _change(group: PaymentGroup) -> None:
        now = utcnow()
        if group.expires_at <= now:
            raise PaymentGroupError(f"Payment group {group_id} has expired")
        if verification_mode is None:
            group.status = GROUP_PENDING_SELECTION
            group.verification_mode = None
        else:
            group.status = GROUP_PENDING
            group.verification_mode = verification_mode
            if group.original_mode is None:
                group.original_mode = verification_mode
        group.mode_switched_at = now

    group = _mutate(group_id, OPEN_GROUP_STATUSES, "switch mode of", _change)
    logger.info("payment group %s mode -> %s", group_id, verification_mode or GROUP_PENDING_SELECTION)
    return group


def cancel_group(group_id: str) -> PaymentGroup:
    def _change(group: PaymentGroup) -> None:
        group.status = GROUP_CANCELLED
        group.cancelled_at = utcnow()

    group = _mutate(group_id, OPEN_GROUP_STATUSES, "cancel", _change)
    logger.info("payment group %s cancelled", group_id)
    return group


def mark_group_as_paid(group_id: str) -> PaymentGroup:
    def _change(group: PaymentGroup) -> None:
        group.status = GROUP_PAID
        group.paid_at = utcnow()

    group = _mutate(group_id, OPEN_GROUP_STATUSES, "mark paid", _change)
    logger.info("payment group %s marked paid (%d)", group_id, group.exact_payment_amount)
    return group


def expire_stale_groups(now: datetime | None = None) -> list[str]:
    """Expire every open group whose deadline has passed. Returns the expired ids."""
    now = now or utcnow()
    stale_ids = [
        row.id
        for row in db.session.query(PaymentGroup.id).filter(
            PaymentGroup.status.in_(OPEN_GROUP_STATUSES),
            PaymentGroup.expires_at <= now,
        ).all()
    ]
    db.session.commit()

    expired = []
    for group_id in stale_ids:
        try:
            _expire(group_id, now)
        except PaymentGroupError as exc:
            logger.info("skipping expiry of %s: %s", group_id, exc)
            continue
        expired.append(group_id)
    return expired
