# Overview: Settles payment groups from incoming transfers or manual verification.

"""
Payment Reconciliation

An incoming transfer is matched on its exact amount, against auto-verified
groups only. A match marks the group paid first, then its member orders;
orders that stopped being payable in the meantime are reported back instead
of failing the settlement.

SENDER CHECK:
    name similarity >= 70%  -> confidence 100
    name similarity >= 50%  -> confidence 85
    otherwise               -> confidence 60
    no name on either side  -> confidence 85 (amount only)

Only a confidence at or above AUTO_CONFIRM_THRESHOLD settles the group; a
lower score leaves it pending for an admin.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..models import PaymentGroup
from . import order_service, payment_groups

logger = logging.getLogger(__name__)


@dataclass
class SettlementResult:
    group: PaymentGroup
    paid_order_ids: list[str] = field(default_factory=list)
    skipped_order_ids: list[str] = field(default_factory=list)
    settled: bool = True
    confidence: int | None = None
    reason: str | None = None

    def to_dict(self) -> dict:
        return {
            "group": self.group.to_dict(),
            "settled": self.settled,
            "confidence": self.confidence,
            "reason": self.reason,
            "paid_order_ids": list(self.paid_order_ids),
            "skipped_order_ids": list(self.skipped_order_ids),
        }


def _edit_distance(a: str, b: str) -> int:
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def name_similarity(first: str | None, second: str | None) -> float:
    """Case-insensitive similarity of two names in percent (100 = identical)."""
    a = (first or "").strip().lower()
    b = (second or "").strip().lower()
    if a == b:
        return 100.0
    longer, shorter = (a, b) if len(a) > len(b) else (b, a)
    return (len(longer) - _edit_distance(longer, shorter)) / len(longer) * 100


def score_transfer(group: PaymentGroup, sender_name: str | None) -> tuple[int, str]:
    """Confidence that a transfer of the group's exact amount came from its owner."""
    if not sender_name or not group.user_name:
        return 85, "Exact amount match; no sender name to compare"

    similarity = name_similarity(sender_name, group.user_name)
    if similarity >= 70:
        return 100, f"Exact amount match and name match ({round(similarity)}%)"
    if similarity >= 50:
        return 85, f"Exact amount match, name partially matches ({round(similarity)}%)"
    return 60, f"Exact amount match but sender {sender_name!r} differs from {group.user_name!r}"


def _settle(group: PaymentGroup) -> SettlementResult:
    group = payment_groups.mark_group_as_paid(group.id)
    paid, skipped = order_service.mark_orders_paid(list(group.order_ids or []))
    if skipped:
        logger.warning("payment group %s paid but orders %s were not payable", group.id, ", ".join(skipped))
    return SettlementResult(group=group, paid_order_ids=paid, skipped_order_ids=skipped)


def apply_transfer(
    amount: int,
    sender_name: str | None = None,
    now: datetime | None = None,
) -> SettlementResult | None:
    """
    Settle the auto-verified group whose exact amount equals ``amount``.

    Returns None when nothing matches. A match whose sender check scores below
    the auto-confirm threshold is returned with ``settled=False`` and the
    group left pending.
    """
    group = payment_groups.match_by_amount(amount, now=now)
    if group is None:
        logger.info("transfer of %d matched no payment group", amount)
        return None

    confidence, reason = score_transfer(group, sender_name)
    threshold = current_app.config.get("AUTO_CONFIRM_THRESHOLD", 85)
    if confidence < threshold:
        logger.warning(
            "transfer of %d for group %s left for review (confidence %d): %s",
            amount, group.id, confidence, reason,
        )
        return SettlementResult(group=group, settled=False, confidence=confidence, reason=reason)

    result = _settle(group)
    result.confidence = confidence
    result.reason = reason
    return result


def confirm_group_payment(group_id: str) -> SettlementResult:
    """Manual verification path: an admin confirmed the transfer for this group."""
    group = payment_groups.require_group(group_id)
    return _settle(group)


# =============================================================================
# GROUP LIFECYCLE WITH ORDER BACK-REFERENCES
# =============================================================================

def open_group_for_orders(
    *,
    user_id: str,
    order_ids: list[str],
    verification_mode: str | None = None,
    user_name: str | None = None,
    user_email: str | None = None,
) -> tuple[PaymentGroup, bool]:
    """
    Reuse the open group that covers exactly these orders, or create one.

    Returns (group, created). GroupMismatchError propagates when an open group
    overlaps the selection but differs from it.
    """
    orders = [order_service.get_order(oid) for oid in dict.fromkeys(order_ids)]
    total = sum(order.final_total for order in orders)

    group = payment_groups.find_reusable_group(user_id, [o.id for o in orders], total)
    if group is not None:
        if verification_mode is not None and group.verification_mode != verification_mode:
            group = payment_groups.update_group(group.id, verification_mode=verification_mode)
            order_service.link_orders_to_group(group)
        return group, False

    group = payment_groups.create_group(
        user_id=user_id,
        order_ids=[o.id for o in orders],
        original_total=total,
        verification_mode=verification_mode,
        user_name=user_name,
        user_email=user_email,
    )
    order_service.link_orders_to_group(group)
    return group, True


def cancel_and_release(group_id: str) -> PaymentGroup:
    group = payment_groups.cancel_group(group_id)
    order_service.unlink_orders_from_group(group)
    return group


def expire_and_release(now: datetime | None = None) -> list[str]:
    expired = payment_groups.expire_stale_groups(now=now)
    for group_id in expired:
        group = payment_groups.require_group(group_id)
        order_service.unlink_orders_from_group(group)
    return expired
