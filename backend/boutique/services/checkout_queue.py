# Overview: Durable checkout queue that turns order lines into stock reservations.

"""
Checkout Queue

STATE MACHINE (per item):
    pending -> processing -> completed
                          -> failed      (error captured, retry_count + 1)

Checkout callers enqueue one item per order line and return immediately; the
reservation outcome is observed through the item status (get_item / the
checkout feed). A drain pass claims pending items oldest first and reserves
stock for each through the stock ledger.

CONCURRENCY:
- Enqueue needs no coordination; it is a plain insert.
- Within one process only one drain pass runs at a time (non-blocking lock).
- Across processes an item is claimed with a conditional UPDATE
  (WHERE status = 'pending'), so each item is reserved at most once. The stock
  ledger transaction is what keeps the stock counter right regardless of
  which worker wins.
- completed / failed items are never touched by a drain pass.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import CheckoutQueueItem, Order, StockMovement
from ..records import VariantKey
from ..time_utils import utcnow
from . import stock_ledger
from .snapshot_cache import SnapshotCache

logger = logging.getLogger(__name__)


# =============================================================================
# QUEUE STATUS (CONSTANTS)
# =============================================================================

QUEUE_PENDING = "pending"
QUEUE_PROCESSING = "processing"
QUEUE_COMPLETED = "completed"
QUEUE_FAILED = "failed"

QUEUE_STATUSES = (QUEUE_PENDING, QUEUE_PROCESSING, QUEUE_COMPLETED, QUEUE_FAILED)


class QueueError(Exception):
    """Raised for invalid queue operations."""


class QueueItemNotFoundError(QueueError, LookupError):
    pass


@dataclass
class DrainReport:
    started: bool = True
    completed: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)
    skipped: list[int] = field(default_factory=list)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return len(self.completed) + len(self.failed)

    def to_dict(self) -> dict:
        return {
            "started": self.started,
            "processed": self.processed,
            "completed": list(self.completed),
            "failed": {str(k): v for k, v in self.failed.items()},
            "skipped": list(self.skipped),
            "errors": {str(k): v for k, v in self.errors.items()},
        }


def load_item_snapshot(item_id: int) -> dict | None:
    item = db.session.get(CheckoutQueueItem, item_id)
    return item.to_dict() if item else None


class CheckoutQueue:
    def __init__(self, feed: SnapshotCache | None = None):
        self.feed = feed
        self._drain_lock = threading.Lock()

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        order_id: str,
        user_id: str,
        product_id: str,
        quantity: int,
        variant: VariantKey | None = None,
        *,
        batch_id: str | None = None,
    ) -> int:
        """Durably record a pending reservation request and return its id."""
        item = self._new_item(order_id, user_id, product_id, quantity, variant, batch_id)
        db.session.commit()
        logger.info("queued item %s: order=%s product=%s qty=%d", item.id, order_id, product_id, quantity)
        self._publish(item)
        return item.id

    def enqueue_order(self, order_id: str) -> list[int]:
        """Queue one item per line of an existing order."""
        order = db.session.get(Order, order_id)
        if order is None:
            raise QueueError(f"Order {order_id} not found")
        if not order.lines:
            raise QueueError(f"Order {order_id} has no lines")

        try:
            items = [
                self._new_item(order.id, order.user_id, line.product_id, line.quantity, line.variant, line.batch_id)
                for line in order.lines
            ]
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info("queued %d items for order %s", len(items), order_id)
        for item in items:
            self._publish(item)
        return [item.id for item in items]

    def _new_item(self, order_id, user_id, product_id, quantity, variant, batch_id) -> CheckoutQueueItem:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise QueueError("quantity must be a positive integer")
        item = CheckoutQueueItem(
            order_id=order_id,
            user_id=user_id,
            product_id=product_id,
            batch_id=batch_id,
            quantity=quantity,
            variant_size=variant.size if variant else None,
            variant_color=variant.color if variant else None,
            status=QUEUE_PENDING,
            retry_count=0,
            created_at=utcnow(),
        )
        db.session.add(item)
        db.session.flush()
        return item

    # -------------------------------------------------------------------------
    # Drain
    # -------------------------------------------------------------------------

    def drain(self, limit: int | None = None) -> DrainReport:
        """
        Process every pending item (oldest first) once.

        Returns DrainReport(started=False) if another pass is already running
        in this process.
        """
        if not self._drain_lock.acquire(blocking=False):
            logger.debug("drain already running; skipping")
            return DrainReport(started=False)

        report = DrainReport()
        try:
            q = db.session.query(CheckoutQueueItem.id).filter_by(status=QUEUE_PENDING).order_by(
                CheckoutQueueItem.created_at, CheckoutQueueItem.id
            )
            if limit is not None:
                q = q.limit(limit)
            pending_ids = [row.id for row in q.all()]
            db.session.commit()

            if pending_ids:
                logger.info("processing %d queue items", len(pending_ids))

            for item_id in pending_ids:
                try:
                    self._process(item_id, report)
                except Exception as exc:
                    # Left pending or processing; recover_stale_items picks up the latter.
                    db.session.rollback()
                    logger.exception("queue item %s could not be processed", item_id)
                    report.errors[item_id] = str(exc) or exc.__class__.__name__
        finally:
            self._drain_lock.release()

        logger.info(
            "drain finished: %d completed, %d failed, %d skipped, %d errors",
            len(report.completed), len(report.failed), len(report.skipped), len(report.errors),
        )
        return report

    def _claim(self, item_id: int) -> bool:
        claimed = db.session.query(CheckoutQueueItem).filter_by(
            id=item_id, status=QUEUE_PENDING
        ).update(
            {"status": QUEUE_PROCESSING, "processed_at": utcnow()},
            synchronize_session=False,
        )
        db.session.commit()
        return claimed == 1

    def _process(self, item_id: int, report: DrainReport) -> None:
        if not self._claim(item_id):
            report.skipped.append(item_id)
            return

        item = db.session.get(CheckoutQueueItem, item_id, populate_existing=True)
        self._publish(item)

        order = db.session.get(Order, item.order_id, populate_existing=True)
        if order is not None and order.status == "cancelled":
            message = f"Order {item.order_id} was cancelled before stock was reserved"
            logger.info("queue item %s failed: %s", item_id, message)
            self._finish(item_id, QUEUE_FAILED, message)
            report.failed[item_id] = message
            return

        try:
            new_stock = stock_ledger.reserve(
                item.batch_id,
                item.product_id,
                item.quantity,
                item.variant,
                order_id=item.order_id,
                queue_item_id=item.id,
            )
        except stock_ledger.InsufficientStockError as exc:
            logger.info("queue item %s failed: %s", item_id, exc)
            self._finish(item_id, QUEUE_FAILED, str(exc))
            report.failed[item_id] = str(exc)
            return
        except Exception as exc:
            # Any other failure ends this item only; the pass keeps going.
            logger.exception("queue item %s failed unexpectedly", item_id)
            self._finish(item_id, QUEUE_FAILED, str(exc) or exc.__class__.__name__)
            report.failed[item_id] = str(exc) or exc.__class__.__name__
            return

        self._finish(item_id, QUEUE_COMPLETED)
        report.completed.append(item_id)
        logger.info("queue item %s completed (new stock %d)", item_id, new_stock)

    def _finish(self, item_id: int, status: str, error: str | None = None) -> None:
        values = {"status": status, "processed_at": utcnow()}
        if status == QUEUE_FAILED:
            values["error"] = error
            values["retry_count"] = CheckoutQueueItem.retry_count + 1
        db.session.query(CheckoutQueueItem).filter_by(
            id=item_id, status=QUEUE_PROCESSING
        ).update(values, synchronize_session=False)
        db.session.commit()
        self._publish(db.session.get(CheckoutQueueItem, item_id, populate_existing=True))

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    def retry_item(self, item_id: int) -> CheckoutQueueItem:
        """Explicit retry: move a failed item back to pending. retry_count is kept."""
        item = self.get_item(item_id)
        if item.status != QUEUE_FAILED:
            raise QueueError(f"Only failed items can be retried (item {item_id} is {item.status})")

        moved = db.session.query(CheckoutQueueItem).filter_by(
            id=item_id, status=QUEUE_FAILED
        ).update(
            {"status": QUEUE_PENDING, "error": None, "processed_at": None},
            synchronize_session=False,
        )
        db.session.commit()
        if moved != 1:
            raise QueueError(f"Item {item_id} changed state while retrying")

        item = db.session.get(CheckoutQueueItem, item_id, populate_existing=True)
        logger.info("queue item %s re-queued (retry_count=%d)", item_id, item.retry_count)
        self._publish(item)
        return item

    def recover_stale_items(self, now: datetime | None = None) -> dict[int, str]:
        """
        Resolve items left in ``processing`` by a worker that died mid-item.

        The stock movement log tells whether the reservation committed: if it
        did the item is completed, otherwise it goes back to pending.
        """
        now = now or utcnow()
        max_age = current_app.config.get("QUEUE_STALE_PROCESSING_SECONDS", 300)
        cutoff = now - timedelta(seconds=max_age)

        stale = db.session.query(CheckoutQueueItem).filter(
            CheckoutQueueItem.status == QUEUE_PROCESSING,
            CheckoutQueueItem.processed_at < cutoff,
        ).all()

        resolved: dict[int, str] = {}
        for item in stale:
            applied = db.session.query(StockMovement.id).filter_by(queue_item_id=item.id).first() is not None
            target = QUEUE_COMPLETED if applied else QUEUE_PENDING
            moved = db.session.query(CheckoutQueueItem).filter_by(
                id=item.id, status=QUEUE_PROCESSING
            ).update(
                {"status": target, "processed_at": now if applied else None},
                synchronize_session=False,
            )
            if moved == 1:
                resolved[item.id] = target
        db.session.commit()

        for item_id, target in resolved.items():
            logger.warning("recovered stale queue item %s -> %s", item_id, target)
            self._publish(db.session.get(CheckoutQueueItem, item_id, populate_existing=True))
        return resolved

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_item(self, item_id: int) -> CheckoutQueueItem:
        item = db.session.get(CheckoutQueueItem, item_id, populate_existing=True)
        if item is None:
            raise QueueItemNotFoundError(f"Queue item {item_id} not found")
        return item

    def list_items(self, status: str | None = None, limit: int = 100) -> list[CheckoutQueueItem]:
        q = db.session.query(CheckoutQueueItem)
        if status is not None:
            if status not in QUEUE_STATUSES:
                raise QueueError(f"Invalid status: {status}")
            q = q.filter_by(status=status)
        return q.order_by(CheckoutQueueItem.created_at, CheckoutQueueItem.id).limit(limit).all()

    def stats(self) -> dict[str, int]:
        rows = db.session.query(CheckoutQueueItem.status, func.count(CheckoutQueueItem.id)).group_by(
            CheckoutQueueItem.status
        ).all()
        counts = {status: 0 for status in QUEUE_STATUSES}
        counts.update({status: int(n) for status, n in rows})
        return counts

    def order_reservation_report(self, order_id: str) -> dict:
        """Per-line reservation outcome for one order."""
        items = db.session.query(CheckoutQueueItem).filter_by(order_id=order_id).order_by(
            CheckoutQueueItem.id
        ).all()
        if not items:
            raise QueueItemNotFoundError(f"No queue items for order {order_id}")

        statuses = {item.status for item in items}
        if QUEUE_FAILED in statuses:
            overall = QUEUE_FAILED
        elif statuses == {QUEUE_COMPLETED}:
            overall = QUEUE_COMPLETED
        else:
            overall = QUEUE_PENDING

        return {
            "order_id": order_id,
            "status": overall,
            "lines": [item.to_dict() for item in items],
            "failed_lines": [
                {"item_id": item.id, "product_id": item.product_id, "error": item.error}
                for item in items
                if item.status == QUEUE_FAILED
            ],
        }

    def _publish(self, item: CheckoutQueueItem | None) -> None:
        if self.feed is not None and item is not None:
            self.feed.publish(item.id, item.to_dict())


def get_checkout_queue() -> CheckoutQueue:
    """The queue instance bound to the current app."""
    return current_app.extensions["checkout_queue"]
