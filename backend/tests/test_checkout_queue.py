# Overview: Pytest coverage for the checkout queue lifecycle and drain behavior.

from datetime import timedelta

import pytest

from boutique.extensions import db
from boutique.models import CheckoutQueueItem
from boutique.records import VariantKey
from boutique.services import batch_store, stock_ledger
from boutique.services.checkout_queue import (
    QUEUE_COMPLETED,
    QUEUE_FAILED,
    QUEUE_PENDING,
    QUEUE_PROCESSING,
    CheckoutQueue,
    QueueError,
    QueueItemNotFoundError,
    get_checkout_queue,
)
from boutique.services.snapshot_cache import SnapshotCache
from boutique.time_utils import utcnow


@pytest.fixture
def queue(db_session):
    return CheckoutQueue()


def _stock(product_id="P1"):
    return stock_ledger.get_stock(product_id)


class TestEnqueue:
    def test_enqueue_is_pending_and_touches_no_stock(self, queue, stocked_batch):
        item_id = queue.enqueue("ORD-1", "u-1", "P1", 2)
        item = queue.get_item(item_id)
        assert item.status == QUEUE_PENDING
        assert item.retry_count == 0
        assert _stock() == 5

    def test_enqueue_rejects_bad_quantity(self, queue, stocked_batch):
        with pytest.raises(QueueError):
            queue.enqueue("ORD-1", "u-1", "P1", 0)

    def test_enqueue_order_lines(self, queue, stocked_batch, order_factory):
        order_factory("ORD-1", lines=[
            {"product_id": "P1", "quantity": 1, "batch_id": "batch_1"},
            {"product_id": "V1", "quantity": 1, "size": "M", "color": "Black"},
        ])
        item_ids = queue.enqueue_order("ORD-1")
        assert len(item_ids) == 2
        assert queue.get_item(item_ids[1]).variant == VariantKey("M", "Black")

    def test_enqueue_order_unknown(self, queue):
        with pytest.raises(QueueError):
            queue.enqueue_order("ORD-404")

    def test_get_item_unknown(self, queue):
        with pytest.raises(QueueItemNotFoundError):
            queue.get_item(999)


class TestDrain:
    def test_fifo_until_sold_out(self, queue, stocked_batch):
        """Stock 5, three requests of 2: first two complete, third fails, 1 left."""
        ids = [queue.enqueue(f"ORD-{n}", "u-1", "P1", 2) for n in range(3)]

        report = queue.drain()

        assert report.completed == ids[:2]
        assert list(report.failed) == [ids[2]]
        assert _stock() == 1
        failed = queue.get_item(ids[2])
        assert failed.status == QUEUE_FAILED
        assert "Available: 1, Requested: 2" in failed.error
        assert failed.retry_count == 1

    def test_one_bad_item_does_not_stop_the_pass(self, queue, stocked_batch):
        bad = queue.enqueue("ORD-1", "u-1", "P404", 1)
        good = queue.enqueue("ORD-2", "u-1", "P1", 1)

        report = queue.drain()

        assert bad in report.failed
        assert report.completed == [good]
        assert queue.get_item(good).status == QUEUE_COMPLETED

    def test_database_error_on_one_item_does_not_stop_the_pass(self, queue, stocked_batch, monkeypatch):
        from sqlalchemy.exc import OperationalError

        first = queue.enqueue("ORD-1", "u-1", "P1", 1)
        second = queue.enqueue("ORD-2", "u-1", "P1", 1)
        real_claim = queue._claim

        def _claim(item_id):
            if item_id == first:
                raise OperationalError("UPDATE checkout_queue_items", {}, Exception("database is locked"))
            return real_claim(item_id)

        monkeypatch.setattr(queue, "_claim", _claim)
        report = queue.drain()

        assert first in report.errors
        assert report.completed == [second]
        assert queue.get_item(first).status == QUEUE_PENDING
        assert queue.get_item(second).status == QUEUE_COMPLETED
        assert _stock() == 4

    def test_terminal_items_are_never_reprocessed(self, queue, stocked_batch):
        done = queue.enqueue("ORD-1", "u-1", "P1", 5)
        failed = queue.enqueue("ORD-2", "u-1", "P1", 1)
        queue.drain()

        batch_store.update_product("batch_1", "P1", lambda p: p.apply_delta(10))
        report = queue.drain()

        assert report.processed == 0
        assert queue.get_item(done).status == QUEUE_COMPLETED
        assert queue.get_item(failed).status == QUEUE_FAILED
        assert _stock() == 10

    def test_drain_limit(self, queue, stocked_batch):
        for n in range(3):
            queue.enqueue(f"ORD-{n}", "u-1", "P1", 1)
        assert queue.drain(limit=2).processed == 2
        assert queue.stats()[QUEUE_PENDING] == 1

    def test_single_flight(self, queue, stocked_batch):
        queue.enqueue("ORD-1", "u-1", "P1", 1)
        assert queue._drain_lock.acquire(blocking=False)
        try:
            assert queue.is_draining
            report = queue.drain()
        finally:
            queue._drain_lock.release()

        assert report.started is False
        assert queue.stats()[QUEUE_PENDING] == 1

    def test_item_claimed_elsewhere_is_skipped(self, queue, stocked_batch):
        item_id = queue.enqueue("ORD-1", "u-1", "P1", 1)
        db.session.query(CheckoutQueueItem).filter_by(id=item_id).update({"status": QUEUE_PROCESSING})
        db.session.commit()

        report = queue.drain()
        assert report.processed == 0

    def test_cancelled_order_is_not_reserved(self, queue, stocked_batch, order_factory):
        order_factory("ORD-1", status="cancelled", lines=[{"product_id": "P1", "quantity": 2}])
        item_id = queue.enqueue("ORD-1", "u-1", "P1", 2)

        report = queue.drain()

        assert item_id in report.failed
        assert _stock() == 5


class TestRecovery:
    def test_retry_failed_item(self, queue, stocked_batch):
        item_id = queue.enqueue("ORD-1", "u-1", "P1", 6)
        queue.drain()

        item = queue.retry_item(item_id)
        assert item.status == QUEUE_PENDING
        assert item.error is None
        assert item.retry_count == 1

        batch_store.update_product("batch_1", "P1", lambda p: p.apply_delta(1))
        queue.drain()
        assert queue.get_item(item_id).status == QUEUE_COMPLETED
        assert _stock() == 0

    def test_only_failed_items_can_be_retried(self, queue, stocked_batch):
        item_id = queue.enqueue("ORD-1", "u-1", "P1", 1)
        with pytest.raises(QueueError):
            queue.retry_item(item_id)

    def test_recover_stale_items(self, queue, stocked_batch):
        applied = queue.enqueue("ORD-1", "u-1", "P1", 1)
        lost = queue.enqueue("ORD-2", "u-1", "P1", 1)
        long_ago = utcnow() - timedelta(hours=1)
        db.session.query(CheckoutQueueItem).filter(CheckoutQueueItem.id.in_([applied, lost])).update(
            {"status": QUEUE_PROCESSING, "processed_at": long_ago}, synchronize_session=False
        )
        db.session.commit()
        # The worker died after committing the first reservation.
        stock_ledger.reserve("batch_1", "P1", 1, order_id="ORD-1", queue_item_id=applied)

        resolved = queue.recover_stale_items()

        assert resolved == {applied: QUEUE_COMPLETED, lost: QUEUE_PENDING}
        queue.drain()
        assert _stock() == 3

    def test_recent_processing_items_are_left_alone(self, queue, stocked_batch):
        item_id = queue.enqueue("ORD-1", "u-1", "P1", 1)
        db.session.query(CheckoutQueueItem).filter_by(id=item_id).update(
            {"status": QUEUE_PROCESSING, "processed_at": utcnow()}
        )
        db.session.commit()
        assert queue.recover_stale_items() == {}


class TestQueries:
    def test_order_reservation_report(self, queue, stocked_batch):
        queue.enqueue("ORD-1", "u-1", "P1", 1)
        queue.enqueue("ORD-1", "u-1", "V1", 2, VariantKey("M", "White"))
        queue.drain()

        report = queue.order_reservation_report("ORD-1")
        assert report["status"] == QUEUE_FAILED
        assert len(report["lines"]) == 2
        assert report["failed_lines"][0]["product_id"] == "V1"

        with pytest.raises(QueueItemNotFoundError):
            queue.order_reservation_report("ORD-404")

    def test_list_and_stats(self, queue, stocked_batch):
        queue.enqueue("ORD-1", "u-1", "P1", 1)
        queue.enqueue("ORD-2", "u-1", "P1", 9)
        queue.drain()

        assert queue.stats() == {QUEUE_PENDING: 0, QUEUE_PROCESSING: 0, QUEUE_COMPLETED: 1, QUEUE_FAILED: 1}
        assert [i.order_id for i in queue.list_items(QUEUE_FAILED)] == ["ORD-2"]
        with pytest.raises(QueueError):
            queue.list_items("bogus")


class TestFeed:
    def test_subscribers_see_status_transitions(self, db_session, stocked_batch):
        from boutique.services.checkout_queue import load_item_snapshot

        feed = SnapshotCache(loader=load_item_snapshot)
        queue = CheckoutQueue(feed=feed)
        item_id = queue.enqueue("ORD-1", "u-1", "P1", 1)

        seen = []
        unsubscribe = feed.subscribe(item_id, lambda snap: seen.append(snap["status"]))
        queue.drain()
        unsubscribe()

        assert seen == [QUEUE_PENDING, QUEUE_PROCESSING, QUEUE_COMPLETED]
        assert feed.get(item_id) is None

    def test_app_has_a_shared_queue(self, app):
        assert get_checkout_queue() is app.extensions["checkout_queue"]
        assert get_checkout_queue().feed is app.extensions["checkout_feed"]
