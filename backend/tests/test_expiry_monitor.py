# Overview: Pytest coverage for the unpaid order expiry monitor.

import threading
from datetime import timedelta

import pytest

from boutique.services import order_service, stock_ledger
from boutique.services.checkout_queue import CheckoutQueue
from boutique.services.expiry_monitor import OrderExpiryMonitor
from boutique.time_utils import utcnow


@pytest.fixture
def notices():
    return []


@pytest.fixture
def monitor(notices):
    return OrderExpiryMonitor(notifier=lambda order, remaining: notices.append((order.id, remaining)))


class TestCheckOnce:
    def test_overdue_order_is_cancelled_and_stock_restored(self, monitor, stocked_batch, order_factory):
        now = utcnow()
        order_factory("ORD-1", expires_at=now - timedelta(minutes=1), lines=[
            {"product_id": "P1", "quantity": 2, "batch_id": "batch_1"},
        ])
        queue = CheckoutQueue()
        queue.enqueue_order("ORD-1")
        queue.drain()
        assert stock_ledger.get_stock("P1") == 3

        report = monitor.check_once(now=now)

        assert report.cancelled == ["ORD-1"]
        order = order_service.get_order("ORD-1")
        assert order.status == "cancelled"
        assert order.cancellation_reason == "payment deadline passed"
        assert stock_ledger.get_stock("P1") == 5

    def test_deadline_exactly_now_expires(self, monitor, order_factory):
        now = utcnow()
        order_factory("ORD-1", expires_at=now)
        assert monitor.check_once(now=now).cancelled == ["ORD-1"]

    def test_near_deadline_warns_once(self, monitor, notices, order_factory):
        now = utcnow()
        order_factory("ORD-1", expires_at=now + timedelta(minutes=10))

        first = monitor.check_once(now=now)
        second = monitor.check_once(now=now + timedelta(minutes=1))

        assert first.warned == ["ORD-1"]
        assert second.warned == []
        assert notices == [("ORD-1", timedelta(minutes=10))]
        assert order_service.get_order("ORD-1").expiry_notified is True

    def test_far_deadline_is_left_alone(self, monitor, notices, order_factory):
        now = utcnow()
        order_factory("ORD-1", expires_at=now + timedelta(hours=5))
        report = monitor.check_once(now=now)
        assert report.checked == 1
        assert (report.cancelled, report.warned, notices) == ([], [], [])

    def test_only_pending_orders_with_deadline(self, monitor, order_factory):
        now = utcnow()
        order_factory("ORD-1", status="awaiting_verification", expires_at=now - timedelta(hours=1))
        order_factory("ORD-2", status="paid", expires_at=now - timedelta(hours=1))
        order_factory("ORD-3", expires_at=None)

        report = monitor.check_once(now=now)

        assert report.checked == 0
        assert order_service.get_order("ORD-1").status == "awaiting_verification"

    def test_user_filter(self, notices, order_factory):
        now = utcnow()
        order_factory("ORD-1", user_id="u-1", expires_at=now - timedelta(minutes=1))
        order_factory("ORD-2", user_id="u-2", expires_at=now - timedelta(minutes=1))

        report = OrderExpiryMonitor(user_id="u-2").check_once(now=now)

        assert report.cancelled == ["ORD-2"]
        assert order_service.get_order("ORD-1").status == "pending"

    def test_broken_notifier_is_reported(self, order_factory):
        def _explode(order, remaining):
            raise RuntimeError("mail server down")

        now = utcnow()
        order_factory("ORD-1", expires_at=now + timedelta(minutes=5))
        report = OrderExpiryMonitor(notifier=_explode).check_once(now=now)
        assert report.errors == {"ORD-1": "mail server down"}

    def test_failing_order_does_not_stop_the_poll(self, monitor, order_factory, monkeypatch):
        now = utcnow()
        order_factory("ORD-1", expires_at=now - timedelta(minutes=2))
        order_factory("ORD-2", expires_at=now - timedelta(minutes=1))
        real_cancel = order_service.cancel_order

        def _cancel(order_id, **kwargs):
            if order_id == "ORD-1":
                raise order_service.OrderNotFoundError(f"Order {order_id} not found")
            return real_cancel(order_id, **kwargs)

        monkeypatch.setattr(order_service, "cancel_order", _cancel)
        report = monitor.check_once(now=now)

        assert report.cancelled == ["ORD-2"]
        assert report.errors == {"ORD-1": "Order ORD-1 not found"}
        assert order_service.get_order("ORD-2").status == "cancelled"

    def test_custom_warning_window(self, notices, order_factory):
        now = utcnow()
        order_factory("ORD-1", expires_at=now + timedelta(minutes=50))
        monitor = OrderExpiryMonitor(
            notifier=lambda order, remaining: notices.append(order.id),
            warning_window=timedelta(hours=1),
        )
        assert monitor.check_once(now=now).warned == ["ORD-1"]


class TestRun:
    def test_max_polls(self, monitor, db_session):
        assert monitor.run(interval_seconds=0, max_polls=3) == 3

    def test_stop_event(self, monitor, db_session):
        stop = threading.Event()
        stop.set()
        assert monitor.run(interval_seconds=0, stop_event=stop) == 0

    def test_failed_poll_keeps_polling(self, monitor, db_session, monkeypatch):
        calls = []

        def _check_once(now=None):
            calls.append(now)
            if len(calls) == 1:
                raise RuntimeError("database is locked")

        monkeypatch.setattr(monitor, "check_once", _check_once)
        assert monitor.run(interval_seconds=0, max_polls=3) == 3
        assert len(calls) == 3
