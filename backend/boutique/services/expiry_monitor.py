# Overview: Periodic scan that warns about and cancels unpaid orders past their deadline.

"""
Order Expiry Monitor

Each poll looks at pending orders that have a deadline:
- deadline passed: cancel the order (stock is restored by order_service)
- deadline within the warning window: notify once per order
Orders awaiting verification are not pending and therefore never expire here;
uploading payment proof stops the clock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable

from flask import current_app

from ..extensions import db
from ..models import Order
from ..time_utils import utcnow
from . import order_service

logger = logging.getLogger(__name__)

EXPIRY_REASON = "payment deadline passed"

Notifier = Callable[[Order, timedelta], None]


@dataclass
class ExpiryReport:
    checked: int = 0
    cancelled: list[str] = field(default_factory=list)
    warned: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "cancelled": list(self.cancelled),
            "warned": list(self.warned),
            "errors": dict(self.errors),
        }


def log_notifier(order: Order, remaining: timedelta) -> None:
    minutes = max(0, int(remaining.total_seconds() // 60))
    logger.info("order %s expires in %d minutes", order.id, minutes)


class OrderExpiryMonitor:
    def __init__(
        self,
        notifier: Notifier | None = None,
        *,
        user_id: str | None = None,
        warning_window: timedelta | None = None,
    ):
        self.notifier = notifier or log_notifier
        self.user_id = user_id
        self.warning_window = warning_window

    def _window(self) -> timedelta:
        if self.warning_window is not None:
            return self.warning_window
        return timedelta(minutes=current_app.config.get("ORDER_EXPIRY_WARNING_MINUTES", 15))

    def check_once(self, now: datetime | None = None) -> ExpiryReport:
        now = now or utcnow()
        window = self._window()
        report = ExpiryReport()

        for order in order_service.pending_orders_with_deadline(self.user_id):
            report.checked += 1
            try:
                self._check_order(order, now, window, report)
            except Exception as exc:
                # One broken order must not hold back the rest of the poll.
                db.session.rollback()
                logger.exception("expiry check for order %s failed", order.id)
                report.errors[order.id] = str(exc) or exc.__class__.__name__

        if report.cancelled or report.warned or report.errors:
            logger.info(
                "expiry check: %d checked, %d cancelled, %d warned, %d errors",
                report.checked, len(report.cancelled), len(report.warned), len(report.errors),
            )
        return report

    def _check_order(self, order: Order, now: datetime, window: timedelta, report: ExpiryReport) -> None:
        remaining = order.expires_at - now

        if remaining <= timedelta(0):
            try:
                result = order_service.cancel_order(order.id, reason=EXPIRY_REASON)
            except order_service.OrderTransitionError as exc:
                # Paid or otherwise moved on between the scan and the cancel.
                logger.info("order %s not expired: %s", order.id, exc)
                return
            if not result.already_cancelled:
                report.cancelled.append(order.id)
            return

        if remaining <= window and not order.expiry_notified:
            if order_service.mark_expiry_notified(order.id):
                self.notifier(order, remaining)
                report.warned.append(order.id)

    def run(
        self,
        interval_seconds: float | None = None,
        stop_event: threading.Event | None = None,
        max_polls: int | None = None,
    ) -> int:
        """
        Poll until ``stop_event`` is set or ``max_polls`` is reached. Returns polls made.

        A poll that fails is logged and counted; the next one runs on schedule.
        """
        if interval_seconds is None:
            interval_seconds = current_app.config.get("ORDER_EXPIRY_POLL_SECONDS", 30)
        stop_event = stop_event or threading.Event()

        polls = 0
        while not stop_event.is_set():
            try:
                self.check_once()
            except Exception:
                db.session.rollback()
                logger.exception("expiry poll failed")
            polls += 1
            if max_polls is not None and polls >= max_polls:
                break
            stop_event.wait(interval_seconds)
        return polls
