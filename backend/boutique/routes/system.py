# backend/boutique/routes/system.py
"""
System health endpoint.

Reports database connectivity plus queue and payment group backlog, which is
what an operator looks at first when checkouts stop resolving.
"""

import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import PaymentGroup, ProductBatch
from ..services.checkout_queue import get_checkout_queue
from ..services.payment_groups import OPEN_GROUP_STATUSES
from ..time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        batch_count = db.session.query(ProductBatch).count()
        open_groups = db.session.query(PaymentGroup).filter(
            PaymentGroup.status.in_(OPEN_GROUP_STATUSES)
        ).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "batches": batch_count,
                "open_payment_groups": open_groups,
            },
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_queue_health() -> dict:
    start_time = time.time()
    try:
        queue = get_checkout_queue()
        counts = queue.stats()
        elapsed_ms = (time.time() - start_time) * 1000
        # A growing failed count is normal (sold out); a stuck processing count is not.
        status = "degraded" if counts["processing"] and not queue.is_draining else "healthy"
        return {
            "status": status,
            "latency_ms": round(elapsed_ms, 2),
            "details": dict(counts, draining=queue.is_draining),
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Queue health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Queue error",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: database or queue unreachable
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "checkout_queue": check_queue_health(),
    }

    statuses = [check["status"] for check in checks.values()]
    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": checks,
    }, http_status
