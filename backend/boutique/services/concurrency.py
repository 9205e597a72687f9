# Overview: Optimistic transaction helper shared by every service that mutates contested rows.

from __future__ import annotations

import logging
import time

from flask import current_app
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db

logger = logging.getLogger(__name__)


class TransactionConflictError(RuntimeError):
    """Raised when an optimistic transaction keeps conflicting past its retry budget."""


def run_in_transaction(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Run ``func`` as a read-modify-write transaction with automatic retry.

    ``func`` must do all of its reads inside the call and commit at the end.
    A conflicting commit from another writer surfaces as StaleDataError
    (version_id mismatch) or OperationalError (database locked); the session
    is rolled back, which expires every loaded object, and ``func`` is run
    again from the top so its checks observe the latest committed state.

    Any other exception rolls back and propagates unchanged.
    """
    if attempts is None:
        attempts = current_app.config.get("BATCH_TXN_MAX_ATTEMPTS", 5)
    if backoff_base is None:
        backoff_base = current_app.config.get("BATCH_TXN_BACKOFF_SECONDS", 0.05)

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise TransactionConflictError(
                    f"transaction still conflicting after {attempts} attempts"
                ) from exc
            logger.debug("transaction conflict (attempt %d/%d): %s", attempt + 1, attempts, exc)
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
