# backend/boutique/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///boutique.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Batch sizing (soft caps, not enforced by storage)
    BATCH_SOFT_CAPACITY = _env_int("BATCH_SOFT_CAPACITY", 250)
    BATCH_MAX_CAPACITY = _env_int("BATCH_MAX_CAPACITY", 300)

    # Optimistic transaction retry budget for batch writes
    BATCH_TXN_MAX_ATTEMPTS = _env_int("BATCH_TXN_MAX_ATTEMPTS", 5)
    BATCH_TXN_BACKOFF_SECONDS = _env_float("BATCH_TXN_BACKOFF_SECONDS", 0.05)

    PAYMENT_GROUP_TTL_HOURS = _env_int("PAYMENT_GROUP_TTL_HOURS", 48)
    # Sender-name confidence (0-100) needed before a transfer settles a group unattended
    AUTO_CONFIRM_THRESHOLD = _env_int("AUTO_CONFIRM_THRESHOLD", 85)

    ORDER_EXPIRY_WARNING_MINUTES = _env_int("ORDER_EXPIRY_WARNING_MINUTES", 15)
    ORDER_EXPIRY_POLL_SECONDS = _env_int("ORDER_EXPIRY_POLL_SECONDS", 30)
    CUSTOMER_PAYMENT_WINDOW_HOURS = _env_int("CUSTOMER_PAYMENT_WINDOW_HOURS", 6)
    RESELLER_PAYMENT_WINDOW_HOURS = _env_int("RESELLER_PAYMENT_WINDOW_HOURS", 24)

    # A queue item stuck in "processing" longer than this is considered abandoned
    QUEUE_STALE_PROCESSING_SECONDS = _env_int("QUEUE_STALE_PROCESSING_SECONDS", 300)
