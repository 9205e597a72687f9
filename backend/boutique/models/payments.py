from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class PaymentGroup(db.Model):
    """
    Orders bundled for a single bank transfer.

    The transfer is identified by ``exact_payment_amount`` which is the sum of
    the member orders plus a two digit code. ``order_ids``, ``original_total``,
    ``unique_payment_code`` and ``exact_payment_amount`` never change after
    creation. paid / cancelled / expired are terminal.
    """
    __tablename__ = "payment_groups"
    __table_args__ = (
        db.Index("ix_payment_groups_amount_status", "exact_payment_amount", "status"),
        db.Index("ix_payment_groups_user_status", "user_id", "status"),
    )

    id = db.Column(db.String(64), primary_key=True)

    user_id = db.Column(db.String(64), nullable=False)
    user_name = db.Column(db.String(255), nullable=True)
    user_email = db.Column(db.String(255), nullable=True)

    order_ids = db.Column(db.JSON, nullable=False)
    original_total = db.Column(db.Integer, nullable=False)
    unique_payment_code = db.Column(db.Integer, nullable=False)
    exact_payment_amount = db.Column(db.Integer, nullable=False)

    # auto | manual | NULL (user has not chosen yet)
    verification_mode = db.Column(db.String(16), nullable=True)
    original_mode = db.Column(db.String(16), nullable=True)

    # pending_selection | pending | paid | cancelled | expired
    status = db.Column(db.String(32), nullable=False, default="pending")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    mode_switched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<PaymentGroup id={self.id!r} amount={self.exact_payment_amount} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "user_email": self.user_email,
            "order_ids": list(self.order_ids or []),
            "original_total": self.original_total,
            "unique_payment_code": self.unique_payment_code,
            "exact_payment_amount": self.exact_payment_amount,
            "verification_mode": self.verification_mode,
            "original_mode": self.original_mode,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at) if self.updated_at else None,
            "expires_at": to_utc_z(self.expires_at),
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "mode_switched_at": to_utc_z(self.mode_switched_at) if self.mode_switched_at else None,
            "version_id": self.version_id,
        }
