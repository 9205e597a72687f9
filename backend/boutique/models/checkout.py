from __future__ import annotations

from ..extensions import db
from ..records import VariantKey
from ..time_utils import to_utc_z


class CheckoutQueueItem(db.Model):
    """
    Durable record of one pending stock decrement (one per order line).

    LIFECYCLE:
        pending -> processing -> completed | failed

    Transitions are one-directional. Completed and failed items are never
    touched by a drain pass again; only the explicit retry action moves a
    failed item back to pending. The queue worker is the only writer of
    status / processed_at / error.
    """
    __tablename__ = "checkout_queue_items"
    __table_args__ = (
        db.Index("ix_checkout_queue_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    order_id = db.Column(db.String(64), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(db.String(64), nullable=False)

    # Resolved by scanning batches when the caller does not know it
    batch_id = db.Column(db.String(64), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    variant_size = db.Column(db.String(32), nullable=True)
    variant_color = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def variant(self) -> VariantKey | None:
        if self.variant_size and self.variant_color:
            return VariantKey(size=self.variant_size, color=self.variant_color)
        return None

    def __repr__(self) -> str:
        return f"<CheckoutQueueItem id={self.id} order={self.order_id!r} product={self.product_id!r} status={self.status}>"

    def to_dict(self) -> dict:
        variant = self.variant
        return {
            "id": self.id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "variant": variant.to_dict() if variant else None,
            "status": self.status,
            "retry_count": self.retry_count,
            "error": self.error,
            "created_at": to_utc_z(self.created_at),
            "processed_at": to_utc_z(self.processed_at) if self.processed_at else None,
        }
