from __future__ import annotations

from ..extensions import db
from ..records import VariantKey
from ..time_utils import to_utc_z


class Order(db.Model):
    """
    Customer order.

    Orders are created by the checkout flow outside this package; the stock
    core only moves ``status`` and the payment/expiry fields. Field updates
    from different actors are independent (last write wins per field), so the
    row deliberately carries no optimistic version column. Contested
    transitions (cancellation) use conditional UPDATEs instead.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_status_expires", "status", "expires_at"),
    )

    id = db.Column(db.String(64), primary_key=True)
    user_id = db.Column(db.String(64), nullable=False, index=True)

    # customer | reseller
    customer_role = db.Column(db.String(16), nullable=False, default="customer")

    # pending | awaiting_verification | paid | processing | shipped | delivered | cancelled
    status = db.Column(db.String(32), nullable=False, default="pending", index=True)

    final_total = db.Column(db.Integer, nullable=False, default=0)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    expiry_notified = db.Column(db.Boolean, nullable=False, default=False)

    # Non-owning link to a payment group plus cached amount
    payment_group_id = db.Column(db.String(64), nullable=True, index=True)
    group_payment_amount = db.Column(db.Integer, nullable=True)
    verification_mode = db.Column(db.String(16), nullable=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancellation_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    lines = db.relationship(
        "OrderLine",
        backref="order",
        lazy=True,
        order_by="OrderLine.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Order id={self.id!r} status={self.status} total={self.final_total}>"

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "user_id": self.user_id,
            "customer_role": self.customer_role,
            "status": self.status,
            "final_total": self.final_total,
            "expires_at": to_utc_z(self.expires_at) if self.expires_at else None,
            "expiry_notified": self.expiry_notified,
            "payment_group_id": self.payment_group_id,
            "group_payment_amount": self.group_payment_amount,
            "verification_mode": self.verification_mode,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "cancelled_at": to_utc_z(self.cancelled_at) if self.cancelled_at else None,
            "cancellation_reason": self.cancellation_reason,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    __tablename__ = "order_lines"
    __table_args__ = ({"sqlite_autoincrement": True},)

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(64), db.ForeignKey("orders.id"), nullable=False, index=True)

    product_id = db.Column(db.String(64), nullable=False)
    batch_id = db.Column(db.String(64), nullable=True)
    quantity = db.Column(db.Integer, nullable=False)
    variant_size = db.Column(db.String(32), nullable=True)
    variant_color = db.Column(db.String(64), nullable=True)

    @property
    def variant(self) -> VariantKey | None:
        if self.variant_size and self.variant_color:
            return VariantKey(size=self.variant_size, color=self.variant_color)
        return None

    def to_dict(self) -> dict:
        variant = self.variant
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "quantity": self.quantity,
            "variant": variant.to_dict() if variant else None,
        }
