from __future__ import annotations

from ..extensions import db
from ..records import load_products
from ..time_utils import to_utc_z


class ProductBatch(db.Model):
    """
    One storage document holding many product records.

    Products are packed into a small number of large batches to amortize
    per-document read/write cost. The JSON ``products`` list is mutated only
    through batch_store.write_batch, which relies on ``version_id`` for
    optimistic concurrency: a write commits only if nobody else committed
    since it was read.

    INVARIANT: product ids are disjoint across batches.
    """
    __tablename__ = "product_batches"

    id = db.Column(db.String(64), primary_key=True)
    products = db.Column(db.JSON, nullable=False, default=list)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<ProductBatch id={self.id!r} products={len(self.products or [])} version={self.version_id}>"

    def product_ids(self) -> list[str]:
        return [str(p.get("id")) for p in (self.products or [])]

    def to_dict(self, include_products: bool = True) -> dict:
        data = {
            "id": self.id,
            "product_count": len(self.products or []),
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_products:
            data["products"] = [p.to_dict() for p in load_products(self.products)]
        return data


class StockMovement(db.Model):
    """
    Append-only log of every applied stock change.

    Written in the same transaction as the batch update it describes, so a
    movement row exists if and only if the change was committed.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    batch_id = db.Column(db.String(64), nullable=False, index=True)
    product_id = db.Column(db.String(64), nullable=False)

    variant_size = db.Column(db.String(32), nullable=True)
    variant_color = db.Column(db.String(64), nullable=True)

    # order | restore | adjustment
    reason = db.Column(db.String(16), nullable=False, index=True)

    change = db.Column(db.Integer, nullable=False)
    previous_stock = db.Column(db.Integer, nullable=False)
    new_stock = db.Column(db.Integer, nullable=False)

    order_id = db.Column(db.String(64), nullable=True, index=True)
    queue_item_id = db.Column(db.Integer, nullable=True, index=True)
    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "product_id": self.product_id,
            "variant_size": self.variant_size,
            "variant_color": self.variant_color,
            "reason": self.reason,
            "change": self.change,
            "previous_stock": self.previous_stock,
            "new_stock": self.new_stock,
            "order_id": self.order_id,
            "queue_item_id": self.queue_item_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
