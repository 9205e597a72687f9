# Overview: Durable storage of product batches with atomic read-modify-write.

"""
BatchStore

Products live inside a handful of large batch rows. The only way product stock
may change is write_batch(): it re-reads the batch inside the transaction,
hands a private copy of the product list to a mutator, and commits guarded by
the batch's version_id. A concurrent commit makes the UPDATE match zero rows,
SQLAlchemy raises StaleDataError, and run_in_transaction replays the whole
read-apply-write cycle. No caching happens here.

The mutator runs inside the transaction: rows it adds to db.session (e.g. a
StockMovement) commit or roll back together with the batch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from flask import current_app
from sqlalchemy.orm.attributes import flag_modified

from ..extensions import db
from ..models import ProductBatch
from ..records import ProductRecord, dump_products, load_products
from ..time_utils import to_utc_z, utcnow
from .concurrency import run_in_transaction

logger = logging.getLogger(__name__)


class BatchNotFoundError(LookupError):
    def __init__(self, batch_id: str):
        super().__init__(f"Batch {batch_id} not found")
        self.batch_id = batch_id


class ProductNotInBatchError(LookupError):
    def __init__(self, product_id: str, batch_id: str | None = None):
        where = f"batch {batch_id}" if batch_id else "any batch"
        super().__init__(f"Product {product_id} not found in {where}")
        self.product_id = product_id
        self.batch_id = batch_id


class DuplicateProductError(ValueError):
    """A product id is already stored in another batch."""


@dataclass
class BatchSnapshot:
    batch_id: str
    products: list[ProductRecord]
    version_id: int
    updated_at: datetime | None

    def find(self, product_id: str) -> ProductRecord:
        for product in self.products:
            if product.id == product_id:
                return product
        raise ProductNotInBatchError(product_id, self.batch_id)

    def to_dict(self) -> dict:
        return {
            "id": self.batch_id,
            "version_id": self.version_id,
            "updated_at": to_utc_z(self.updated_at),
            "products": dump_products(self.products),
        }


Mutator = Callable[[list[ProductRecord]], list[ProductRecord]]


def _load(batch_id: str) -> ProductBatch:
    # populate_existing: never trust an identity-map copy read by an earlier call
    batch = db.session.get(ProductBatch, batch_id, populate_existing=True)
    if batch is None:
        raise BatchNotFoundError(batch_id)
    return batch


def _snapshot(batch: ProductBatch) -> BatchSnapshot:
    return BatchSnapshot(
        batch_id=batch.id,
        products=load_products(batch.products),
        version_id=batch.version_id,
        updated_at=batch.updated_at,
    )


def read_batch(batch_id: str) -> BatchSnapshot:
    return _snapshot(_load(batch_id))


def list_batches() -> list[ProductBatch]:
    return db.session.query(ProductBatch).order_by(ProductBatch.id).all()


def write_batch(batch_id: str, mutator: Mutator) -> BatchSnapshot:
    """
    Atomically replace the product list of a batch with ``mutator(products)``.

    The mutator receives fresh ProductRecord copies on every attempt and must
    return the complete list to persist. It may be called more than once, so
    it must not have side effects outside the session.

    Raises:
        BatchNotFoundError: batch row does not exist
        TransactionConflictError: retry budget exhausted under contention
        anything the mutator raises (after rollback)
    """
    def _op():
        batch = _load(batch_id)
        updated = mutator(load_products(batch.products))
        if updated is None:
            raise TypeError("batch mutator must return the updated product list")

        batch.products = dump_products(updated)
        flag_modified(batch, "products")
        batch.updated_at = utcnow()

        db.session.commit()
        return _snapshot(batch)

    return run_in_transaction(_op)


def update_product(
    batch_id: str,
    product_id: str,
    change: Callable[[ProductRecord], None],
) -> ProductRecord:
    """
    Apply ``change`` to one product of a batch inside write_batch and return
    the product as committed.
    """
    result: dict[str, ProductRecord] = {}

    def _mutate(products: list[ProductRecord]) -> list[ProductRecord]:
        for product in products:
            if product.id == product_id:
                change(product)
                result["product"] = product
                return products
        raise ProductNotInBatchError(product_id, batch_id)

    write_batch(batch_id, _mutate)
    return result["product"]


def locate_product(product_id: str) -> str:
    """Return the id of the batch holding ``product_id``."""
    for batch in list_batches():
        if product_id in batch.product_ids():
            return batch.id
    raise ProductNotInBatchError(product_id)


def find_product(product_id: str, batch_id: str | None = None) -> tuple[str, ProductRecord]:
    if batch_id is None:
        batch_id = locate_product(product_id)
    return batch_id, read_batch(batch_id).find(product_id)


def plan_batches(products: list[dict], capacity: int | None = None) -> list[list[dict]]:
    """Split a product list into chunks no larger than the batch soft capacity."""
    if capacity is None:
        capacity = current_app.config.get("BATCH_SOFT_CAPACITY", 250)
    if capacity <= 0:
        raise ValueError("capacity must be positive")
    return [products[i:i + capacity] for i in range(0, len(products), capacity)]


def create_batch(batch_id: str, products: list[dict]) -> ProductBatch:
    """
    Store a new batch. Used by ingestion tooling and tests; normal operation
    never creates or deletes batches.
    """
    records = load_products(products)

    ids = [p.id for p in records]
    if len(set(ids)) != len(ids):
        raise DuplicateProductError(f"batch {batch_id} lists the same product twice")

    if db.session.get(ProductBatch, batch_id) is not None:
        raise DuplicateProductError(f"batch {batch_id} already exists")

    wanted = set(ids)
    for other in list_batches():
        clash = wanted.intersection(other.product_ids())
        if clash:
            raise DuplicateProductError(
                f"products already stored in batch {other.id}: {', '.join(sorted(clash))}"
            )

    max_capacity = current_app.config.get("BATCH_MAX_CAPACITY", 300)
    if len(records) > max_capacity:
        logger.warning(
            "batch %s holds %d products (above soft maximum %d)", batch_id, len(records), max_capacity
        )

    now = utcnow()
    batch = ProductBatch(id=batch_id, products=dump_products(records), created_at=now, updated_at=now)
    db.session.add(batch)
    db.session.commit()
    logger.info("created batch %s with %d products", batch_id, len(records))
    return batch
