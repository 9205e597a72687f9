"""
Pytest fixtures for the boutique stock backend tests.

Provides test database setup, seed helpers, test client and CLI runner.
"""

from datetime import timedelta

import pytest

from boutique import create_app
from boutique.extensions import db
from boutique.models import Order, OrderLine
from boutique.services import batch_store
from boutique.time_utils import utcnow


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'BATCH_TXN_BACKOFF_SECONDS': 0.0,
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Create CLI runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def file_app(tmp_path):
    """
    Factory for an application backed by a temporary SQLite file.

    Threads get their own connection (and app context), which the in-memory
    database cannot offer. Used by the contention tests.
    """
    created = []

    def _make(**overrides):
        config = dict(TEST_CONFIG)
        config['SQLALCHEMY_DATABASE_URI'] = f"sqlite:///{tmp_path / f'stock_{len(created)}.sqlite3'}"
        config.update(overrides)
        new_app = create_app(config)
        with new_app.app_context():
            db.create_all()
        created.append(new_app)
        return new_app

    yield _make

    for created_app in created:
        with created_app.app_context():
            db.session.remove()
            db.engine.dispose()


# =============================================================================
# SEED HELPERS
# =============================================================================

def variant_product(product_id: str, grid: dict, **extra) -> dict:
    """Product dict with a size -> color -> units grid (scalar stock derived)."""
    total = sum(units for colors in grid.values() for units in colors.values())
    data = {"id": product_id, "stock": total, "variants": {"stock": grid}}
    data.update(extra)
    return data


def make_order(order_id: str, *, user_id: str = "u-1", final_total: int = 50000, lines=None,
               status: str = "pending", customer_role: str = "customer",
               created_at=None, expires_at=None) -> Order:
    """Insert an order row directly (checkout creates them outside the core)."""
    created_at = created_at or utcnow()
    order = Order(
        id=order_id,
        user_id=user_id,
        customer_role=customer_role,
        status=status,
        final_total=final_total,
        created_at=created_at,
        updated_at=created_at,
        expires_at=expires_at,
        expiry_notified=False,
    )
    order.lines = [
        OrderLine(
            product_id=line["product_id"],
            batch_id=line.get("batch_id"),
            quantity=line["quantity"],
            variant_size=line.get("size"),
            variant_color=line.get("color"),
        )
        for line in (lines or [])
    ]
    db.session.add(order)
    db.session.commit()
    return order


@pytest.fixture(scope='function')
def stocked_batch(db_session):
    """batch_1: scalar product P1 (5 units) and variant product V1."""
    return batch_store.create_batch("batch_1", [
        {"id": "P1", "name": "Linen Shirt", "stock": 5, "price": 250000},
        variant_product("V1", {"M": {"Black": 2, "White": 1}, "L": {"Black": 3}}, name="Pleated Skirt"),
    ])


@pytest.fixture(scope='function')
def second_batch(db_session, stocked_batch):
    """batch_2: scalar product P2 (10 units)."""
    return batch_store.create_batch("batch_2", [
        {"id": "P2", "name": "Denim Jacket", "stock": 10},
    ])


@pytest.fixture(scope='function')
def past():
    return utcnow() - timedelta(hours=1)


@pytest.fixture(scope='function')
def order_factory(db_session):
    """Returns make_order bound to the clean database."""
    return make_order
