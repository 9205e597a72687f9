# backend/boutique/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Checkout queue and its status feed are process-wide
    from .services.checkout_queue import CheckoutQueue, load_item_snapshot
    from .services.snapshot_cache import SnapshotCache

    feed = SnapshotCache(loader=load_item_snapshot)
    app.extensions["checkout_feed"] = feed
    app.extensions["checkout_queue"] = CheckoutQueue(feed=feed)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.batches import batches_bp
    from .routes.checkout import checkout_bp
    from .routes.payment_groups import payment_groups_bp
    from .routes.orders import orders_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(batches_bp)
    app.register_blueprint(checkout_bp)
    app.register_blueprint(payment_groups_bp)
    app.register_blueprint(orders_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
