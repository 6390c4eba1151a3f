# backend/invsync/__init__.py
from flask import Flask, request

from .config import Config
from .extensions import db, migrate
from .logging_setup import configure_logging


def _init_change_feed(app: Flask) -> None:
    """Channel, ORM change feed and supplier synchronizer shared by the app."""
    from .channel import (
        CHANGE_FEED_EXTENSION,
        CHANNEL_EXTENSION,
        SYNCHRONIZER_EXTENSION,
        InMemoryChannel,
    )
    from .services.change_feed import ChangeFeed
    from .services.supplier_sync import SupplierInventorySynchronizer

    channel = InMemoryChannel()
    app.extensions[CHANNEL_EXTENSION] = channel

    if not app.config.get("CHANGE_FEED_ENABLED", True):
        return

    feed = ChangeFeed(channel).attach(db.session)
    synchronizer = SupplierInventorySynchronizer(
        db.session,
        attempts=app.config.get("RETRY_ATTEMPTS", 3),
        backoff_base=app.config.get("RETRY_BACKOFF", 0.1),
    )
    synchronizer.start(channel)
    app.extensions[CHANGE_FEED_EXTENSION] = feed
    app.extensions[SYNCHRONIZER_EXTENSION] = synchronizer

    @app.after_request
    def deliver_change_events(response):
        feed.deliver_pending()
        return response


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    configure_logging(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.sales import sales_bp
    from .routes.inventory import inventory_bp
    from .routes.integrity import integrity_bp
    from .routes.suppliers import suppliers_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(integrity_bp)
    app.register_blueprint(suppliers_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,DELETE,OPTIONS"
        return response

    _init_change_feed(app)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
