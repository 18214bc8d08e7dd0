# backend/retailops/__init__.py
from flask import Flask

from .config import Config
from .extensions import db, migrate


def create_app(config_object=Config) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Post-transition side effects subscribe to order_status_changed
    if app.config.get("HOOKS_ENABLED", True):
        from .services.hook_service import connect_hooks
        connect_hooks()

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
