# backend/freshcut/__init__.py
import logging

from flask import Flask

from .config import Config, resolve_database_uri
from .extensions import db, migrate


def create_app(config_class=Config, overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)
    if overrides:
        app.config.update(overrides)

    # An explicit URI wins; otherwise derive it from the store backend
    if not app.config.get("SQLALCHEMY_DATABASE_URI"):
        app.config["SQLALCHEMY_DATABASE_URI"] = resolve_database_uri(
            app.config["FRESHCUT_STORE"], app.config.get("DATABASE_URL")
        )

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
