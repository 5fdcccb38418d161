# backend/storeledger/__init__.py
import logging

from flask import Flask

from .config import Config
from .extensions import db, migrate


def _apply_storage_timeout(app: Flask) -> None:
    """Bound how long a SQLite writer waits on another writer's lock."""
    timeout = app.config["STORAGE_TIMEOUT_SECONDS"]
    engine_options = dict(app.config.get("SQLALCHEMY_ENGINE_OPTIONS") or {})
    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        connect_args = dict(engine_options.get("connect_args") or {})
        connect_args.setdefault("timeout", timeout)
        engine_options["connect_args"] = connect_args
    app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options

    binds = {}
    for key, value in (app.config.get("SQLALCHEMY_BINDS") or {}).items():
        options = {"url": value} if isinstance(value, str) else dict(value)
        if str(options["url"]).startswith("sqlite"):
            connect_args = dict(options.get("connect_args") or {})
            connect_args.setdefault("timeout", timeout)
            options["connect_args"] = connect_args
        binds[key] = options
    app.config["SQLALCHEMY_BINDS"] = binds


def create_app(config=None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if isinstance(config, type):
        app.config.from_object(config)
    elif config:
        app.config.from_mapping(config)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))
    _apply_storage_timeout(app)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Wire the core components (storage client and cache injected)
    from .core import EXTENSION_KEY, build_core
    app.extensions[EXTENSION_KEY] = build_core(app, db)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.stock import stock_bp
    from .routes.sales import sales_bp
    from .routes.refunds import refunds_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(stock_bp)
    app.register_blueprint(sales_bp)
    app.register_blueprint(refunds_bp)

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
