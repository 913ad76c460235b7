# backend/stockroute/__init__.py
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def create_app(test_config: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.transfers import transfers_bp
    from .routes.locations import locations_bp
    from .routes.products import products_bp
    from .routes.roles import roles_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(transfers_bp)
    app.register_blueprint(locations_bp)
    app.register_blueprint(products_bp)
    app.register_blueprint(roles_bp)

    allowed_origins = set(app.config.get("CORS_ALLOWED_ORIGINS") or ())
    actor_header = app.config.get("ACTOR_HEADER", "X-User-Id")

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = f"{actor_header}, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,DELETE,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
