# backend/kantin/__init__.py
from logging.config import dictConfig

from flask import Flask, request

from .config import Config
from .extensions import db, migrate


def _configure_logging(level: str) -> None:
    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "root": {"level": level, "handlers": ["console"]},
    })


def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Collaborators injected into the services through app.extensions
    from .services.fee_service import FeeSettingsCache
    from .services.gateway_service import MidtransGateway
    from .services.realtime_service import build_broadcaster

    app.extensions["fee_settings_cache"] = FeeSettingsCache(
        ttl_seconds=min(float(app.config["FEE_SETTINGS_TTL_SECONDS"]), 300.0),
    )
    app.extensions["payment_gateway"] = MidtransGateway.from_config(app.config)
    app.extensions["realtime_broadcaster"] = build_broadcaster(app.config)

    # Register blueprints
    from .routes.system import system_bp
    from .routes.transactions import transactions_bp
    from .routes.webhooks import webhooks_bp
    from .routes.pos_sessions import pos_sessions_bp
    from .routes.settings import settings_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(webhooks_bp)
    app.register_blueprint(pos_sessions_bp)
    app.register_blueprint(settings_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
