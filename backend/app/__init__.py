"""Application factory for the flow automation backend."""
from __future__ import annotations

import time

from flask import Flask
from sqlalchemy.exc import OperationalError

from .config import Config
from .extensions import cors, db, limiter


def create_app(config_class: type[Config] = Config) -> Flask:
    """Create and configure the Flask application instance."""
    app = Flask(__name__)
    app.config.from_object(config_class)

    db.init_app(app)

    allowed_origins = [
        origin.strip()
        for origin in (app.config.get("CORS_ALLOWED_ORIGINS") or "").split(",")
        if origin.strip()
    ]
    cors.init_app(
        app,
        resources={r"/api/*": {"origins": allowed_origins}},
        allow_headers=["Content-Type", "Authorization", "X-Triggered-By"],
    )

    limiter.init_app(app)

    from .api.errors import register_error_handlers
    from .api.executions import bp as executions_bp
    from .api.flows import bp as flows_bp
    from .api.health import bp as health_bp
    from .api.operations import bp as operations_bp

    app.register_blueprint(health_bp, url_prefix="/api")
    app.register_blueprint(flows_bp, url_prefix="/api")
    app.register_blueprint(executions_bp, url_prefix="/api")
    app.register_blueprint(operations_bp, url_prefix="/api")
    register_error_handlers(app)

    with app.app_context():
        # Import models to ensure they are registered with SQLAlchemy before creating tables.
        from .models import execution, flow, record  # noqa: F401

        _initialize_database(app)

    return app


def _initialize_database(app: Flask) -> None:
    """Initialize the database with retry logic to handle delayed availability."""

    max_retries = int(app.config.get("DB_INIT_MAX_RETRIES", 30))
    retry_delay = float(app.config.get("DB_INIT_RETRY_DELAY", 2))

    for attempt in range(1, max_retries + 1):
        try:
            db.create_all()
            return
        except OperationalError as exc:
            if attempt >= max_retries:
                app.logger.exception("Database initialization failed after %s attempts.", attempt)
                raise

            app.logger.warning(
                "Database initialization attempt %s/%s failed: %s", attempt, max_retries, exc
            )
            time.sleep(retry_delay)


__all__ = ["Config", "create_app"]
