"""
Closed-Loop Feedback Engine
Flask Application Factory.

Usage:
    from closed_loop import create_app
    app = create_app()           # APP_ENV, else "development"
    app = create_app("testing")
"""

import importlib
import logging
import os

from flask import Flask, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event

from closed_loop.config import config
from closed_loop.middleware.logging_config import configure_logging
from closed_loop.middleware.rate_limiter import init_rate_limits
from closed_loop.middleware.timing import init_request_timing
from closed_loop.models import db

logger = logging.getLogger(__name__)


@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """SQLite ships with foreign keys off; history rows rely on them."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],  # per-blueprint, see middleware/rate_limiter.py
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _init_cors(app):
    origins = app.config.get("CORS_ORIGINS", "*")
    if origins and origins != "*":
        CORS(app, origins=[o.strip() for o in origins.split(",") if o.strip()])
    else:
        CORS(app)


def _import_models():
    # Registers every table on db.metadata (create_all / flask db migrate)
    from closed_loop.models import feedback, notification, org, scheduling, survey  # noqa: F401


def _register_blueprints(app):
    from closed_loop.blueprints.feedback_bp import feedback_bp
    from closed_loop.blueprints.inbox_bp import inbox_bp
    from closed_loop.blueprints.scheduler_bp import scheduler_bp

    for bp in (feedback_bp, inbox_bp, scheduler_bp):
        app.register_blueprint(bp)

    @app.route("/api/v1/health")
    def health():
        return {"status": "ok", "app": "Closed-Loop Feedback Engine"}


def _register_error_handlers(app):
    """JSON bodies for errors raised outside the blueprints' own handlers."""

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "Not found", "path": request.path}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "Method not allowed"}, 405

    @app.errorhandler(429)
    def rate_limited(e):
        return {"error": "Too many requests", "retry_after": e.description}, 429

    @app.errorhandler(500)
    def server_error(e):
        logger.error("500 error: %s", e, exc_info=True)
        return {"error": "Internal server error"}, 500


def _init_scheduler(app):
    importlib.import_module("closed_loop.services.scheduled_jobs")  # @register_job side effects
    from closed_loop.services.scheduler_service import SchedulerService

    SchedulerService.init_app(app)
    if app.config.get("SCHEDULER_ENABLED"):
        SchedulerService.start()


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: "development", "testing" or "production".
                     Defaults to the APP_ENV env var, then "development".
    """
    config_name = config_name or os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    # ProductionConfig validates required env vars on instantiation
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    _init_cors(app)
    init_request_timing(app)

    _import_models()
    if not app.config.get("TESTING"):
        with app.app_context():
            try:
                db.create_all()
            except Exception as e:
                app.logger.warning("db.create_all() failed: %s", e)

    _register_blueprints(app)
    _register_error_handlers(app)
    init_rate_limits(app, limiter)
    _init_scheduler(app)

    return app
