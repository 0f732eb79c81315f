"""
Closed-Loop Feedback Engine
Configuration classes for the Flask app factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Every knob is read from the environment; the defaults below are the values
the engine is tuned for (5-minute SLA scans, 15-minute survey passes, one
survey per contact per 30 days).
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'closed_loop_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def _database_url(default=None):
    """DATABASE_URL with Heroku-style ``postgres://`` rewritten for SQLAlchemy 2.0."""
    url = os.getenv("DATABASE_URL", "")
    if not url:
        return default
    return url.replace("postgres://", "postgresql://", 1)


class Config:
    """Base configuration shared across all environments."""

    # Random per process unless set; production refuses to start without it
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)
    DEBUG = False
    TESTING = False

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Action endpoint limit (double-click storms, scripted retries)
    RATELIMIT_ACTIONS = os.getenv("RATELIMIT_ACTIONS", "30/minute")

    # Background jobs: interval timers run only when explicitly enabled
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "false").lower() == "true"
    SLA_SCAN_INTERVAL_SECONDS = _env_int("SLA_SCAN_INTERVAL_SECONDS", 300)
    RECOVERY_SCAN_INTERVAL_SECONDS = _env_int("RECOVERY_SCAN_INTERVAL_SECONDS", 900)
    SLA_SCAN_TIMEOUT_SECONDS = _env_int("SLA_SCAN_TIMEOUT_SECONDS", 120)
    RECOVERY_SCAN_TIMEOUT_SECONDS = _env_int("RECOVERY_SCAN_TIMEOUT_SECONDS", 120)

    # Recovery re-survey channel
    SURVEY_MIN_INTERVAL_DAYS = _env_int("SURVEY_MIN_INTERVAL_DAYS", 30)
    SURVEY_DISPATCH_URL = os.getenv("SURVEY_DISPATCH_URL")  # unset: log-only mode
    SURVEY_DISPATCH_TIMEOUT = _env_int("SURVEY_DISPATCH_TIMEOUT", 10)


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url(_SQLITE_DEV)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    SCHEDULER_ENABLED = False
    SURVEY_DISPATCH_URL = None


class ProductionConfig(Config):
    """Instantiated (not just referenced) so the checks in __init__ run."""

    SQLALCHEMY_DATABASE_URI = _database_url()
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        # 30s statement timeout
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
