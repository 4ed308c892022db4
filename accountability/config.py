"""
Accountability Workflow Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'accountability_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _csv_tuple(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,   # recycle connections every 5 min
        "pool_timeout": 20,    # wait max 20s for a connection from pool
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rate limiting (Flask-Limiter storage; memory:// for single process)
    RATELIMIT_STORAGE_URI = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    RATELIMIT_ENABLED = True
    WORKFLOW_WRITE_LIMIT = os.getenv("WORKFLOW_WRITE_LIMIT", "120/minute")

    # ── Workflow engine ──────────────────────────────────────────────────
    # Committee roles that make up the approval quorum. ("head",) restricts
    # collective sign-off to committee heads only.
    APPROVAL_QUORUM_ROLES = _csv_tuple(os.getenv("APPROVAL_QUORUM_ROLES", "head,member"))
    # When on, the author is removed from the quorum and cannot approve their own report.
    APPROVAL_EXCLUDE_AUTHOR = os.getenv("APPROVAL_EXCLUDE_AUTHOR", "false").lower() == "true"
    # A committee head may force-approve a report that has been waiting this long.
    HEAD_FINALIZE_AFTER_DAYS = int(os.getenv("HEAD_FINALIZE_AFTER_DAYS", "3"))

    # Rank gate comparison: True → viewer_rank <= min_rank, False → strict <.
    CONFIDENTIALITY_RANK_INCLUSIVE = (
        os.getenv("CONFIDENTIALITY_RANK_INCLUSIVE", "true").lower() == "true"
    )

    # System roles that, like the issuer, may skip directive stages.
    DIRECTIVE_AUTHORITY_ROLES = _csv_tuple(
        os.getenv("DIRECTIVE_AUTHORITY_ROLES", "chairman,system_admin")
    )
    # System roles that may target any committee; other users need an active head seat.
    DIRECTIVE_ISSUER_ROLES = _csv_tuple(
        os.getenv("DIRECTIVE_ISSUER_ROLES", "chairman,chairman_office,system_admin")
    )
    DIRECTIVE_DEADLINE_WARNING_DAYS = int(os.getenv("DIRECTIVE_DEADLINE_WARNING_DAYS", "3"))

    # User that authors automatic transitions ("All members approved").
    SYSTEM_ACTOR_EMAIL = os.getenv("SYSTEM_ACTOR_EMAIL", "system@accountability.local")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # SQLite in-memory does not accept pool sizing arguments
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    # Override engine options with PostgreSQL statement + lock timeouts
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000 -c lock_timeout=5000",
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
