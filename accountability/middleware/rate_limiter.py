"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter. The Limiter
instance is created in accountability/__init__.py with no default limits;
this module applies limits per route category.

Usage:
    from accountability.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import request as flask_request

logger = logging.getLogger(__name__)

READ_LIMIT = "300/minute"


def acting_user_key() -> str:
    """Rate limit key: the acting user when supplied, else the remote IP."""
    user_id = flask_request.args.get("user_id") or flask_request.args.get("viewer_id")
    if not user_id and flask_request.is_json:
        body = flask_request.get_json(silent=True) or {}
        user_id = body.get("user_id")
    if user_id:
        return f"user:{user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to the workflow blueprint.

    Limits (per acting user, falling back to remote IP):
        - Mutating workflow calls:  WORKFLOW_WRITE_LIMIT (default 120/minute)
        - Read calls:               300/minute

    Rate limiting is disabled in testing mode.
    """
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    write_limit = app.config.get("WORKFLOW_WRITE_LIMIT", "120/minute")

    bp = app.blueprints.get("workflow")
    if bp:
        limiter.limit(
            write_limit,
            key_func=acting_user_key,
            methods=["POST", "PUT", "DELETE"],
        )(bp)
        limiter.limit(READ_LIMIT, key_func=acting_user_key, methods=["GET"])(bp)

    app.logger.info("Rate limiter configured: workflow write: %s, read: %s",
                    write_limit, READ_LIMIT)
