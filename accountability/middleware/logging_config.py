"""
Logging setup for the workflow engine.

Workflow services log with ``extra={...}`` naming the document they touched
(``document_type``/``document_id`` or ``item_type``/``item_id``), the acting
user and, for transitions, the old and new status. The formatters here lift
those keys out of the record:

- JSON (production): nested ``workflow`` and ``request`` objects per line
- Readable (development/tests): a ``[report#12 draft->submitted by 4]`` tag

LOG_LEVEL picks the level; LOG_FORMAT=json|readable overrides the
environment-based choice.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_request_context

WORKFLOW_FIELDS = (
    "document_type",
    "document_id",
    "item_type",
    "item_id",
    "committee_id",
    "actor_id",
    "old_status",
    "new_status",
    "event_type",
)
REQUEST_FIELDS = ("request_id", "method", "path", "status")


def _collect(record, keys):
    return {k: getattr(record, k) for k in keys if getattr(record, k, None) is not None}


def workflow_tag(record) -> str:
    """Short subject tag for a record, or "" when it carries no workflow fields."""
    kind = getattr(record, "document_type", None) or getattr(record, "item_type", None)
    ident = getattr(record, "document_id", None)
    if ident is None:
        ident = getattr(record, "item_id", None)
    if kind:
        tag = f"{kind}#{ident if ident is not None else '?'}"
    elif getattr(record, "committee_id", None) is not None:
        tag = f"committee#{record.committee_id}"
    else:
        return ""
    old, new = getattr(record, "old_status", None), getattr(record, "new_status", None)
    if new:
        tag += f" {old or '?'}->{new}"
    actor = getattr(record, "actor_id", None)
    if actor is not None:
        tag += f" by {actor}"
    return f"[{tag}]"


class RequestIdFilter(logging.Filter):
    """Stamp records emitted inside a request with the timing middleware's request id."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None and has_request_context():
            record.request_id = getattr(g, "request_id", None)
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per line for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        workflow = _collect(record, WORKFLOW_FIELDS)
        if workflow:
            entry["workflow"] = workflow
        req = _collect(record, REQUEST_FIELDS)
        if req:
            entry["request"] = req
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line format for a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color=True):
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        level = f"{record.levelname:<8}"
        if self.color:
            level = f"{self.COLORS.get(record.levelname, '')}{level}{self.RESET}"
        line = f"{ts} {level} {record.name}: {record.getMessage()}"
        tag = workflow_tag(record)
        if tag:
            line += f" {tag}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _use_json(app) -> bool:
    forced = os.getenv("LOG_FORMAT", "").lower()
    if forced in ("json", "readable"):
        return forced == "json"
    return not app.config.get("DEBUG", False) and not app.config.get("TESTING", False)


def configure_logging(app):
    """Install a single stderr handler on the root logger for this app."""
    is_testing = app.config.get("TESTING", False)
    as_json = _use_json(app)

    level_name = os.getenv("LOG_LEVEL", "INFO" if as_json else "DEBUG")
    level = getattr(logging, level_name.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if as_json else ReadableFormatter(color=sys.stderr.isatty()))
    handler.addFilter(RequestIdFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    # Repeated create_app() calls in tests would otherwise stack handlers
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for noisy in ("urllib3", "werkzeug", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if as_json else "readable")
