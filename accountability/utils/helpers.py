"""Shared helpers for services and the blueprint.

as_utc:          normalise naive datetimes read back from SQLite
parse_datetime:  ISO string → aware datetime, raising ValidationError on bad input
require_fields:  presence check for JSON payloads
"""
from datetime import date, datetime, time, timezone

from accountability.core.exceptions import ValidationError


def as_utc(value):
    """Return *value* as an aware UTC datetime (None passes through).

    SQLite drops tzinfo on round-trip; stored values are always UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value, field="deadline"):
    """Parse an ISO date or datetime string to an aware datetime.

    Supports:
    - YYYY-MM-DD (taken as midnight UTC)
    - YYYY-MM-DDTHH:MM:SS[+offset]
    - datetime / date objects
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    try:
        return as_utc(datetime.fromisoformat(str(value)))
    except ValueError as exc:
        raise ValidationError(
            f"Invalid {field}. Use ISO format YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS.",
            details={field: str(value)},
        ) from exc


def require_fields(data: dict, *fields: str) -> None:
    """Raise ValidationError naming every missing or blank field."""
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            details={f: "required" for f in missing},
        )
