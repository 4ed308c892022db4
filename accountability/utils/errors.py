"""Standardised API error responses.

Usage
-----
    from accountability.utils.errors import api_error, E

    return api_error(E.NOT_FOUND, "Report not found")
    return api_error(E.CHILDREN_OPEN, str(exc), details={"open_child_ids": [4, 7]})
"""

from __future__ import annotations

from flask import jsonify


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants.

    Convention:
     • ERR_  prefix for standard application errors
     • WF_   prefix for workflow-engine rule violations
    """

    # Validation – HTTP 422
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict / duplicate – HTTP 409
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"

    # Server – HTTP 500
    DATABASE = "ERR_DATABASE"

    # Workflow rules
    ILLEGAL_TRANSITION = "WF_ILLEGAL_TRANSITION"
    STALE_STATE = "WF_STALE_STATE"
    NOT_A_MEMBER = "WF_NOT_A_MEMBER"
    SELF_APPROVAL = "WF_SELF_APPROVAL"
    CHILDREN_OPEN = "WF_CHILDREN_NOT_CLOSED"
    INVALID_FORWARD = "WF_INVALID_FORWARDING_TARGET"
    LINK_CYCLE = "WF_LINK_CYCLE"
    LINK_DUPLICATE = "WF_LINK_DUPLICATE"
    ACCESS_DENIED = "WF_ACCESS_DENIED"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.DATABASE: 500,
    E.ILLEGAL_TRANSITION: 422,
    E.STALE_STATE: 409,
    E.NOT_A_MEMBER: 403,
    E.SELF_APPROVAL: 403,
    E.CHILDREN_OPEN: 422,
    E.INVALID_FORWARD: 422,
    E.LINK_CYCLE: 422,
    E.LINK_DUPLICATE: 409,
    E.ACCESS_DENIED: 403,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (statuses, blocking ids, etc.).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """
    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status
