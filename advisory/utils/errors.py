"""JSON error bodies for the consulting API.

Every error response has the shape ``{"error": <message>, "code": <ERR_*>}``
plus an optional ``details`` object, e.g.::

    return api_error(E.CONFLICT_STATE, "Project already completed", details={"status": "completed"})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"   # missing body / query
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"     # malformed field, infeasible project
    SANDBOX_VIOLATION = "ERR_SANDBOX_VIOLATION"
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"             # project already terminal
    BACKEND_UNAVAILABLE = "ERR_BACKEND_UNAVAILABLE"
    INTERNAL = "ERR_INTERNAL"


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 422,
    E.SANDBOX_VIOLATION: 422,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.BACKEND_UNAVAILABLE: 503,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(response, status)`` for a Flask view; status defaults from the code, else 400."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)
