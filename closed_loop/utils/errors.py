"""JSON error envelope shared by the blueprints.

Every rejected request gets the same body shape::

    {"error": "<message>", "code": "ERR_...", "details": {...}}

``details`` is omitted when empty. Blueprints map domain exceptions to codes
in their ``errorhandler`` functions:

    return api_error(E.INVALID_TRANSITION, str(exc), details={"status": "resolved"})
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes."""

    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"      # 422, field missing
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"        # 422, field malformed
    NOT_FOUND = "ERR_NOT_FOUND"                          # 404
    INVALID_TRANSITION = "ERR_INVALID_TRANSITION"        # 409, state machine refused
    CONCURRENT_MODIFICATION = "ERR_CONCURRENT_MODIFICATION"  # 409, stale version
    INTERNAL = "ERR_INTERNAL"                            # 500


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_REQUIRED: 422,
    E.VALIDATION_INVALID: 422,
    E.NOT_FOUND: 404,
    E.INVALID_TRANSITION: 409,
    E.CONCURRENT_MODIFICATION: 409,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None,
              details: dict | None = None):
    """Build ``(response, status)`` for a Flask view or error handler.

    ``status`` overrides the code's default; unknown codes map to 400.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)
