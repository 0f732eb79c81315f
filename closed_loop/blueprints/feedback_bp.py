"""
Closed-Loop Feedback Engine
Feedback Blueprint.

HTTP boundary for feedback cases. Request bodies are parsed into typed
payloads by the service layer; every rejection comes back with a specific
error code instead of a generic failure.

Routes:
    POST   /api/v1/feedback-cases
    GET    /api/v1/feedback-cases
    GET    /api/v1/feedback-cases/<case_id>
    GET    /api/v1/feedback-cases/<case_id>/history
    POST   /api/v1/feedback-cases/<case_id>/actions
    GET    /api/v1/feedback-metrics/<company_id>

Status mapping:
    404  NotFoundError
    409  InvalidTransition, ConcurrentModification
    422  ValidationError, MissingRequiredField
"""

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

import closed_loop.services.feedback_service as svc
from closed_loop import limiter
from closed_loop.blueprints import pagination_args
from closed_loop.core.exceptions import (
    ConcurrentModification,
    InvalidTransition,
    MissingRequiredField,
    NotFoundError,
    ValidationError,
)
from closed_loop.services.recovery_metrics import get_recovery_metrics
from closed_loop.utils.errors import E, api_error

logger = logging.getLogger(__name__)

feedback_bp = Blueprint("feedback", __name__, url_prefix="/api/v1")


# ═════════════════════════════════════════════════════════════════════════════
# Error handlers
# ═════════════════════════════════════════════════════════════════════════════


@feedback_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return api_error(E.NOT_FOUND, str(error))


@feedback_bp.errorhandler(MissingRequiredField)
def _handle_missing_field(error: MissingRequiredField):
    return api_error(E.VALIDATION_REQUIRED, str(error), details=error.details)


@feedback_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    return api_error(E.VALIDATION_INVALID, str(error), details=error.details)


@feedback_bp.errorhandler(InvalidTransition)
def _handle_invalid_transition(error: InvalidTransition):
    details = {"status": error.status, "action": error.action}
    if error.reason:
        details["reason"] = error.reason
    return api_error(E.INVALID_TRANSITION, str(error), details=details)


@feedback_bp.errorhandler(ConcurrentModification)
def _handle_concurrent(error: ConcurrentModification):
    return api_error(
        E.CONCURRENT_MODIFICATION, str(error),
        details={"expected_version": error.expected_version},
    )


@feedback_bp.errorhandler(Exception)
def _handle_unexpected(error: Exception):
    if isinstance(error, HTTPException):
        return error
    logger.exception("Unexpected error in feedback_bp endpoint=%s", request.endpoint)
    return api_error(E.INTERNAL, "Internal server error")


def _limit_actions():
    return current_app.config.get("RATELIMIT_ACTIONS", "30/minute")


# ═════════════════════════════════════════════════════════════════════════════
# Cases
# ═════════════════════════════════════════════════════════════════════════════


@feedback_bp.route("/feedback-cases", methods=["POST"])
def create_case():
    """Open a case from a detection event."""
    data = request.get_json(silent=True) or {}
    return jsonify(svc.create_case(data)), 201


@feedback_bp.route("/feedback-cases", methods=["GET"])
def list_cases():
    """List cases, filterable by status / company_id / contact_id."""
    limit, offset = pagination_args()
    items, total = svc.list_cases(
        status=request.args.get("status"),
        company_id=request.args.get("company_id"),
        contact_id=request.args.get("contact_id"),
        limit=limit,
        offset=offset,
    )
    return jsonify({"items": items, "total": total, "limit": limit, "offset": offset}), 200


@feedback_bp.route("/feedback-cases/<case_id>", methods=["GET"])
def get_case(case_id: str):
    return jsonify(svc.get_case(case_id)), 200


@feedback_bp.route("/feedback-cases/<case_id>/history", methods=["GET"])
def get_case_history(case_id: str):
    """Transition history, oldest first."""
    items = svc.list_case_events(case_id)
    return jsonify({"items": items, "total": len(items)}), 200


@feedback_bp.route("/feedback-cases/<case_id>/actions", methods=["POST"])
@limiter.limit(_limit_actions)
def apply_action(case_id: str):
    """Apply an action to a case.

    Body: {action, notes?, resolution_notes?, recovery_score?, reason?,
           version?, actor?}. ``version`` is the version the client last
    read; a stale value yields 409 instead of overwriting newer state.
    """
    data = request.get_json(silent=True) or {}
    version = data.get("version")
    if version is not None and (isinstance(version, bool) or not isinstance(version, int)):
        raise ValidationError("version must be an integer", details={"version": "invalid type"})

    result = svc.process_action(
        case_id,
        data,
        expected_version=version,
        actor=data.get("actor"),
    )
    return jsonify(result), 200


# ═════════════════════════════════════════════════════════════════════════════
# Metrics
# ═════════════════════════════════════════════════════════════════════════════


@feedback_bp.route("/feedback-metrics/<company_id>", methods=["GET"])
def recovery_metrics(company_id: str):
    return jsonify(get_recovery_metrics(company_id)), 200

