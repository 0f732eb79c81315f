"""
Engine-wide exception hierarchy.

Every service raises one of these types; blueprints register handlers
against them once and get consistent HTTP status codes everywhere.

Validation-level errors (surfaced to the caller):
    NotFoundError            → 404
    ValidationError          → 422  (MissingRequiredField is a subclass)
    ConflictError            → 409  (ConcurrentModification is a subclass)
    InvalidTransition        → 409

Side-effect errors (logged, never roll back a committed transition):
    RoutingUnresolved, NotificationDeliveryFailed, SurveyDispatchFailed

Usage:
    from closed_loop.core.exceptions import InvalidTransition

    raise InvalidTransition(case_id, "resolved", "escalate")
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "FeedbackCase").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class MissingRequiredField(ValidationError):
    """An action payload lacks a field the action cannot proceed without.

    Raised before any write, e.g. ``mark_recovered`` without ``recovery_score``.
    """

    def __init__(self, action: str, field: str) -> None:
        self.action = action
        self.field = field
        super().__init__(
            f"{field} is required for {action}",
            details={field: "required"},
        )


class ConflictError(Exception):
    """Raised when a write would clash with the current stored state. Maps to 409."""


class ConcurrentModification(ConflictError):
    """Optimistic write conflict: the row changed since it was read.

    The case is untouched; the caller should re-fetch and retry.
    """

    def __init__(self, case_id: str, expected_version: int | None = None) -> None:
        self.case_id = case_id
        self.expected_version = expected_version
        msg = f"FeedbackCase id={case_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version})"
        super().__init__(msg)


class InvalidTransition(Exception):
    """The requested action is not valid from the case's current status.

    The case is left unchanged.
    """

    def __init__(self, case_id: str | None, status: str, action: str, reason: str = "") -> None:
        self.case_id = case_id
        self.status = status
        self.action = action
        self.reason = reason
        msg = f"Invalid transition: {action} not allowed from {status}"
        if reason:
            msg += f" ({reason})"
        super().__init__(msg)


class RoutingUnresolved(Exception):
    """No manager could be found for an escalation. Not fatal."""

    def __init__(self, case_id: str) -> None:
        self.case_id = case_id
        super().__init__(f"No escalation target resolved for FeedbackCase id={case_id}")


class NotificationDeliveryFailed(Exception):
    """Escalation notification or follow-up task could not be written."""

    def __init__(self, case_id: str, cause: Exception | None = None) -> None:
        self.case_id = case_id
        self.cause = cause
        super().__init__(f"Escalation side effects failed for FeedbackCase id={case_id}: {cause}")


class SurveyDispatchFailed(Exception):
    """The survey channel rejected or could not receive a recovery survey."""

    def __init__(self, case_id: str, reason: str) -> None:
        self.case_id = case_id
        self.reason = reason
        super().__init__(f"Recovery survey dispatch failed for FeedbackCase id={case_id}: {reason}")
