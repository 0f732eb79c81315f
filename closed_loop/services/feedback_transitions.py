"""
Closed-Loop Feedback Engine
Transition Validator — feedback case state machine.

Pure functions only: no DB session, no clock reads, no side effects. The action
processor (services/feedback_service.py) hands in a case snapshot, a parsed
action payload and ``now``; it gets back the resulting status and the exact
column updates to persist, or an exception and nothing else.

Action payloads form a tagged union, one dataclass per action, built from raw
request dicts by ``parse_action`` at the boundary:

    StartFollowup{notes}            pending                  → in_progress
    MarkContacted{notes}            in_progress              → contacted
    Resolve{resolution_notes}       contacted | in_progress  → resolved
    MarkRecovered{recovery_score,   contacted | in_progress  → recovered
                  resolution_notes}
    Escalate{reason, automatic}     any non-terminal         → escalated
    CloseNoAction{resolution_notes} any non-terminal         → closed_no_action
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, ClassVar, Union

from closed_loop.core.exceptions import (
    InvalidTransition,
    MissingRequiredField,
    ValidationError,
)
from closed_loop.models.feedback import (
    MAX_AUTO_ESCALATION_LEVEL,
    RECOVERY_SCORE_RANGE,
    RECOVERY_SURVEY_DELAY_DAYS,
    TERMINAL_STATUSES,
)


# ═════════════════════════════════════════════════════════════════════════════
# Action payloads
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class StartFollowup:
    action: ClassVar[str] = "start_followup"
    notes: str = ""


@dataclass(frozen=True)
class MarkContacted:
    action: ClassVar[str] = "mark_contacted"
    notes: str = ""


@dataclass(frozen=True)
class Resolve:
    action: ClassVar[str] = "resolve"
    resolution_notes: str = ""


@dataclass(frozen=True)
class MarkRecovered:
    action: ClassVar[str] = "mark_recovered"
    recovery_score: float | None = None
    resolution_notes: str = ""


@dataclass(frozen=True)
class Escalate:
    action: ClassVar[str] = "escalate"
    reason: str = ""
    automatic: bool = False


@dataclass(frozen=True)
class CloseNoAction:
    action: ClassVar[str] = "close_no_action"
    resolution_notes: str = ""


ActionPayload = Union[StartFollowup, MarkContacted, Resolve, MarkRecovered, Escalate, CloseNoAction]


@dataclass
class TransitionOutcome:
    """Accepted transition: the new status plus every column to write."""

    action: str
    from_status: str
    new_status: str
    updates: dict[str, Any] = field(default_factory=dict)


# Explicit source states; None means "any non-terminal state".
ACTION_SOURCES: dict[str, frozenset[str] | None] = {
    "start_followup":  frozenset({"pending"}),
    "mark_contacted":  frozenset({"in_progress"}),
    "resolve":         frozenset({"contacted", "in_progress"}),
    "mark_recovered":  frozenset({"contacted", "in_progress"}),
    "escalate":        None,
    "close_no_action": None,
}

ACTION_TARGETS: dict[str, str] = {
    "start_followup":  "in_progress",
    "mark_contacted":  "contacted",
    "resolve":         "resolved",
    "mark_recovered":  "recovered",
    "escalate":        "escalated",
    "close_no_action": "closed_no_action",
}


def is_action_allowed(status: str, action: str) -> bool:
    """Return True if ``action`` may be applied to a case in ``status``."""
    if action not in ACTION_SOURCES:
        return False
    sources = ACTION_SOURCES[action]
    if sources is None:
        return status not in TERMINAL_STATUSES
    return status in sources


def allowed_actions(status: str) -> list[str]:
    """All actions valid from ``status``, in declaration order."""
    return [a for a in ACTION_SOURCES if is_action_allowed(status, a)]


# ═════════════════════════════════════════════════════════════════════════════
# Boundary parsing
# ═════════════════════════════════════════════════════════════════════════════


def _text(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be a string", details={key: "invalid type"})
    return value.strip()


def _score(data: dict, key: str) -> float | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    # bool is an int subclass; a JSON true is not a score
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} must be a number", details={key: "invalid type"})
    low, high = RECOVERY_SCORE_RANGE
    if not low <= value <= high:
        raise ValidationError(
            f"{key} must be between {low} and {high}",
            details={key: "out of range"},
        )
    return float(value)


def parse_action(data: dict) -> ActionPayload:
    """Build a typed action payload from a raw request dict.

    Raises:
        ValidationError: unknown action or malformed field.
    """
    action = data.get("action")
    if not action or not isinstance(action, str):
        raise ValidationError("action is required", details={"action": "required"})

    if action == "start_followup":
        return StartFollowup(notes=_text(data, "notes"))
    if action == "mark_contacted":
        return MarkContacted(notes=_text(data, "notes"))
    if action == "resolve":
        return Resolve(resolution_notes=_text(data, "resolution_notes"))
    if action == "mark_recovered":
        return MarkRecovered(
            recovery_score=_score(data, "recovery_score"),
            resolution_notes=_text(data, "resolution_notes"),
        )
    if action == "escalate":
        return Escalate(reason=_text(data, "reason") or _text(data, "notes"))
    if action == "close_no_action":
        return CloseNoAction(resolution_notes=_text(data, "resolution_notes"))

    raise ValidationError(
        f"Unknown action {action!r}. Must be one of: {sorted(ACTION_TARGETS)}",
        details={"action": "invalid"},
    )


# ═════════════════════════════════════════════════════════════════════════════
# Validator
# ═════════════════════════════════════════════════════════════════════════════


def append_note(existing: str | None, note: str, now: datetime) -> str | None:
    """Append a timestamped entry to an append-only notes field."""
    if not note:
        return existing
    entry = f"[{now:%Y-%m-%d %H:%M}] {note}"
    return f"{existing}\n{entry}" if existing else entry


def validate_transition(case, payload: ActionPayload, now: datetime) -> TransitionOutcome:
    """Map (case state, action payload) to the transition to persist.

    ``case`` is read, never mutated. Only ``id``, ``status``,
    ``escalation_level`` and ``followup_notes`` are consulted.

    Raises:
        InvalidTransition: action not valid from the current status, or an
            automatic escalation beyond the level cap.
        MissingRequiredField: mark_recovered without recovery_score.
    """
    action = payload.action
    status = case.status

    if not is_action_allowed(status, action):
        raise InvalidTransition(case.id, status, action)

    updates: dict[str, Any] = {"status": ACTION_TARGETS[action]}

    if isinstance(payload, StartFollowup):
        updates["followup_date"] = now
        updates["followup_notes"] = append_note(case.followup_notes, payload.notes, now)

    elif isinstance(payload, MarkContacted):
        updates["followup_notes"] = append_note(case.followup_notes, payload.notes, now)

    elif isinstance(payload, Resolve):
        updates["closed_at"] = now
        updates["recovery_survey_scheduled_at"] = now + timedelta(days=RECOVERY_SURVEY_DELAY_DAYS)
        if payload.resolution_notes:
            updates["resolution_notes"] = payload.resolution_notes

    elif isinstance(payload, MarkRecovered):
        if payload.recovery_score is None:
            raise MissingRequiredField(action, "recovery_score")
        updates["closed_at"] = now
        updates["recovery_score"] = payload.recovery_score
        if payload.resolution_notes:
            updates["resolution_notes"] = payload.resolution_notes

    elif isinstance(payload, Escalate):
        level = case.escalation_level or 0
        if payload.automatic and level >= MAX_AUTO_ESCALATION_LEVEL:
            raise InvalidTransition(
                case.id, status, action,
                reason=f"automatic escalation capped at level {MAX_AUTO_ESCALATION_LEVEL}",
            )
        updates["escalation_level"] = level + 1
        updates["escalation_reason"] = payload.reason or None

    elif isinstance(payload, CloseNoAction):
        updates["closed_at"] = now
        if payload.resolution_notes:
            updates["resolution_notes"] = payload.resolution_notes

    return TransitionOutcome(
        action=action,
        from_status=status,
        new_status=updates["status"],
        updates=updates,
    )
