"""
Closed-Loop Feedback Engine
Feedback Service — case intake and the action processor.

Every state change of a feedback case goes through ``process_action``:

  1. parse the raw request into a typed action payload (boundary validation)
  2. load a fresh snapshot of the case
  3. run the pure transition validator
  4. escalate only: resolve the routing target (read-only lookups)
  5. persist with compare-and-set: UPDATE ... WHERE id = :id AND version = :v,
     plus one history event, in a single commit
  6. side effects after the commit: escalation notification + task, recovery
     metrics. Their failures are logged and never undo step 5.

Concurrency:
  Two writers holding the same version race on the conditional UPDATE; the
  loser matches zero rows and gets ConcurrentModification with the case
  untouched. The SLA scanner and the recovery scheduler rely on this to make
  overlapping ticks harmless.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select, update

from closed_loop.core.exceptions import (
    ConcurrentModification,
    NotFoundError,
    NotificationDeliveryFailed,
    RoutingUnresolved,
    ValidationError,
)
from closed_loop.models import db
from closed_loop.models.feedback import (
    CASE_PRIORITIES,
    CASE_STATUSES,
    FeedbackCase,
    FeedbackCaseEvent,
)
from closed_loop.services import feedback_transitions as transitions
from closed_loop.services.escalation import (
    EscalationEmitter,
    EscalationResolver,
    escalation_emitter,
    escalation_resolver,
)
from closed_loop.services.recovery_metrics import record_recovery
from closed_loop.utils.helpers import parse_datetime, utcnow

logger = logging.getLogger(__name__)


# ─── SLA defaults (hours), used when intake sends no explicit deadline ───────
_SLA_DEFAULT_HOURS: dict[str, int] = {
    "critical": 4,
    "high": 24,
    "medium": 48,
    "low": 72,
}


# ═════════════════════════════════════════════════════════════════════════════
# Internal helpers
# ═════════════════════════════════════════════════════════════════════════════


def _load_case(case_id: str) -> FeedbackCase:
    """Fetch the current stored row, bypassing any identity-map copy.

    Raises:
        NotFoundError: unknown id.
    """
    stmt = (
        select(FeedbackCase)
        .where(FeedbackCase.id == case_id)
        .execution_options(populate_existing=True)
    )
    case = db.session.execute(stmt).scalar_one_or_none()
    if case is None:
        raise NotFoundError("FeedbackCase", case_id)
    return case


def _compare_and_set(case_id: str, expected_version: int, values: dict) -> bool:
    """Conditional UPDATE guarded by ``version``. Returns False if the guard failed.

    Does not commit; the caller owns the transaction.
    """
    stmt = (
        update(FeedbackCase)
        .where(
            FeedbackCase.id == case_id,
            FeedbackCase.version == expected_version,
        )
        .values(**values, version=expected_version + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1


def _record_event(case_id: str, action: str, from_status: str, to_status: str,
                  *, actor: str | None, is_auto: bool, details: dict | None = None) -> None:
    db.session.add(FeedbackCaseEvent(
        case_id=case_id,
        action=action,
        from_status=from_status,
        to_status=to_status,
        actor=actor,
        is_auto=is_auto,
        details=details or None,
    ))


def _event_details(outcome: transitions.TransitionOutcome) -> dict:
    keep = ("escalation_level", "escalated_to", "escalation_reason", "recovery_score")
    return {k: outcome.updates[k] for k in keep if k in outcome.updates}


# ═════════════════════════════════════════════════════════════════════════════
# Case intake & reads
# ═════════════════════════════════════════════════════════════════════════════


def create_case(data: dict) -> dict:
    """Open a feedback case in ``pending`` from a detection event.

    Args:
        data: {company_id, original_score, priority?, sla_deadline?,
               contact_id?, assigned_to?}. Without ``sla_deadline`` the
               deadline is derived from the priority.

    Returns:
        Serialized FeedbackCase dict.

    Raises:
        ValidationError: missing/invalid field.
    """
    company_id = data.get("company_id")
    if company_id is None or str(company_id).strip() == "":
        raise ValidationError("company_id is required", details={"company_id": "required"})

    score = data.get("original_score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise ValidationError("original_score must be a number", details={"original_score": "invalid"})

    priority = data.get("priority") or "medium"
    if priority not in CASE_PRIORITIES:
        raise ValidationError(
            f"priority must be one of: {sorted(CASE_PRIORITIES)}",
            details={"priority": "invalid"},
        )

    now = utcnow()
    try:
        sla_deadline = parse_datetime(data.get("sla_deadline"))
    except ValueError as exc:
        raise ValidationError(str(exc), details={"sla_deadline": "invalid"}) from exc
    if sla_deadline is None:
        sla_deadline = now + timedelta(hours=_SLA_DEFAULT_HOURS[priority])

    contact_id = data.get("contact_id")
    assigned_to = data.get("assigned_to")

    case = FeedbackCase(
        company_id=str(company_id).strip(),
        contact_id=str(contact_id).strip() if contact_id not in (None, "") else None,
        original_score=float(score),
        priority=priority,
        status="pending",
        assigned_to=str(assigned_to).strip() if assigned_to not in (None, "") else None,
        escalation_level=0,
        sla_deadline=sla_deadline,
        version=1,
        created_at=now,
        updated_at=now,
    )
    db.session.add(case)
    db.session.flush()
    _record_event(case.id, "create", "", "pending", actor=data.get("actor"), is_auto=False)
    db.session.commit()

    logger.info(
        "Feedback case created company=%s priority=%s score=%s",
        case.company_id, case.priority, case.original_score,
        extra={"case_id": case.id, "event_type": "case_created"},
    )
    return case.to_dict()


def get_case(case_id: str) -> dict:
    """Raises NotFoundError for an unknown id."""
    case = _load_case(case_id)
    result = case.to_dict()
    result["allowed_actions"] = transitions.allowed_actions(case.status)
    return result


def list_cases(*, status: str | None = None, company_id: str | None = None,
               contact_id: str | None = None, limit: int = 50,
               offset: int = 0) -> tuple[list[dict], int]:
    """List cases newest first. Returns (items, total)."""
    if status and status not in CASE_STATUSES:
        raise ValidationError(f"status must be one of: {sorted(CASE_STATUSES)}")

    stmt = select(FeedbackCase)
    if status:
        stmt = stmt.where(FeedbackCase.status == status)
    if company_id:
        stmt = stmt.where(FeedbackCase.company_id == company_id)
    if contact_id:
        stmt = stmt.where(FeedbackCase.contact_id == contact_id)

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    rows = db.session.execute(
        stmt.order_by(FeedbackCase.created_at.desc()).limit(limit).offset(offset)
    ).scalars().all()
    return [r.to_dict() for r in rows], total


def list_case_events(case_id: str) -> list[dict]:
    """Transition history, oldest first. Raises NotFoundError for an unknown id."""
    _load_case(case_id)
    stmt = (
        select(FeedbackCaseEvent)
        .where(FeedbackCaseEvent.case_id == case_id)
        .order_by(FeedbackCaseEvent.id)
    )
    return [e.to_dict() for e in db.session.execute(stmt).scalars().all()]


# ═════════════════════════════════════════════════════════════════════════════
# Action processor
# ═════════════════════════════════════════════════════════════════════════════


def process_action(
    case_id: str,
    action: dict | transitions.ActionPayload,
    *,
    expected_version: int | None = None,
    actor: str | None = None,
    resolver: EscalationResolver | None = None,
    emitter: EscalationEmitter | None = None,
    now: datetime | None = None,
) -> dict:
    """Apply one action to a case.

    Args:
        case_id: FeedbackCase id.
        action: raw request dict (``{"action": ..., ...}``) or a parsed payload.
        expected_version: version the caller last read. When given and stale,
            the call fails with ConcurrentModification without validating.
        actor: user id, or job name for automatic actions.
        resolver, emitter: overrides for the module-level singletons.
        now: clock override.

    Returns:
        {id, action, previous_status, new_status, version, escalation_level,
         escalated_to, side_effects}

    Raises:
        ValidationError / MissingRequiredField: bad payload, before any write.
        NotFoundError: unknown case.
        InvalidTransition: action not valid from the current status.
        ConcurrentModification: the case changed since it was read.
    """
    payload = action if not isinstance(action, dict) else transitions.parse_action(action)
    resolver = resolver or escalation_resolver
    emitter = emitter or escalation_emitter
    now = now or utcnow()

    case = _load_case(case_id)
    if expected_version is None:
        expected_version = case.version
    elif case.version != expected_version:
        raise ConcurrentModification(case_id, expected_version)

    outcome = transitions.validate_transition(case, payload, now)
    values = dict(outcome.updates)
    values["updated_at"] = now

    routing_unresolved = False
    if outcome.action == "escalate":
        try:
            target = resolver.resolve(case)
        except Exception:
            # Routing never blocks the escalation itself
            db.session.rollback()
            logger.exception(
                "%s; hierarchy lookup raised", RoutingUnresolved(case_id),
                extra={"case_id": case_id, "event_type": "routing_unresolved"},
            )
            target = None
        values["escalated_to"] = target
        outcome.updates["escalated_to"] = target
        routing_unresolved = target is None

    is_auto = isinstance(payload, transitions.Escalate) and payload.automatic
    if not _compare_and_set(case_id, expected_version, values):
        db.session.rollback()
        logger.info(
            "Concurrent modification on %s (expected version %s)",
            outcome.action, expected_version,
            extra={"case_id": case_id, "event_type": "concurrent_modification"},
        )
        raise ConcurrentModification(case_id, expected_version)

    _record_event(
        case_id, outcome.action, outcome.from_status, outcome.new_status,
        actor=actor, is_auto=is_auto, details=_event_details(outcome),
    )
    db.session.commit()

    logger.info(
        "Feedback case %s: %s → %s",
        outcome.action, outcome.from_status, outcome.new_status,
        extra={"case_id": case_id, "event_type": "case_transition"},
    )

    # Reload the committed row for side effects and the response
    case = _load_case(case_id)
    side_effects: dict[str, str] = {}

    if outcome.action == "escalate":
        if routing_unresolved:
            logger.warning(
                "%s; case left unrouted for manual assignment", RoutingUnresolved(case_id),
                extra={"case_id": case_id, "event_type": "routing_unresolved"},
            )
            side_effects["routing"] = "unresolved"
        try:
            emitter.emit(case)
            side_effects["notification"] = "sent"
        except NotificationDeliveryFailed:
            logger.exception(
                "Escalation notification failed; transition kept",
                extra={"case_id": case_id, "event_type": "notification_failed"},
            )
            side_effects["notification"] = "failed"

    if outcome.action == "mark_recovered":
        try:
            record_recovery(case)
            side_effects["recovery_metrics"] = "updated"
        except Exception:
            db.session.rollback()
            logger.exception(
                "Recovery metrics update failed; transition kept",
                extra={"case_id": case_id, "event_type": "recovery_metrics_failed"},
            )
            side_effects["recovery_metrics"] = "failed"

    return {
        "id": case.id,
        "action": outcome.action,
        "previous_status": outcome.from_status,
        "new_status": case.status,
        "version": case.version,
        "escalation_level": case.escalation_level,
        "escalated_to": case.escalated_to,
        "side_effects": side_effects,
    }
