"""
Closed-Loop Feedback Engine
SLA Scanner — automatic escalation of breached feedback cases.

One pass:
    candidates = open cases (pending / assigned / in_progress)
                 with sla_deadline < now, oldest deadline first
    each one goes through feedback_service.process_action with an automatic
    Escalate payload and the version read here as the expected version.

Idempotency comes from the transition itself: an escalated case leaves the
scanned status set. Two overlapping passes race on the version check and the
loser counts the case as skipped instead of escalating it twice.

Cases already at MAX_AUTO_ESCALATION_LEVEL are not escalated again. They get
one critical "max escalation reached" alert per day instead.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

from sqlalchemy import select

from closed_loop.core.exceptions import ConcurrentModification, InvalidTransition, NotFoundError
from closed_loop.models import db
from closed_loop.models.feedback import (
    MAX_AUTO_ESCALATION_LEVEL,
    SLA_BREACH_REASON,
    SLA_WATCHED_STATUSES,
    FeedbackCase,
)
from closed_loop.services import feedback_service
from closed_loop.services.escalation import (
    EscalationEmitter,
    EscalationResolver,
    escalation_emitter,
    escalation_resolver,
)
from closed_loop.services.feedback_transitions import Escalate
from closed_loop.utils.helpers import utcnow

logger = logging.getLogger(__name__)

JOB_ACTOR = "sla_escalation_scan"


def find_breached_cases(now: datetime) -> list:
    """Rows of (id, version, escalation_level) for every SLA-breached open case."""
    stmt = (
        select(FeedbackCase.id, FeedbackCase.version, FeedbackCase.escalation_level)
        .where(
            FeedbackCase.status.in_(SLA_WATCHED_STATUSES),
            FeedbackCase.sla_deadline < now,
        )
        .order_by(FeedbackCase.sla_deadline)
    )
    return db.session.execute(stmt).all()


def scan_sla_breaches(
    *,
    now: datetime | None = None,
    timeout_seconds: float | None = None,
    resolver: EscalationResolver | None = None,
    emitter: EscalationEmitter | None = None,
) -> dict[str, Any]:
    """Escalate every open case past its SLA deadline.

    Never raises for a single case: failures are logged and counted, and the
    pass moves on to the next candidate. When ``timeout_seconds`` elapses no
    new escalations are started; committed ones stay.

    Returns:
        {"candidates", "escalated", "skipped", "failed",
         "max_level_reached", "timed_out"}
    """
    now = now or utcnow()
    resolver = resolver or escalation_resolver
    emitter = emitter or escalation_emitter
    deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    candidates = find_breached_cases(now)
    results = {
        "candidates": len(candidates),
        "escalated": 0,
        "skipped": 0,
        "failed": 0,
        "max_level_reached": 0,
        "timed_out": False,
    }

    for case_id, version, level in candidates:
        if deadline is not None and time.monotonic() >= deadline:
            results["timed_out"] = True
            logger.warning(
                "SLA scan deadline reached after %d escalations; %d candidates left for next tick",
                results["escalated"],
                results["candidates"] - sum(results[k] for k in ("escalated", "skipped", "failed", "max_level_reached")),
            )
            break

        if (level or 0) >= MAX_AUTO_ESCALATION_LEVEL:
            results["max_level_reached"] += 1
            try:
                case = db.session.get(FeedbackCase, case_id)
                director = resolver.hierarchy.resolve_commercial_director()
                emitter.alert_escalation_cap(case, director)
            except Exception:
                db.session.rollback()
                logger.exception(
                    "Max-escalation alert failed",
                    extra={"case_id": case_id, "event_type": "sla_cap_alert_failed"},
                )
            continue

        try:
            feedback_service.process_action(
                case_id,
                Escalate(reason=SLA_BREACH_REASON, automatic=True),
                expected_version=version,
                actor=JOB_ACTOR,
                resolver=resolver,
                emitter=emitter,
                now=now,
            )
            results["escalated"] += 1
        except (ConcurrentModification, InvalidTransition, NotFoundError) as exc:
            # Changed by someone else since the candidate query; nothing to do
            db.session.rollback()
            results["skipped"] += 1
            logger.info("SLA scan skipped case: %s", exc, extra={"case_id": case_id})
        except Exception:
            db.session.rollback()
            results["failed"] += 1
            logger.exception(
                "SLA escalation failed",
                extra={"case_id": case_id, "event_type": "sla_escalation_failed"},
            )

    logger.info("SLA scan: %s", results)
    return results
