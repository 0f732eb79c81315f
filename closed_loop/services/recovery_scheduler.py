"""
Closed-Loop Feedback Engine
Recovery Survey Scheduler — 30-day re-survey after resolution.

One pass:
    1. due cases: status in (resolved, recovered),
       recovery_survey_scheduled_at <= now, recovery_survey_sent_at IS NULL
    2. throttle check per (company, contact, "nps"). Throttled cases are left
       untouched and picked up again on a later pass.
    3. claim: UPDATE ... SET recovery_survey_sent_at = now
              WHERE id = :id AND version = :v AND recovery_survey_sent_at IS NULL
       together with a queued SurveyDispatch row, in one commit
    4. hand the survey to the delivery gateway after the commit

The claim is the only write of recovery_survey_sent_at, so at most one survey
goes out per resolve. A gateway failure marks the dispatch row failed; later
passes retry failed rows up to MAX_DISPATCH_ATTEMPTS without touching the case,
unless the throttle now blocks the contact, in which case the row is superseded.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any

from sqlalchemy import select, update

from closed_loop.core.exceptions import SurveyDispatchFailed
from closed_loop.integrations.survey_gateway import DispatchResult, SurveyGateway, survey_gateway
from closed_loop.models import db
from closed_loop.models.feedback import SURVEY_ELIGIBLE_STATUSES, FeedbackCase
from closed_loop.models.survey import MAX_DISPATCH_ATTEMPTS, SurveyDispatch
from closed_loop.services.survey_throttle import SurveyThrottle, survey_throttle
from closed_loop.utils.helpers import utcnow

logger = logging.getLogger(__name__)

RECOVERY_SURVEY_TYPE = "nps"


def find_due_cases(now: datetime) -> list:
    """Rows of (id, version, company_id, contact_id) due for a recovery survey."""
    stmt = (
        select(
            FeedbackCase.id, FeedbackCase.version,
            FeedbackCase.company_id, FeedbackCase.contact_id,
        )
        .where(
            FeedbackCase.status.in_(SURVEY_ELIGIBLE_STATUSES),
            FeedbackCase.recovery_survey_scheduled_at <= now,
            FeedbackCase.recovery_survey_sent_at.is_(None),
        )
        .order_by(FeedbackCase.recovery_survey_scheduled_at)
    )
    return db.session.execute(stmt).all()


def _claim(case_id: str, version: int, now: datetime) -> bool:
    """Stamp recovery_survey_sent_at if nobody else has. Does not commit."""
    stmt = (
        update(FeedbackCase)
        .where(
            FeedbackCase.id == case_id,
            FeedbackCase.version == version,
            FeedbackCase.recovery_survey_sent_at.is_(None),
        )
        .values(recovery_survey_sent_at=now, updated_at=now, version=version + 1)
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def _deliver(dispatch: SurveyDispatch, gateway: SurveyGateway, now: datetime) -> bool:
    """Send one dispatch through the gateway and record the outcome. Commits."""
    try:
        result = gateway.send_survey(
            dispatch.company_id, dispatch.contact_id, dispatch.survey_type,
            case_id=dispatch.case_id,
        )
    except Exception as exc:
        logger.exception("Survey gateway raised", extra={"case_id": dispatch.case_id})
        result = DispatchResult(False, None, str(exc), 0)
    dispatch.last_attempt_at = now
    if result.ok:
        dispatch.status = "sent"
        dispatch.error_message = None
        db.session.commit()
        return True

    dispatch.status = "failed"
    dispatch.error_message = result.error
    db.session.commit()
    logger.warning(
        "%s (attempt %d/%d)",
        SurveyDispatchFailed(dispatch.case_id, result.error or "unknown error"),
        dispatch.attempts, MAX_DISPATCH_ATTEMPTS,
        extra={"case_id": dispatch.case_id, "event_type": "survey_dispatch_failed"},
    )
    return False


def dispatch_recovery_surveys(
    *,
    now: datetime | None = None,
    timeout_seconds: float | None = None,
    throttle: SurveyThrottle | None = None,
    gateway: SurveyGateway | None = None,
) -> dict[str, Any]:
    """Send due recovery surveys, honouring the per-contact throttle.

    Returns:
        {"candidates", "dispatched", "throttled", "skipped", "failed", "timed_out"}
    """
    now = now or utcnow()
    throttle = throttle or survey_throttle
    gateway = gateway or survey_gateway
    deadline = time.monotonic() + timeout_seconds if timeout_seconds else None

    candidates = find_due_cases(now)
    results = {
        "candidates": len(candidates),
        "dispatched": 0,
        "throttled": 0,
        "skipped": 0,
        "failed": 0,
        "timed_out": False,
    }

    for case_id, version, company_id, contact_id in candidates:
        if deadline is not None and time.monotonic() >= deadline:
            results["timed_out"] = True
            logger.warning("Recovery survey pass stopped at deadline: %s", results)
            break

        try:
            if not throttle.can_send_survey(company_id, contact_id, RECOVERY_SURVEY_TYPE, now=now):
                results["throttled"] += 1
                logger.info(
                    "Recovery survey throttled company=%s contact=%s",
                    company_id, contact_id,
                    extra={"case_id": case_id, "event_type": "survey_throttled"},
                )
                continue

            if not _claim(case_id, version, now):
                db.session.rollback()
                results["skipped"] += 1
                continue

            dispatch = SurveyDispatch(
                case_id=case_id,
                company_id=company_id,
                contact_id=contact_id,
                survey_type=RECOVERY_SURVEY_TYPE,
                status="queued",
                attempts=1,
                sent_at=now,
            )
            db.session.add(dispatch)
            db.session.commit()

            if _deliver(dispatch, gateway, now):
                results["dispatched"] += 1
            else:
                results["failed"] += 1
        except Exception:
            db.session.rollback()
            results["failed"] += 1
            logger.exception(
                "Recovery survey dispatch failed",
                extra={"case_id": case_id, "event_type": "survey_dispatch_failed"},
            )

    logger.info("Recovery survey pass: %s", results)
    return results


def retry_failed_dispatches(
    *,
    now: datetime | None = None,
    throttle: SurveyThrottle | None = None,
    gateway: SurveyGateway | None = None,
    limit: int = 100,
) -> dict[str, int]:
    """Re-send failed dispatch rows that still have attempts left.

    The case row is never touched here; its recovery_survey_sent_at was
    stamped when the dispatch was first claimed. A row whose contact has
    since received another survey inside the throttle window is marked
    ``superseded`` and not re-sent.

    Returns:
        {"retried", "recovered", "failed", "superseded"}
    """
    now = now or utcnow()
    throttle = throttle or survey_throttle
    gateway = gateway or survey_gateway
    stmt = (
        select(SurveyDispatch)
        .where(
            SurveyDispatch.status == "failed",
            SurveyDispatch.attempts < MAX_DISPATCH_ATTEMPTS,
        )
        .order_by(SurveyDispatch.id)
        .limit(limit)
    )
    results = {"retried": 0, "recovered": 0, "failed": 0, "superseded": 0}
    for dispatch in db.session.execute(stmt).scalars().all():
        case_id = dispatch.case_id
        try:
            if not throttle.can_send_survey(
                dispatch.company_id, dispatch.contact_id, dispatch.survey_type,
                now=now, exclude_dispatch_id=dispatch.id,
            ):
                dispatch.status = "superseded"
                dispatch.error_message = "another survey reached this contact inside the throttle window"
                db.session.commit()
                results["superseded"] += 1
                logger.info(
                    "Failed survey dispatch %s superseded", dispatch.id,
                    extra={"case_id": case_id, "event_type": "survey_throttled"},
                )
                continue

            results["retried"] += 1
            dispatch.attempts += 1
            if _deliver(dispatch, gateway, now):
                results["recovered"] += 1
            else:
                results["failed"] += 1
        except Exception:
            db.session.rollback()
            results["failed"] += 1
            logger.exception("Survey dispatch retry failed", extra={"case_id": case_id})
    if results["retried"] or results["superseded"]:
        logger.info("Survey dispatch retries: %s", results)
    return results
