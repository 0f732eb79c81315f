"""
Closed-Loop Feedback Engine
Recovery metrics — explicit analytics step.

Invoked by the action processor after a committed mark_recovered. Runs in its
own commit so a failure here leaves the case exactly as the transition wrote it.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from closed_loop.models import db
from closed_loop.models.feedback import FeedbackCase, RecoveryMetrics
from closed_loop.utils.helpers import utcnow

logger = logging.getLogger(__name__)


def record_recovery(case: FeedbackCase) -> RecoveryMetrics:
    """Fold one recovered case into its company's aggregate.

    Idempotent per case: re-recording the last recorded case is a no-op.

    Raises:
        ValueError: if the case is not recovered or has no recovery score.
    """
    if case.status != "recovered" or case.recovery_score is None:
        raise ValueError(f"FeedbackCase {case.id} is not recovered")

    stmt = select(RecoveryMetrics).where(RecoveryMetrics.company_id == case.company_id)
    metrics = db.session.execute(stmt).scalar_one_or_none()
    if metrics is None:
        metrics = RecoveryMetrics(
            company_id=case.company_id,
            recovered_count=0,
            original_score_total=0.0,
            recovery_score_total=0.0,
        )
        db.session.add(metrics)
    elif metrics.last_recovered_case_id == case.id:
        return metrics

    metrics.recovered_count += 1
    metrics.original_score_total += case.original_score
    metrics.recovery_score_total += case.recovery_score
    metrics.last_recovered_case_id = case.id
    metrics.last_recovered_at = case.closed_at or utcnow()
    db.session.commit()

    logger.info(
        "Recovery metrics updated company=%s recovered=%d",
        case.company_id, metrics.recovered_count,
        extra={"case_id": case.id, "event_type": "recovery_metrics"},
    )
    return metrics


def get_recovery_metrics(company_id: str) -> dict:
    """Aggregate for one company, plus live case counts by status."""
    stmt = select(RecoveryMetrics).where(RecoveryMetrics.company_id == company_id)
    metrics = db.session.execute(stmt).scalar_one_or_none()

    counts_stmt = (
        select(FeedbackCase.status, db.func.count(FeedbackCase.id))
        .where(FeedbackCase.company_id == company_id)
        .group_by(FeedbackCase.status)
    )
    by_status = {status: count for status, count in db.session.execute(counts_stmt)}
    total = sum(by_status.values())

    result = metrics.to_dict() if metrics else {
        "company_id": company_id,
        "recovered_count": 0,
        "avg_original_score": None,
        "avg_recovery_score": None,
        "avg_improvement": None,
        "last_recovered_case_id": None,
        "last_recovered_at": None,
    }
    result["cases_total"] = total
    result["cases_by_status"] = by_status
    result["recovery_rate_pct"] = (
        round(by_status.get("recovered", 0) / total * 100, 1) if total else 0.0
    )
    return result
