"""
Closed-Loop Feedback Engine
Survey throttle — minimum spacing between surveys to the same contact.

Keyed by (company_id, contact_id, survey_type). Several open cases for one
contact must not turn into several surveys inside the cooldown window.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import select

from closed_loop.models import db
from closed_loop.models.survey import THROTTLING_STATUSES, SurveyDispatch
from closed_loop.utils.helpers import utcnow

_DEFAULT_MIN_INTERVAL_DAYS = 30


class SurveyThrottle:
    """Throttle check backed by the survey dispatch log."""

    def __init__(self, min_interval_days: int | None = None) -> None:
        self._min_interval_days = min_interval_days

    @property
    def min_interval(self) -> timedelta:
        days = self._min_interval_days
        if days is None:
            days = current_app.config.get("SURVEY_MIN_INTERVAL_DAYS", _DEFAULT_MIN_INTERVAL_DAYS)
        return timedelta(days=days)

    def can_send_survey(
        self,
        company_id: str,
        contact_id: str | None,
        survey_type: str,
        *,
        now: datetime | None = None,
        exclude_dispatch_id: int | None = None,
    ) -> bool:
        """True if no survey of this type reached this contact inside the window.

        Only queued and sent dispatches count against the window. A retry
        passes its own row as ``exclude_dispatch_id``.
        """
        since = (now or utcnow()) - self.min_interval
        stmt = select(SurveyDispatch.id).where(
            SurveyDispatch.company_id == company_id,
            SurveyDispatch.survey_type == survey_type,
            SurveyDispatch.status.in_(THROTTLING_STATUSES),
            SurveyDispatch.sent_at >= since,
        )
        if exclude_dispatch_id is not None:
            stmt = stmt.where(SurveyDispatch.id != exclude_dispatch_id)
        if contact_id is None:
            stmt = stmt.where(SurveyDispatch.contact_id.is_(None))
        else:
            stmt = stmt.where(SurveyDispatch.contact_id == contact_id)
        return db.session.execute(stmt.limit(1)).first() is None


survey_throttle = SurveyThrottle()
