"""
Closed-Loop Feedback Engine
Feedback case domain models.

Models:
    - FeedbackCase:        detractor remediation case (aggregate root)
    - FeedbackCaseEvent:   append-only transition history for a case
    - RecoveryMetrics:     per-company recovery aggregate (analytics step)

Lifecycle states:
    FeedbackCase:  pending → in_progress → contacted → resolved | recovered
                   any non-terminal → escalated | closed_no_action

Concurrency:
    ``version`` is bumped on every accepted write. Writers use a conditional
    UPDATE ... WHERE version = :expected so a stale read can never overwrite
    a newer state (see services/feedback_service.py).
"""

import uuid

from closed_loop.models import db
from closed_loop.utils.helpers import isoformat, utcnow


def _uuid():
    return str(uuid.uuid4())


# ── Constants ────────────────────────────────────────────────────────────────

CASE_PRIORITIES = {"low", "medium", "high", "critical"}

CASE_STATUSES = {
    "pending", "assigned", "in_progress", "contacted",
    "resolved", "recovered", "escalated", "closed_no_action",
}

TERMINAL_STATUSES = frozenset({"resolved", "recovered", "closed_no_action"})

# Open buckets watched by the SLA scanner. The engine itself never writes
# "assigned" (intake always opens in pending); it is only accepted from rows
# written by external systems.
SLA_WATCHED_STATUSES = frozenset({"pending", "assigned", "in_progress"})

# Statuses the recovery survey scheduler may revisit (status is never changed).
SURVEY_ELIGIBLE_STATUSES = frozenset({"resolved", "recovered"})

CASE_ACTIONS = {
    "start_followup", "mark_contacted", "resolve",
    "mark_recovered", "escalate", "close_no_action",
}

MAX_AUTO_ESCALATION_LEVEL = 3
RECOVERY_SURVEY_DELAY_DAYS = 30
RECOVERY_SCORE_RANGE = (0, 10)

SLA_BREACH_REASON = "SLA breach - automatic escalation"


class FeedbackCase(db.Model):
    """
    Remediation case opened for a negative satisfaction signal.

    Created in ``pending`` by an external detection event and mutated only
    through the action processor. Never hard-deleted; terminal cases are
    retained for analytics.
    """

    __tablename__ = "feedback_cases"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)

    # Subject (weak references, looked up not owned)
    company_id = db.Column(db.String(64), nullable=False, index=True)
    contact_id = db.Column(db.String(64), nullable=True, index=True)

    original_score = db.Column(db.Float, nullable=False, comment="Score at detection (immutable)")
    recovery_score = db.Column(db.Float, nullable=True, comment="Set only on mark_recovered")
    priority = db.Column(db.String(20), nullable=False, default="medium")

    status = db.Column(db.String(30), nullable=False, default="pending", index=True)
    assigned_to = db.Column(db.String(150), nullable=True)
    escalated_to = db.Column(db.String(150), nullable=True)
    escalation_level = db.Column(db.Integer, nullable=False, default=0)
    escalation_reason = db.Column(db.Text, nullable=True)

    sla_deadline = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    followup_date = db.Column(db.DateTime(timezone=True), nullable=True)
    followup_notes = db.Column(db.Text, nullable=True, comment="Append-only follow-up log")
    resolution_notes = db.Column(db.Text, nullable=True)

    recovery_survey_scheduled_at = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    recovery_survey_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    events = db.relationship(
        "FeedbackCaseEvent", backref="case", lazy="dynamic",
        order_by="FeedbackCaseEvent.id",
    )

    __table_args__ = (
        db.Index("ix_feedback_case_sla_scan", "status", "sla_deadline"),
        db.Index("ix_feedback_case_survey_scan", "recovery_survey_scheduled_at", "recovery_survey_sent_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "contact_id": self.contact_id,
            "original_score": self.original_score,
            "recovery_score": self.recovery_score,
            "priority": self.priority,
            "status": self.status,
            "assigned_to": self.assigned_to,
            "escalated_to": self.escalated_to,
            "escalation_level": self.escalation_level,
            "escalation_reason": self.escalation_reason,
            "sla_deadline": isoformat(self.sla_deadline),
            "followup_date": isoformat(self.followup_date),
            "followup_notes": self.followup_notes,
            "resolution_notes": self.resolution_notes,
            "recovery_survey_scheduled_at": isoformat(self.recovery_survey_scheduled_at),
            "recovery_survey_sent_at": isoformat(self.recovery_survey_sent_at),
            "version": self.version,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "closed_at": isoformat(self.closed_at),
        }

    def __repr__(self):
        return f"<FeedbackCase {self.id[:8]} [{self.status}] L{self.escalation_level}>"


class FeedbackCaseEvent(db.Model):
    """Immutable record of an accepted transition on a feedback case.

    Append-only, written in the same DB transaction as the case update,
    so history and case state can never disagree.
    """

    __tablename__ = "feedback_case_events"

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(
        db.String(36), db.ForeignKey("feedback_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    action = db.Column(db.String(30), nullable=False)
    from_status = db.Column(db.String(30), nullable=False)
    to_status = db.Column(db.String(30), nullable=False)
    actor = db.Column(db.String(150), nullable=True, comment="User id, or job name for automatic actions")
    is_auto = db.Column(db.Boolean, nullable=False, default=False)
    details = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "case_id": self.case_id,
            "action": self.action,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "actor": self.actor,
            "is_auto": self.is_auto,
            "details": self.details or {},
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<FeedbackCaseEvent {self.action}: {self.from_status}→{self.to_status}>"


class RecoveryMetrics(db.Model):
    """Per-company recovery aggregate.

    Updated by an explicit analytics step after a committed mark_recovered,
    never inside the transition itself.
    """

    __tablename__ = "recovery_metrics"

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.String(64), nullable=False, unique=True)
    recovered_count = db.Column(db.Integer, nullable=False, default=0)
    original_score_total = db.Column(db.Float, nullable=False, default=0.0)
    recovery_score_total = db.Column(db.Float, nullable=False, default=0.0)
    last_recovered_case_id = db.Column(db.String(36), nullable=True)
    last_recovered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        count = self.recovered_count or 0
        avg_original = round(self.original_score_total / count, 2) if count else None
        avg_recovery = round(self.recovery_score_total / count, 2) if count else None
        return {
            "company_id": self.company_id,
            "recovered_count": count,
            "avg_original_score": avg_original,
            "avg_recovery_score": avg_recovery,
            "avg_improvement": (
                round(avg_recovery - avg_original, 2) if count else None
            ),
            "last_recovered_case_id": self.last_recovered_case_id,
            "last_recovered_at": isoformat(self.last_recovered_at),
        }

    def __repr__(self):
        return f"<RecoveryMetrics {self.company_id}: {self.recovered_count}>"
