"""
Closed-Loop Feedback Engine
Recovery survey dispatch log.

Every recovery re-survey handed to the delivery channel leaves one row here.
The throttle check reads these rows to enforce spacing per contact.
"""

from closed_loop.models import db
from closed_loop.utils.helpers import isoformat, utcnow


SURVEY_TYPES = {"nps", "csat"}
DISPATCH_STATUSES = {"queued", "sent", "failed", "superseded"}
# Rows that count against the per-contact throttle window
THROTTLING_STATUSES = ("queued", "sent")
MAX_DISPATCH_ATTEMPTS = 3


class SurveyDispatch(db.Model):
    __tablename__ = "survey_dispatches"

    id = db.Column(db.Integer, primary_key=True)
    case_id = db.Column(
        db.String(36), db.ForeignKey("feedback_cases.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    company_id = db.Column(db.String(64), nullable=False)
    contact_id = db.Column(db.String(64), nullable=True)
    survey_type = db.Column(db.String(20), nullable=False, default="nps")
    status = db.Column(db.String(20), nullable=False, default="queued",
                       comment="queued, sent, failed, superseded")
    error_message = db.Column(db.Text, nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=1)
    sent_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.Index("ix_survey_dispatch_throttle", "company_id", "contact_id", "survey_type", "sent_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "case_id": self.case_id,
            "company_id": self.company_id,
            "contact_id": self.contact_id,
            "survey_type": self.survey_type,
            "status": self.status,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "sent_at": isoformat(self.sent_at),
            "last_attempt_at": isoformat(self.last_attempt_at),
        }

    def __repr__(self):
        return f"<SurveyDispatch {self.id} {self.survey_type} → {self.company_id}/{self.contact_id} [{self.status}]>"
