"""
Closed-Loop Feedback Engine
Notification and follow-up task models.

Models:
    - Notification:  in-app notification record with read tracking
    - FollowupTask:  work item enqueued for a person (escalation follow-up)
"""

from closed_loop.models import db
from closed_loop.utils.helpers import isoformat, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_CATEGORIES = {"feedback", "escalation", "sla", "survey", "system"}
NOTIFICATION_SEVERITIES = {"info", "warning", "error", "critical", "success"}

TASK_STATUSES = {"open", "in_progress", "done", "cancelled"}
TASK_PRIORITIES = {"low", "medium", "high", "critical"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    recipient = db.Column(db.String(150), default="all", index=True, comment="User id or 'all' for broadcast")
    title = db.Column(db.String(300), nullable=False)
    message = db.Column(db.Text, default="")
    category = db.Column(db.String(30), default="system")
    severity = db.Column(db.String(20), default="info")

    # Link to source entity
    entity_type = db.Column(db.String(30), default="", comment="feedback_case/...")
    entity_id = db.Column(db.String(64), nullable=True, index=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def mark_read(self):
        self.is_read = True
        self.read_at = utcnow()

    def to_dict(self):
        return {
            "id": self.id,
            "recipient": self.recipient,
            "title": self.title,
            "message": self.message,
            "category": self.category,
            "severity": self.severity,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_read": self.is_read,
            "read_at": isoformat(self.read_at),
            "created_at": isoformat(self.created_at),
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"


class FollowupTask(db.Model):
    """
    Follow-up work item.

    Escalations enqueue one task for the manager the case was routed to;
    the task references the case so the assignee can pick it up from a queue.
    """

    __tablename__ = "followup_tasks"

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(50), nullable=False, comment="feedback_escalation/...")
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    entity_type = db.Column(db.String(30), default="")
    entity_id = db.Column(db.String(64), nullable=True, index=True)
    assignee = db.Column(db.String(150), nullable=True, index=True, comment="Null = unrouted queue")
    priority = db.Column(db.String(20), default="medium")
    status = db.Column(db.String(20), default="open")

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "description": self.description,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "assignee": self.assignee,
            "priority": self.priority,
            "status": self.status,
            "created_at": isoformat(self.created_at),
            "completed_at": isoformat(self.completed_at),
        }

    def __repr__(self):
        return f"<FollowupTask {self.id} {self.kind} → {self.assignee or 'unrouted'}>"
