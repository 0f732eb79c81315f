"""
Closed-Loop Feedback Engine
Follow-up task queue.

Work items are plain rows in ``followup_tasks``; assignees pull them from
their queue. Escalations enqueue one task per committed escalate.
"""

import logging

from closed_loop.models import db
from closed_loop.models.notification import FollowupTask, TASK_PRIORITIES
from closed_loop.utils.helpers import utcnow

logger = logging.getLogger(__name__)


class TaskService:
    """Stateless service class for follow-up tasks."""

    @staticmethod
    def enqueue(*, kind, title, description="", entity_type="", entity_id=None,
                assignee=None, priority="medium", commit=True):
        """Add a work item to the assignee's queue (or the unrouted queue when None)."""
        if priority not in TASK_PRIORITIES:
            priority = "medium"
        task = FollowupTask(
            kind=kind,
            title=title,
            description=description,
            entity_type=entity_type,
            entity_id=entity_id,
            assignee=assignee,
            priority=priority,
            status="open",
        )
        db.session.add(task)
        if commit:
            db.session.commit()
        logger.debug("Task enqueued kind=%s entity=%s/%s assignee=%s",
                     kind, entity_type, entity_id, assignee)
        return task

    @staticmethod
    def list_open(assignee=None, limit=50):
        q = FollowupTask.query.filter(FollowupTask.status.in_(["open", "in_progress"]))
        if assignee is not None:
            q = q.filter_by(assignee=assignee)
        return q.order_by(FollowupTask.created_at.asc()).limit(limit).all()

    @staticmethod
    def complete(task_id):
        task = db.session.get(FollowupTask, task_id)
        if task and task.status != "done":
            task.status = "done"
            task.completed_at = utcnow()
            db.session.commit()
        return task
