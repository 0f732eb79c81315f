"""
Closed-Loop Feedback Engine
Inbox Blueprint — escalation notifications and follow-up tasks.

Routes:
    GET    /api/v1/notifications?recipient=&unread_only=
    PATCH  /api/v1/notifications/<id>/read
    GET    /api/v1/tasks?assignee=
    PATCH  /api/v1/tasks/<id>/complete
"""

import logging

from flask import Blueprint, jsonify, request

from closed_loop.blueprints import pagination_args
from closed_loop.services.notification import NotificationService
from closed_loop.services.task_service import TaskService

logger = logging.getLogger(__name__)

inbox_bp = Blueprint("inbox", __name__, url_prefix="/api/v1")


@inbox_bp.route("/notifications", methods=["GET"])
def list_notifications():
    """Notifications addressed to ``recipient`` plus broadcasts."""
    recipient = request.args.get("recipient", "all")
    unread_only = request.args.get("unread_only", "false").lower() == "true"
    limit, offset = pagination_args()
    items, total = NotificationService.list_for_recipient(
        recipient=recipient, unread_only=unread_only, limit=limit, offset=offset,
    )
    return jsonify({"items": [n.to_dict() for n in items], "total": total})


@inbox_bp.route("/notifications/<int:notification_id>/read", methods=["PATCH"])
def mark_notification_read(notification_id):
    notif = NotificationService.mark_read(notification_id)
    if not notif:
        return jsonify({"error": "Notification not found"}), 404
    return jsonify(notif.to_dict())


@inbox_bp.route("/tasks", methods=["GET"])
def list_tasks():
    """Open follow-up tasks, optionally for one assignee."""
    limit, _offset = pagination_args()
    tasks = TaskService.list_open(assignee=request.args.get("assignee"), limit=limit)
    return jsonify({"items": [t.to_dict() for t in tasks], "total": len(tasks)})


@inbox_bp.route("/tasks/<int:task_id>/complete", methods=["PATCH"])
def complete_task(task_id):
    task = TaskService.complete(task_id)
    if not task:
        return jsonify({"error": "Task not found"}), 404
    return jsonify(task.to_dict())
