"""
Closed-Loop Feedback Engine
Notification sink.

In-app notifications for escalations and SLA-cap alerts. A notification is
addressed to one user id or broadcast to ``"all"``; every inbox read returns
the recipient's own rows plus broadcasts.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, or_, select

from closed_loop.models import db
from closed_loop.models.notification import (
    NOTIFICATION_CATEGORIES,
    NOTIFICATION_SEVERITIES,
    Notification,
)
from closed_loop.utils.helpers import utcnow

logger = logging.getLogger(__name__)

BROADCAST = "all"


class NotificationService:
    """Stateless service class for notification operations."""

    @staticmethod
    def create(*, title, message="", category="system", severity="info",
               recipient=BROADCAST, entity_type="", entity_id=None, commit=True):
        """
        Add one notification. Unknown category/severity values fall back to
        ``system`` / ``info`` instead of failing the caller's side effect.

        With commit=False the row is only added to the session so the caller
        can commit it together with other writes.
        """
        if category not in NOTIFICATION_CATEGORIES:
            category = "system"
        if severity not in NOTIFICATION_SEVERITIES:
            severity = "info"

        notif = Notification(
            recipient=recipient or BROADCAST,
            title=title,
            message=message,
            category=category,
            severity=severity,
            entity_type=entity_type,
            entity_id=entity_id,
        )
        db.session.add(notif)
        if commit:
            db.session.commit()
        logger.debug("Notification queued category=%s recipient=%s entity=%s/%s",
                     category, notif.recipient, entity_type, entity_id)
        return notif

    @staticmethod
    def list_for_recipient(recipient=BROADCAST, unread_only=False, limit=50, offset=0):
        """Newest first. Returns (items, total)."""
        stmt = select(Notification).where(
            or_(Notification.recipient == recipient, Notification.recipient == BROADCAST)
        )
        if unread_only:
            stmt = stmt.where(Notification.is_read.is_(False))

        total = db.session.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar()
        items = db.session.execute(
            stmt.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit)
        ).scalars().all()
        return items, total

    @staticmethod
    def exists_today(*, entity_type, entity_id, category):
        """True if this entity already got a notification of ``category`` today (UTC)."""
        midnight = datetime.combine(utcnow().date(), datetime.min.time(), tzinfo=timezone.utc)
        stmt = (
            select(Notification.id)
            .where(
                Notification.entity_type == entity_type,
                Notification.entity_id == entity_id,
                Notification.category == category,
                Notification.created_at >= midnight,
            )
            .limit(1)
        )
        return db.session.execute(stmt).first() is not None

    @staticmethod
    def mark_read(notification_id):
        """Returns the notification, or None when the id is unknown."""
        notif = db.session.get(Notification, notification_id)
        if notif and not notif.is_read:
            notif.mark_read()
            db.session.commit()
        return notif
