"""
Closed-Loop Feedback Engine
Escalation routing and side effects.

Escalation Resolver:
    office of the current assignee → that office's director
    → org-wide commercial director → None (escalation still proceeds)

Notification/Task Emitter:
    exactly one notification + one follow-up task per committed escalate.
    Runs after the transition commit; a failure here never rolls the
    transition back.

The hierarchy lookup sits behind ``OrgHierarchy`` so routing policy and
storage can change without touching the state machine. Tests pass a fake.

Usage:
    from closed_loop.services.escalation import escalation_resolver, escalation_emitter
    manager_id = escalation_resolver.resolve(case)
    escalation_emitter.emit(case)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from sqlalchemy import select

from closed_loop.core.exceptions import NotificationDeliveryFailed
from closed_loop.models import db
from closed_loop.models.feedback import MAX_AUTO_ESCALATION_LEVEL
from closed_loop.models.org import Office, StaffMember
from closed_loop.services.notification import NotificationService
from closed_loop.services.task_service import TaskService

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Organizational hierarchy
# ═════════════════════════════════════════════════════════════════════════════


class OrgHierarchy(ABC):
    """Manager lookup contract used by the escalation resolver."""

    @abstractmethod
    def office_of(self, user_id: str) -> int | None:
        """Office the person belongs to, or None."""

    @abstractmethod
    def resolve_office_director(self, office_id: int) -> str | None:
        """user_id of the office's director, or None."""

    @abstractmethod
    def resolve_commercial_director(self) -> str | None:
        """user_id of the org-wide commercial director, or None."""


class SqlOrgHierarchy(OrgHierarchy):
    """Hierarchy lookup backed by the ``offices`` / ``staff_members`` tables."""

    def office_of(self, user_id: str) -> int | None:
        stmt = select(StaffMember.office_id).where(
            StaffMember.user_id == user_id,
            StaffMember.is_active == True,  # noqa: E712
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def resolve_office_director(self, office_id: int) -> str | None:
        office = db.session.get(Office, office_id)
        if office is None:
            return None

        # Explicit director on the office wins, if that person is still active
        if office.director_id:
            active = db.session.execute(
                select(StaffMember.id).where(
                    StaffMember.user_id == office.director_id,
                    StaffMember.is_active == True,  # noqa: E712
                )
            ).first()
            if active:
                return office.director_id

        stmt = (
            select(StaffMember.user_id)
            .where(
                StaffMember.office_id == office_id,
                StaffMember.role == "office_director",
                StaffMember.is_active == True,  # noqa: E712
            )
            .order_by(StaffMember.id)
            .limit(1)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def resolve_commercial_director(self) -> str | None:
        stmt = (
            select(StaffMember.user_id)
            .where(
                StaffMember.role == "commercial_director",
                StaffMember.is_active == True,  # noqa: E712
            )
            .order_by(StaffMember.id)
            .limit(1)
        )
        return db.session.execute(stmt).scalar_one_or_none()


# ═════════════════════════════════════════════════════════════════════════════
# Escalation Resolver
# ═════════════════════════════════════════════════════════════════════════════


class EscalationResolver:
    """Deterministic next-manager lookup for a feedback case."""

    def __init__(self, hierarchy: OrgHierarchy) -> None:
        self.hierarchy = hierarchy

    def resolve(self, case) -> str | None:
        """Return the user_id to escalate to, or None if nobody can be found.

        An assignee who is their own office director is routed upward to the
        commercial director.
        """
        if case.assigned_to:
            office_id = self.hierarchy.office_of(case.assigned_to)
            if office_id is not None:
                director = self.hierarchy.resolve_office_director(office_id)
                if director and director != case.assigned_to:
                    return director
        return self.hierarchy.resolve_commercial_director()


# ═════════════════════════════════════════════════════════════════════════════
# Notification/Task Emitter
# ═════════════════════════════════════════════════════════════════════════════


def notification_severity(priority: str) -> str:
    return "critical" if priority == "critical" else "warning"


class EscalationEmitter:
    """Publishes the notification + follow-up task for a committed escalation."""

    def emit(self, case) -> None:
        """Write one notification and one task in a single commit.

        Raises:
            NotificationDeliveryFailed: if either write fails. Nothing from
                this call is persisted in that case; the case row is untouched.
        """
        recipient = case.escalated_to or "all"
        reason = case.escalation_reason or "manual escalation"
        try:
            NotificationService.create(
                title=f"Feedback case escalated (level {case.escalation_level})",
                message=(
                    f"Company {case.company_id}"
                    + (f", contact {case.contact_id}" if case.contact_id else "")
                    + f": original score {case.original_score:g}. Reason: {reason}."
                    + ("" if case.escalated_to else " No manager could be resolved; route manually.")
                ),
                category="escalation",
                severity=notification_severity(case.priority),
                recipient=recipient,
                entity_type="feedback_case",
                entity_id=case.id,
                commit=False,
            )
            TaskService.enqueue(
                kind="feedback_escalation",
                title=f"Follow up escalated feedback case {case.id[:8]}",
                description=(
                    f"Case {case.id} (original score {case.original_score:g}) "
                    f"escalated to level {case.escalation_level}. Reason: {reason}."
                ),
                entity_type="feedback_case",
                entity_id=case.id,
                assignee=case.escalated_to,
                priority=case.priority,
                commit=False,
            )
            db.session.commit()
        except Exception as exc:
            db.session.rollback()
            raise NotificationDeliveryFailed(case.id, exc) from exc

    def alert_escalation_cap(self, case, recipient: str | None) -> bool:
        """Raise a 'max escalation reached' alert for a breached case at the cap.

        Deduplicated per case per day. Returns True if an alert was written.
        """
        if NotificationService.exists_today(
            entity_type="feedback_case", entity_id=case.id, category="sla",
        ):
            return False
        NotificationService.create(
            title=f"Feedback case at max escalation level {MAX_AUTO_ESCALATION_LEVEL} still breaching SLA",
            message=(
                f"Case {case.id} for company {case.company_id} is {case.status} past its "
                f"SLA deadline and will not be escalated automatically any further."
            ),
            category="sla",
            severity="critical",
            recipient=recipient or "all",
            entity_type="feedback_case",
            entity_id=case.id,
        )
        return True


# Module-level singletons
escalation_resolver = EscalationResolver(SqlOrgHierarchy())
escalation_emitter = EscalationEmitter()
