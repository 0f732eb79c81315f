"""
Tests: escalation resolver fallback order, SQL-backed hierarchy lookups and
the notification/task emitter.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from closed_loop.core.exceptions import NotificationDeliveryFailed
from closed_loop.models import db as _db
from closed_loop.models.notification import FollowupTask, Notification
from closed_loop.models.org import Office, StaffMember
from closed_loop.services.escalation import (
    EscalationEmitter,
    EscalationResolver,
    OrgHierarchy,
    SqlOrgHierarchy,
    notification_severity,
)


class FakeHierarchy(OrgHierarchy):
    def __init__(self, offices=None, directors=None, commercial=None):
        self.offices = offices or {}
        self.directors = directors or {}
        self.commercial = commercial
        self.calls = []

    def office_of(self, user_id):
        self.calls.append(("office_of", user_id))
        return self.offices.get(user_id)

    def resolve_office_director(self, office_id):
        self.calls.append(("director", office_id))
        return self.directors.get(office_id)

    def resolve_commercial_director(self):
        self.calls.append(("commercial",))
        return self.commercial


def _case(assigned_to=None):
    return SimpleNamespace(id="case-1", assigned_to=assigned_to)


# ═════════════════════════════════════════════════════════════════════════════
# 1. RESOLVER FALLBACK ORDER
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
class TestEscalationResolver:

    def test_office_director_first(self):
        h = FakeHierarchy(offices={"a1": 10}, directors={10: "d10"}, commercial="cd")
        assert EscalationResolver(h).resolve(_case("a1")) == "d10"
        assert ("commercial",) not in h.calls

    def test_falls_back_to_commercial_director_without_office(self):
        h = FakeHierarchy(commercial="cd")
        assert EscalationResolver(h).resolve(_case("a1")) == "cd"

    def test_falls_back_when_office_has_no_director(self):
        h = FakeHierarchy(offices={"a1": 10}, commercial="cd")
        assert EscalationResolver(h).resolve(_case("a1")) == "cd"

    def test_director_assigned_to_own_case_goes_up(self):
        h = FakeHierarchy(offices={"d10": 10}, directors={10: "d10"}, commercial="cd")
        assert EscalationResolver(h).resolve(_case("d10")) == "cd"

    def test_unassigned_case_goes_to_commercial_director(self):
        h = FakeHierarchy(commercial="cd")
        assert EscalationResolver(h).resolve(_case(None)) == "cd"
        assert h.calls == [("commercial",)]

    def test_nobody_found_returns_none(self):
        assert EscalationResolver(FakeHierarchy()).resolve(_case("a1")) is None


# ═════════════════════════════════════════════════════════════════════════════
# 2. SQL HIERARCHY
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
class TestSqlOrgHierarchy:

    def test_seeded_org_routes_agent_to_director(self, org):
        resolver = EscalationResolver(SqlOrgHierarchy())
        assert resolver.resolve(_case(org["agent"])) == org["director"]

    def test_inactive_explicit_director_falls_back_to_role(self, org):
        StaffMember.query.filter_by(user_id="dir-1").update({"is_active": False})
        _db.session.add(StaffMember(user_id="dir-2", office_id=org["office_id"], role="office_director"))
        _db.session.commit()

        assert SqlOrgHierarchy().resolve_office_director(org["office_id"]) == "dir-2"

    def test_office_without_director_routes_to_commercial(self):
        office = Office(name="Medellín")
        _db.session.add(office)
        _db.session.flush()
        _db.session.add_all([
            StaffMember(user_id="a-9", office_id=office.id, role="agent"),
            StaffMember(user_id="cd-9", role="commercial_director"),
        ])
        _db.session.commit()

        assert EscalationResolver(SqlOrgHierarchy()).resolve(_case("a-9")) == "cd-9"

    def test_inactive_staff_has_no_office(self, org):
        StaffMember.query.filter_by(user_id="agent-1").update({"is_active": False})
        _db.session.commit()
        assert SqlOrgHierarchy().office_of("agent-1") is None

    def test_unknown_office(self):
        assert SqlOrgHierarchy().resolve_office_director(999) is None


# ═════════════════════════════════════════════════════════════════════════════
# 3. EMITTER
# ═════════════════════════════════════════════════════════════════════════════


def _escalated_case(make_case, **overrides):
    values = {
        "status": "escalated",
        "escalation_level": 1,
        "escalated_to": "dir-1",
        "escalation_reason": "Customer threatened to cancel",
    }
    values.update(overrides)
    return make_case(**values)


@pytest.mark.unit
class TestEscalationEmitter:

    def test_emits_one_notification_and_one_task(self, make_case):
        case = _escalated_case(make_case, priority="high")
        EscalationEmitter().emit(case)

        notif = Notification.query.one()
        assert notif.recipient == "dir-1"
        assert notif.category == "escalation"
        assert notif.severity == "warning"
        assert notif.entity_id == case.id
        assert "Customer threatened to cancel" in notif.message

        task = FollowupTask.query.one()
        assert task.assignee == "dir-1"
        assert task.priority == "high"
        assert case.id in task.description

    def test_failure_raises_and_persists_nothing(self, make_case, monkeypatch):
        from closed_loop.services import escalation

        def _boom(**_kwargs):
            raise RuntimeError("queue unavailable")

        monkeypatch.setattr(escalation.TaskService, "enqueue", staticmethod(_boom))
        case = _escalated_case(make_case)

        with pytest.raises(NotificationDeliveryFailed):
            EscalationEmitter().emit(case)
        assert Notification.query.count() == 0

    def test_cap_alert_deduplicated_per_day(self, make_case):
        case = make_case(status="in_progress", escalation_level=3)
        emitter = EscalationEmitter()

        assert emitter.alert_escalation_cap(case, "cd-1") is True
        assert emitter.alert_escalation_cap(case, "cd-1") is False

        notif = Notification.query.one()
        assert notif.severity == "critical"
        assert notif.category == "sla"
        assert notif.recipient == "cd-1"

    def test_cap_alert_broadcasts_without_recipient(self, make_case):
        case = make_case(status="pending", escalation_level=3)
        EscalationEmitter().alert_escalation_cap(case, None)
        assert Notification.query.one().recipient == "all"


@pytest.mark.unit
def test_notification_severity_by_priority():
    assert notification_severity("critical") == "critical"
    assert notification_severity("high") == "warning"
    assert notification_severity("low") == "warning"
