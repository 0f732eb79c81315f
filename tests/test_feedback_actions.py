"""
Tests: action processor — persistence, optimistic concurrency, history and
post-commit side effects.

Covers:
    - Case intake validation and SLA defaults
    - Full happy path pending → in_progress → contacted → resolved
    - mark_recovered without a score leaves the case untouched
    - Double escalation with the same version (one wins, one conflicts)
    - A write racing in between read and compare-and-set
    - Emitter / metrics failures never roll back a committed transition
    - History events per accepted transition

All test data created via ORM helpers or the service itself.
The `session` autouse fixture rolls back after every test.
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import Mock

import pytest
from sqlalchemy import update

import closed_loop.services.feedback_service as svc
from closed_loop.core.exceptions import (
    ConcurrentModification,
    InvalidTransition,
    MissingRequiredField,
    NotFoundError,
    NotificationDeliveryFailed,
    ValidationError,
)
from closed_loop.models import db as _db
from closed_loop.models.feedback import FeedbackCase, FeedbackCaseEvent, RecoveryMetrics
from closed_loop.models.notification import FollowupTask, Notification
from closed_loop.services.escalation import EscalationResolver, SqlOrgHierarchy
from closed_loop.utils.helpers import as_utc, parse_datetime, utcnow


def _reload(case_id: str) -> FeedbackCase:
    _db.session.expire_all()
    return _db.session.get(FeedbackCase, case_id)


def _events(case_id: str) -> list[FeedbackCaseEvent]:
    return FeedbackCaseEvent.query.filter_by(case_id=case_id).order_by(FeedbackCaseEvent.id).all()


class _RacingResolver(EscalationResolver):
    """Commits a competing write to the case while routing is being resolved."""

    def __init__(self):
        super().__init__(SqlOrgHierarchy())

    def resolve(self, case):
        _db.session.execute(
            update(FeedbackCase)
            .where(FeedbackCase.id == case.id)
            .values(version=FeedbackCase.version + 1, assigned_to="someone-else")
        )
        _db.session.commit()
        return "dir-1"


# ═════════════════════════════════════════════════════════════════════════════
# 1. CASE INTAKE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_create_case_starts_pending_with_history():
    deadline = utcnow() + timedelta(hours=4)
    case = svc.create_case({
        "company_id": "comp-9",
        "contact_id": "c-7",
        "original_score": 2,
        "priority": "high",
        "sla_deadline": deadline.isoformat(),
    })
    assert case["status"] == "pending"
    assert case["version"] == 1
    assert case["escalation_level"] == 0
    assert case["original_score"] == 2.0
    assert abs((parse_datetime(case["sla_deadline"]) - deadline).total_seconds()) < 1

    events = _events(case["id"])
    assert [(e.action, e.to_status) for e in events] == [("create", "pending")]


@pytest.mark.unit
def test_create_case_with_owner_still_opens_pending():
    case = svc.create_case({"company_id": "comp-9", "original_score": 4, "assigned_to": "agent-7"})
    assert case["status"] == "pending"
    assert case["assigned_to"] == "agent-7"
    # start_followup is only valid from pending
    result = svc.process_action(case["id"], {"action": "start_followup"})
    assert result["new_status"] == "in_progress"


@pytest.mark.unit
def test_create_case_without_deadline_uses_priority_default():
    before = utcnow()
    case = svc.create_case({"company_id": "comp-1", "original_score": 1, "priority": "critical"})
    deadline = parse_datetime(case["sla_deadline"])
    assert abs((deadline - before).total_seconds() - 4 * 3600) < 120


@pytest.mark.unit
@pytest.mark.parametrize("data", [
    {"original_score": 3},
    {"company_id": "  ", "original_score": 3},
    {"company_id": "comp-1"},
    {"company_id": "comp-1", "original_score": "low"},
    {"company_id": "comp-1", "original_score": 3, "priority": "urgent"},
    {"company_id": "comp-1", "original_score": 3, "sla_deadline": "tomorrow"},
])
def test_create_case_rejects_invalid_input(data):
    with pytest.raises(ValidationError):
        svc.create_case(data)
    assert FeedbackCase.query.count() == 0


# ═════════════════════════════════════════════════════════════════════════════
# 2. LIFECYCLE
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_contacted_then_resolve_without_score_schedules_survey(make_case):
    """in_progress → contacted → resolved; resolve needs no recovery score."""
    case = make_case(status="in_progress")

    r1 = svc.process_action(case.id, {"action": "mark_contacted", "notes": "Spoke to client"})
    assert r1["new_status"] == "contacted"
    assert r1["version"] == 2

    r2 = svc.process_action(case.id, {"action": "resolve", "resolution_notes": "Replaced unit"})
    assert r2["new_status"] == "resolved"
    assert r2["version"] == 3

    stored = _reload(case.id)
    assert stored.recovery_score is None
    assert stored.closed_at is not None
    assert as_utc(stored.recovery_survey_scheduled_at) == as_utc(stored.closed_at) + timedelta(days=30)
    assert stored.resolution_notes == "Replaced unit"
    assert "Spoke to client" in stored.followup_notes


@pytest.mark.unit
def test_mark_recovered_without_score_is_rejected_and_case_unchanged(make_case):
    case = make_case(status="contacted")

    with pytest.raises(MissingRequiredField):
        svc.process_action(case.id, {"action": "mark_recovered"})

    stored = _reload(case.id)
    assert stored.status == "contacted"
    assert stored.version == 1
    assert stored.closed_at is None
    assert _events(case.id) == []


@pytest.mark.unit
def test_invalid_transition_leaves_case_untouched(make_case):
    case = make_case(status="resolved")
    with pytest.raises(InvalidTransition):
        svc.process_action(case.id, {"action": "escalate"})
    stored = _reload(case.id)
    assert stored.status == "resolved"
    assert stored.version == 1


@pytest.mark.unit
def test_unknown_case_raises_not_found():
    with pytest.raises(NotFoundError):
        svc.process_action("no-such-case", {"action": "start_followup"})


@pytest.mark.unit
def test_each_transition_writes_one_history_event(make_case):
    case = make_case(status="pending")
    svc.process_action(case.id, {"action": "start_followup"}, actor="agent-1")
    svc.process_action(case.id, {"action": "mark_contacted"}, actor="agent-1")
    svc.process_action(case.id, {"action": "close_no_action"}, actor="agent-1")

    history = svc.list_case_events(case.id)
    assert [(h["from_status"], h["to_status"]) for h in history] == [
        ("pending", "in_progress"),
        ("in_progress", "contacted"),
        ("contacted", "closed_no_action"),
    ]
    assert all(h["actor"] == "agent-1" and h["is_auto"] is False for h in history)


@pytest.mark.unit
def test_get_case_lists_allowed_actions(make_case):
    case = make_case(status="contacted")
    result = svc.get_case(case.id)
    assert result["allowed_actions"] == ["resolve", "mark_recovered", "escalate", "close_no_action"]


@pytest.mark.unit
def test_list_cases_filters_and_paginates(make_case):
    make_case(status="pending", company_id="a")
    make_case(status="pending", company_id="b")
    make_case(status="resolved", company_id="a")

    items, total = svc.list_cases(status="pending")
    assert total == 2
    items, total = svc.list_cases(company_id="a", limit=1)
    assert total == 2
    assert len(items) == 1

    with pytest.raises(ValidationError):
        svc.list_cases(status="bogus")


# ═════════════════════════════════════════════════════════════════════════════
# 3. OPTIMISTIC CONCURRENCY
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_double_escalate_same_version_one_wins(make_case, org):
    """Double-click: both requests carry version 1; exactly one commits."""
    case = make_case(status="in_progress", assigned_to=org["agent"])

    first = svc.process_action(case.id, {"action": "escalate"}, expected_version=1)
    assert first["new_status"] == "escalated"
    assert first["escalation_level"] == 1

    with pytest.raises(ConcurrentModification):
        svc.process_action(case.id, {"action": "escalate"}, expected_version=1)

    stored = _reload(case.id)
    assert stored.escalation_level == 1
    assert stored.version == 2
    assert len([e for e in _events(case.id) if e.action == "escalate"]) == 1
    assert Notification.query.filter_by(entity_id=case.id).count() == 1


@pytest.mark.unit
def test_write_between_read_and_update_is_rejected(make_case):
    """A competing commit after the read turns this write into a no-op."""
    case = make_case(status="pending")
    emitter = Mock()

    with pytest.raises(ConcurrentModification):
        svc.process_action(case.id, {"action": "escalate"}, resolver=_RacingResolver(), emitter=emitter)

    stored = _reload(case.id)
    assert stored.status == "pending"
    assert stored.escalation_level == 0
    assert stored.assigned_to == "someone-else"
    assert stored.version == 2
    emitter.emit.assert_not_called()
    assert _events(case.id) == []


@pytest.mark.unit
def test_stale_version_rejected_for_any_action(make_case):
    case = make_case(status="pending", version=4)
    with pytest.raises(ConcurrentModification) as exc_info:
        svc.process_action(case.id, {"action": "start_followup"}, expected_version=3)
    assert exc_info.value.expected_version == 3
    assert _reload(case.id).status == "pending"


# ═════════════════════════════════════════════════════════════════════════════
# 4. SIDE EFFECTS
# ═════════════════════════════════════════════════════════════════════════════


@pytest.mark.unit
def test_escalation_routes_and_emits_once(make_case, org):
    case = make_case(status="in_progress", assigned_to=org["agent"], priority="critical")

    result = svc.process_action(case.id, {"action": "escalate", "reason": "Threatened to churn"})

    assert result["escalated_to"] == org["director"]
    assert result["side_effects"] == {"notification": "sent"}
    notifs = Notification.query.filter_by(entity_id=case.id).all()
    assert len(notifs) == 1
    assert notifs[0].recipient == org["director"]
    assert notifs[0].severity == "critical"
    tasks = FollowupTask.query.filter_by(entity_id=case.id).all()
    assert len(tasks) == 1
    assert tasks[0].assignee == org["director"]
    assert tasks[0].kind == "feedback_escalation"
    assert "Threatened to churn" in tasks[0].description


@pytest.mark.unit
def test_unresolved_routing_still_escalates(make_case):
    """No hierarchy rows at all: case escalates with no manager and a broadcast."""
    case = make_case(status="pending", assigned_to="ghost")

    result = svc.process_action(case.id, {"action": "escalate"})

    assert result["new_status"] == "escalated"
    assert result["escalated_to"] is None
    assert result["side_effects"]["routing"] == "unresolved"
    notif = Notification.query.filter_by(entity_id=case.id).one()
    assert notif.recipient == "all"
    assert FollowupTask.query.filter_by(entity_id=case.id).one().assignee is None


@pytest.mark.unit
def test_hierarchy_lookup_error_does_not_block_escalation(make_case, org):
    case = make_case(status="in_progress", assigned_to=org["agent"])
    hierarchy = Mock()
    hierarchy.office_of.side_effect = RuntimeError("directory timeout")

    result = svc.process_action(
        case.id, {"action": "escalate"}, resolver=EscalationResolver(hierarchy),
    )

    assert result["new_status"] == "escalated"
    assert result["escalated_to"] is None
    assert result["side_effects"]["routing"] == "unresolved"
    stored = _reload(case.id)
    assert stored.escalation_level == 1
    assert stored.version == 2
    assert Notification.query.filter_by(entity_id=case.id).one().recipient == "all"


@pytest.mark.unit
def test_emitter_failure_does_not_roll_back_escalation(make_case, org):
    case = make_case(status="in_progress", assigned_to=org["agent"])
    emitter = Mock()
    emitter.emit.side_effect = NotificationDeliveryFailed(case.id, RuntimeError("sink down"))

    result = svc.process_action(case.id, {"action": "escalate"}, emitter=emitter)

    assert result["side_effects"]["notification"] == "failed"
    stored = _reload(case.id)
    assert stored.status == "escalated"
    assert stored.escalation_level == 1
    assert stored.escalated_to == org["director"]
    emitter.emit.assert_called_once()


@pytest.mark.unit
def test_emitter_write_failure_surfaces_as_delivery_failed(make_case, org, monkeypatch):
    """A broken notification store is reported, and the transition is kept."""
    from closed_loop.services import escalation

    def _boom(**_kwargs):
        raise RuntimeError("notifications table locked")

    monkeypatch.setattr(escalation.NotificationService, "create", staticmethod(_boom))
    case = make_case(status="in_progress", assigned_to=org["agent"])

    result = svc.process_action(case.id, {"action": "escalate"})

    assert result["side_effects"]["notification"] == "failed"
    assert _reload(case.id).status == "escalated"
    assert FollowupTask.query.count() == 0


@pytest.mark.unit
def test_mark_recovered_updates_company_metrics(make_case):
    a = make_case(status="contacted", company_id="acme", original_score=2)
    b = make_case(status="in_progress", company_id="acme", original_score=4)

    svc.process_action(a.id, {"action": "mark_recovered", "recovery_score": 9})
    result = svc.process_action(b.id, {"action": "mark_recovered", "recovery_score": 7})

    assert result["side_effects"] == {"recovery_metrics": "updated"}
    metrics = RecoveryMetrics.query.filter_by(company_id="acme").one()
    assert metrics.recovered_count == 2
    data = metrics.to_dict()
    assert data["avg_original_score"] == 3.0
    assert data["avg_recovery_score"] == 8.0
    assert data["avg_improvement"] == 5.0
    assert _reload(a.id).recovery_survey_scheduled_at is None


@pytest.mark.unit
def test_metrics_failure_does_not_roll_back_recovery(make_case, monkeypatch):
    def _boom(case):
        raise RuntimeError("analytics store unavailable")

    monkeypatch.setattr(svc, "record_recovery", _boom)
    case = make_case(status="contacted")

    result = svc.process_action(case.id, {"action": "mark_recovered", "recovery_score": 8})

    assert result["side_effects"]["recovery_metrics"] == "failed"
    stored = _reload(case.id)
    assert stored.status == "recovered"
    assert stored.recovery_score == 8.0
    assert RecoveryMetrics.query.count() == 0
