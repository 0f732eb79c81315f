"""
Shared pytest fixtures for the Closed-Loop Feedback Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: Seeded office hierarchy (agent → office director → commercial director)
    - make_case: Factory for FeedbackCase rows in any state
"""

from datetime import timedelta

import pytest

from closed_loop import create_app
from closed_loop.models import db as _db
from closed_loop.models.feedback import FeedbackCase
from closed_loop.models.org import Office, StaffMember
from closed_loop.utils.helpers import utcnow


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def org():
    """Seed one office with an agent and its director, plus a commercial director.

    Returns:
        dict of user ids: agent, director, commercial, office_id
    """
    office = Office(name="Bogotá Norte", director_id="dir-1")
    _db.session.add(office)
    _db.session.flush()
    _db.session.add_all([
        StaffMember(user_id="agent-1", full_name="Agent One", office_id=office.id, role="agent"),
        StaffMember(user_id="dir-1", full_name="Director One", office_id=office.id, role="office_director"),
        StaffMember(user_id="cd-1", full_name="Commercial Director", role="commercial_director"),
    ])
    _db.session.commit()
    return {"agent": "agent-1", "director": "dir-1", "commercial": "cd-1", "office_id": office.id}


@pytest.fixture()
def make_case():
    """Factory: insert a FeedbackCase directly, bypassing the action processor.

    Defaults to a pending, medium-priority case whose SLA is still open.
    """

    def _make(**overrides) -> FeedbackCase:
        now = utcnow()
        values = {
            "company_id": "comp-1",
            "contact_id": "contact-1",
            "original_score": 3.0,
            "priority": "medium",
            "status": "pending",
            "escalation_level": 0,
            "sla_deadline": now + timedelta(hours=24),
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }
        values.update(overrides)
        case = FeedbackCase(**values)
        _db.session.add(case)
        _db.session.commit()
        return case

    return _make
