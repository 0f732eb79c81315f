"""
Closed-Loop Feedback Engine
Organizational hierarchy models.

Models:
    - Office:       a branch/office, optionally headed by a director
    - StaffMember:  a person who can own or receive escalated cases

Architecture:
    Office ──1:N──▶ StaffMember
    Office.director_id ──▶ StaffMember.user_id   (soft reference)
"""

from closed_loop.models import db
from closed_loop.utils.helpers import utcnow


STAFF_ROLES = {"agent", "office_director", "commercial_director"}


class Office(db.Model):
    __tablename__ = "offices"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    director_id = db.Column(db.String(150), nullable=True, comment="user_id of the office director")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    members = db.relationship("StaffMember", backref="office", lazy="dynamic")

    def to_dict(self):
        return {"id": self.id, "name": self.name, "director_id": self.director_id}

    def __repr__(self):
        return f"<Office {self.id}: {self.name}>"


class StaffMember(db.Model):
    __tablename__ = "staff_members"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(150), nullable=False, unique=True)
    full_name = db.Column(db.String(200), default="")
    office_id = db.Column(
        db.Integer, db.ForeignKey("offices.id", ondelete="SET NULL"),
        nullable=True, index=True,
    )
    role = db.Column(db.String(30), nullable=False, default="agent")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "full_name": self.full_name,
            "office_id": self.office_id,
            "role": self.role,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<StaffMember {self.user_id} ({self.role})>"
