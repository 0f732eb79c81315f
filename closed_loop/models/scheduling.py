"""
Closed-Loop Feedback Engine
Background job registry model.

One row per registered job (``sla_escalation_scan``,
``recovery_survey_dispatch``): its interval, enabled flag and the outcome of
the last run. Timer threads read ``is_enabled`` before every tick.
"""

from closed_loop.models import db
from closed_loop.utils.helpers import isoformat, utcnow


JOB_STATUSES = {"active", "paused", "failed"}


class ScheduledJob(db.Model):
    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.String(500), default="")
    schedule_type = db.Column(db.String(30), default="interval")
    schedule_config = db.Column(db.JSON, default=dict,
                                comment="{'seconds': 300, 'description': ...}")
    status = db.Column(db.String(20), default="active", comment="active, paused, failed")
    is_enabled = db.Column(db.Boolean, default=True)

    # Last run
    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success, failed, skipped")
    last_run_duration_ms = db.Column(db.Integer, nullable=True)
    last_run_result = db.Column(db.JSON, nullable=True, comment="Counts returned by the job")
    last_error = db.Column(db.Text, nullable=True)

    # Totals
    run_count = db.Column(db.Integer, default=0)
    error_count = db.Column(db.Integer, default=0)
    skip_count = db.Column(db.Integer, default=0, comment="Ticks that found the job still running")

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @property
    def interval_seconds(self):
        return (self.schedule_config or {}).get("seconds")

    def record_run(self, *, status="success", duration_ms=0, result=None, error=None):
        """Fold one execution into the row. Skipped ticks only bump skip_count."""
        if status == "skipped":
            self.skip_count = (self.skip_count or 0) + 1
            return
        self.last_run_at = utcnow()
        self.last_run_status = status
        self.last_run_duration_ms = duration_ms
        self.last_run_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.error_count = (self.error_count or 0) + 1
            self.last_error = str(error) if error else None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "schedule_type": self.schedule_type,
            "schedule_config": self.schedule_config,
            "interval_seconds": self.interval_seconds,
            "status": self.status,
            "is_enabled": self.is_enabled,
            "last_run_at": isoformat(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_run_duration_ms": self.last_run_duration_ms,
            "last_run_result": self.last_run_result,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "skip_count": self.skip_count,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} [{self.status}]>"
