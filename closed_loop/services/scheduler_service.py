"""
Closed-Loop Feedback Engine
Scheduler Service — periodic background jobs.

In-process interval scheduler: one daemon thread per job, sleeping on a
shared stop Event between ticks. Jobs share no in-memory state; everything
they need is re-read from the database on each run.

    @register_job(name)      job functions in scheduled_jobs.py
    ScheduledJob rows        interval, enabled flag, last-run bookkeeping
    start() / stop()         timer threads (SCHEDULER_ENABLED=true)
    run_job(name)            one execution; also behind the manual trigger API

A job never overlaps with itself inside one process: a tick that finds the
previous run still going is recorded as ``skipped``.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from flask import Flask
from sqlalchemy import select

from closed_loop.models import db
from closed_loop.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator registering ``fn(app) -> dict`` under ``name``."""
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    return dict(_job_registry)


def _get_default_schedule(job_name: str, app_config) -> dict:
    """Interval for a job from app config (unknown jobs: hourly)."""
    intervals = {
        "sla_escalation_scan": app_config.get("SLA_SCAN_INTERVAL_SECONDS", 300),
        "recovery_survey_dispatch": app_config.get("RECOVERY_SCAN_INTERVAL_SECONDS", 900),
    }
    seconds = intervals.get(job_name, 3600)
    return {"seconds": seconds, "description": f"Every {seconds} seconds"}


class SchedulerService:
    """Registry persistence, timer threads and job execution."""

    _app: Flask | None = None
    _threads: dict[str, threading.Thread] = {}
    _stop_event: threading.Event = threading.Event()
    _job_locks: dict[str, threading.Lock] = {}

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        cls._job_locks = {name: threading.Lock() for name in _job_registry}
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create the missing ScheduledJob rows. Returns the rows created."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            existing = {
                name for (name,) in db.session.execute(select(ScheduledJob.job_name))
            }
            for name, fn in _job_registry.items():
                if name in existing:
                    continue
                job = ScheduledJob(
                    job_name=name,
                    description=(fn.__doc__ or f"Scheduled job: {name}").strip(),
                    schedule_type="interval",
                    schedule_config=_get_default_schedule(name, cls._app.config),
                    status="active",
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    # ── Timers ──────────────────────────────────────────────────────────────

    @classmethod
    def start(cls) -> list[str]:
        """Start a timer thread for every job not already running."""
        if not cls._app:
            raise RuntimeError("Scheduler not initialized")

        cls.ensure_jobs_registered()
        cls._stop_event.clear()
        started = []
        for name in _job_registry:
            thread = cls._threads.get(name)
            if thread and thread.is_alive():
                continue
            thread = threading.Thread(
                target=cls._loop, args=(name, cls._interval_for(name)),
                name=f"scheduler-{name}", daemon=True,
            )
            cls._threads[name] = thread
            thread.start()
            started.append(name)
        logger.info("Scheduler started: %s", started)
        return started

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        cls._stop_event.set()
        for name, thread in list(cls._threads.items()):
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Scheduler thread %s did not stop within %.1fs", name, timeout)
        cls._threads = {}
        logger.info("Scheduler stopped")

    @classmethod
    def is_running(cls) -> bool:
        return any(t.is_alive() for t in cls._threads.values())

    @classmethod
    def _interval_for(cls, job_name: str) -> float:
        """Interval stored on the job row, else the configured default."""
        with cls._app.app_context():
            record = db.session.execute(
                select(ScheduledJob).where(ScheduledJob.job_name == job_name)
            ).scalar_one_or_none()
            if record and record.interval_seconds:
                return float(record.interval_seconds)
        return float(_get_default_schedule(job_name, cls._app.config)["seconds"])

    @classmethod
    def _loop(cls, job_name: str, interval: float) -> None:
        # Event.wait is both the sleep and the shutdown signal
        while not cls._stop_event.wait(interval):
            if cls._is_enabled(job_name):
                cls.run_job(job_name)

    @classmethod
    def _is_enabled(cls, job_name: str) -> bool:
        try:
            with cls._app.app_context():
                record = ScheduledJob.query.filter_by(job_name=job_name).first()
                return record is None or bool(record.is_enabled)
        except Exception:
            logger.exception("Could not read enabled flag for %s", job_name)
            return False

    # ── Execution ───────────────────────────────────────────────────────────

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """Execute one job now.

        Returns:
            {job_name, status (success|failed|skipped), duration_ms, result, error}
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        lock = cls._job_locks.setdefault(job_name, threading.Lock())
        if not lock.acquire(blocking=False):
            logger.info("Job %s already running, skipping this tick", job_name,
                        extra={"job_name": job_name})
            cls._record(job_name, status="skipped")
            return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                    "result": None, "error": "already running"}

        started = time.monotonic()
        result = None
        error = None
        status = "success"
        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed", job_name, extra={"job_name": job_name})
        finally:
            lock.release()

        duration_ms = int((time.monotonic() - started) * 1000)
        cls._record(
            job_name, status=status, duration_ms=duration_ms, error=error,
            result=result if isinstance(result, dict) else {"output": str(result)},
        )
        logger.info("Job %s %s in %dms", job_name, status, duration_ms,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def _record(cls, job_name: str, **run) -> None:
        """Write run bookkeeping onto the job row; never raises."""
        try:
            with cls._app.app_context():
                record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if record:
                    record.record_run(**run)
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

    # ── Admin ───────────────────────────────────────────────────────────────

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name in _job_registry:
            record = ScheduledJob.query.filter_by(job_name=name).first()
            thread = cls._threads.get(name)
            jobs.append({
                "job_name": name,
                "registered": True,
                "running": bool(thread and thread.is_alive()),
                "db_record": record.to_dict() if record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        return record.to_dict() if record else None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or pause a job. Timer threads skip paused jobs."""
        record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not record:
            return None
        record.is_enabled = enabled
        record.status = "active" if enabled else "paused"
        db.session.commit()
        logger.info("Job %s %s", job_name, record.status, extra={"job_name": job_name})
        return record.to_dict()
