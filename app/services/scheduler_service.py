"""
Employee Request Portal
Scheduler Service.

In-process job registry. Job functions register themselves together with
their default cadence:

    @register_job("workflow_timeout_sweep", minutes=15)
    def sweep_workflow_timeouts(app): ...

One ScheduledJob row per job holds the enable flag and run history. Jobs
are triggered by an external cron / worker (``flask run-job <name>``) or
the /scheduler API; a disabled job is skipped, not failed.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegisteredJob:
    name: str
    fn: Callable
    schedule_type: str
    schedule: dict = field(default_factory=dict)

    @property
    def description(self) -> str:
        doc = (self.fn.__doc__ or "").strip()
        return doc.splitlines()[0] if doc else f"Scheduled job: {self.name}"


_job_registry: dict[str, RegisteredJob] = {}


def register_job(name: str, *, minutes: int | None = None, daily_at: str | None = None):
    """Register a job function with an interval (*minutes*) or a daily
    ``HH:MM`` cadence. Without either the job is daily at midnight."""
    if minutes is not None:
        schedule_type, schedule = "interval", {"minutes": minutes,
                                               "description": f"Every {minutes} minute(s)"}
    else:
        hour, minute = (daily_at or "00:00").split(":")
        schedule_type, schedule = "cron", {"hour": hour, "minute": minute,
                                           "description": f"Daily at {hour}:{minute}"}

    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = RegisteredJob(name, fn, schedule_type, schedule)
        return fn
    return decorator


class SchedulerService:
    """Registration, persistence and execution of scheduled jobs."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs", len(_job_registry))

    @staticmethod
    def _record(job_name: str) -> ScheduledJob | None:
        return ScheduledJob.query.filter_by(job_name=job_name).first()

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        for job in _job_registry.values():
            if cls._record(job.name) is None:
                record = ScheduledJob(
                    job_name=job.name,
                    description=job.description,
                    schedule_type=job.schedule_type,
                    schedule_config=dict(job.schedule),
                    status="active",
                    is_enabled=True,
                )
                db.session.add(record)
                created.append(record)
        if created:
            db.session.commit()
            logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def run_job(cls, job_name: str, *, force: bool = False) -> dict:
        """
        Execute a single job by name.

        A disabled job is skipped unless *force* is set. Job exceptions are
        captured in the result and the job's run history, never raised.

        Returns:
            {"job_name", "status", "duration_ms", "result", "error"}
        """
        job = _job_registry.get(job_name)
        if job is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        record = cls._record(job_name)
        if record and not record.is_enabled and not force:
            logger.info("Job %s skipped (disabled)", job_name, extra={"job_name": job_name})
            return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                    "result": None, "error": None}

        start = time.monotonic()
        result, error, status = None, None, "success"
        try:
            result = job.fn(cls._app)
        except Exception as exc:
            db.session.rollback()
            status, error = "failed", str(exc)
            logger.exception("Job %s failed: %s", job_name, exc, extra={"job_name": job_name})
        duration_ms = int((time.monotonic() - start) * 1000)

        try:
            record = cls._record(job_name)
            if record:
                record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()
        except Exception:
            db.session.rollback()
            logger.exception("Failed to update job record for %s", job_name)

        logger.info("Job %s finished: %s in %dms", job_name, status, duration_ms,
                    extra={"job_name": job_name, "duration_ms": duration_ms})
        return {"job_name": job_name, "status": status, "duration_ms": duration_ms,
                "result": result, "error": error}

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for job in _job_registry.values():
            record = cls._record(job.name)
            jobs.append({
                "job_name": job.name,
                "registered": True,
                "schedule": job.schedule,
                "db_record": record.to_dict() if record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a job. None when the job has no record."""
        record = cls._record(job_name)
        if not record:
            return None
        record.is_enabled = enabled
        record.status = "active" if enabled else "paused"
        db.session.commit()
        logger.info("Job %s %s", job_name, "enabled" if enabled else "disabled",
                    extra={"job_name": job_name})
        return record.to_dict()
