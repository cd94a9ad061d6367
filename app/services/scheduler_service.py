"""
Scheduler Service — background interval jobs.

Thread-based scheduler with an explicit lifecycle so tests can run a single
job deterministically instead of waiting on wall-clock intervals.

Architecture:
    - register_job: decorator that adds a job function to the registry
    - SchedulerService.schedule_interval: attach an interval (and an
      initial delay) to a registered job
    - SchedulerService.start / stop: one daemon thread per scheduled job,
      woken by a threading.Event so stop() returns promptly
    - SchedulerService.run_job: synchronous execution inside the app
      context; run history persisted in ScheduledJob
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from flask import Flask

from app.models import db
from app.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job Registry
# ═══════════════════════════════════════════════════════════════════════════

_job_registry: dict[str, Callable] = {}


def register_job(name: str):
    """Decorator to register a job function.

    Usage:
        @register_job("escalation_sweep")
        def run_escalation_sweep(app):
            ...
    """
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = fn
        return fn
    return decorator


def get_registered_jobs() -> dict[str, Callable]:
    """Return all registered job functions."""
    return dict(_job_registry)


class SchedulerService:
    """
    Lightweight scheduler service.

    Manages job registration, persistence, interval execution and lifecycle.
    Jobs are executed within Flask app context.
    """

    _app: Flask | None = None
    _intervals: dict[str, tuple[float, float]] = {}
    _threads: dict[str, threading.Thread] = {}
    _stop_event: threading.Event = threading.Event()
    _lock = threading.Lock()

    @classmethod
    def init_app(cls, app: Flask) -> None:
        """Initialize scheduler with Flask app context."""
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def schedule_interval(cls, job_name: str, seconds: float, initial_delay: float = 0) -> None:
        """Run ``job_name`` every ``seconds`` once started, first after ``initial_delay``."""
        if job_name not in _job_registry:
            raise KeyError(f"Unknown job: {job_name}")
        if seconds <= 0:
            raise ValueError("interval must be positive")
        cls._intervals[job_name] = (float(seconds), float(initial_delay))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """
        Ensure all registered jobs have a corresponding DB record.
        Creates missing records with their interval config.
        """
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            for name, _fn in _job_registry.items():
                existing = ScheduledJob.query.filter_by(job_name=name).first()
                if not existing:
                    seconds, delay = cls._intervals.get(name, (None, None))
                    job = ScheduledJob(
                        job_name=name,
                        description=(_fn.__doc__ or f"Scheduled job: {name}").strip(),
                        schedule_type="interval",
                        schedule_config={"seconds": seconds, "initial_delay": delay},
                        status="active",
                        is_enabled=True,
                    )
                    db.session.add(job)
                    created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    # ── Lifecycle ─────────────────────────────────────────────────────────

    @classmethod
    def start(cls) -> None:
        """Start one background thread per scheduled job. No-op if already running."""
        if not cls._app:
            raise RuntimeError("Scheduler not initialized")
        with cls._lock:
            if cls.is_running():
                return
            cls._stop_event = threading.Event()
            cls.ensure_jobs_registered()
            for name, (seconds, delay) in cls._intervals.items():
                thread = threading.Thread(
                    target=cls._loop, args=(name, seconds, delay, cls._stop_event),
                    name=f"scheduler-{name}", daemon=True,
                )
                cls._threads[name] = thread
                thread.start()
            logger.info("Scheduler started: %s", ", ".join(cls._intervals) or "no jobs")

    @classmethod
    def stop(cls, timeout: float = 5.0) -> None:
        """Signal all job threads to stop and wait for them."""
        with cls._lock:
            cls._stop_event.set()
            for thread in cls._threads.values():
                thread.join(timeout)
            cls._threads.clear()
        logger.info("Scheduler stopped")

    @classmethod
    def is_running(cls) -> bool:
        return any(t.is_alive() for t in cls._threads.values())

    @classmethod
    def _loop(cls, job_name: str, seconds: float, delay: float, stop_event: threading.Event) -> None:
        if stop_event.wait(delay):
            return
        while not stop_event.is_set():
            if cls._is_enabled(job_name):
                cls.run_job(job_name)
            else:
                logger.debug("Job %s is disabled, skipping tick", job_name)
            if stop_event.wait(seconds):
                return

    @classmethod
    def _is_enabled(cls, job_name: str) -> bool:
        try:
            with cls._app.app_context():
                record = ScheduledJob.query.filter_by(job_name=job_name).first()
                return record is None or bool(record.is_enabled)
        except Exception:
            logger.exception("Could not read job state for %s", job_name)
            return True

    # ── Execution ─────────────────────────────────────────────────────────

    @classmethod
    def run_job(cls, job_name: str) -> dict:
        """
        Execute a single job by name.

        Returns:
            Dict with status, duration_ms, result or error.
        """
        fn = _job_registry.get(job_name)
        if not fn:
            return {"status": "error", "error": f"Unknown job: {job_name}"}

        if not cls._app:
            return {"status": "error", "error": "Scheduler not initialized"}

        start = time.monotonic()
        result = None
        error = None
        status = "success"

        try:
            with cls._app.app_context():
                result = fn(cls._app)
        except Exception as exc:
            status = "failed"
            error = str(exc)
            logger.exception("Job %s failed: %s", job_name, exc)

        duration_ms = int((time.monotonic() - start) * 1000)

        # Update DB record
        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record:
                    job_record.record_run(
                        status=status,
                        duration_ms=duration_ms,
                        result=result if isinstance(result, dict) else {"output": str(result)},
                        error=error,
                    )
                    db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name)

        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def list_jobs(cls) -> list[dict]:
        """List all registered jobs with their DB status."""
        jobs = []
        for name in _job_registry:
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            seconds, delay = cls._intervals.get(name, (None, None))
            jobs.append({
                "job_name": name,
                "registered": True,
                "interval_seconds": seconds,
                "initial_delay_seconds": delay,
                "running": name in cls._threads and cls._threads[name].is_alive(),
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Enable or disable a scheduled job. Disabled jobs skip their ticks."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        return job_record.to_dict()
