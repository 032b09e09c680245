from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Iterable

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, SessionLocal, session_scope
from app.models import utcnow
from app.repositories import JobRepository, JobSnapshot, snapshot_job

from ..indexer import StopSignal
from .base import SingletonJob
from .lock import JobResult, as_utc


def is_due(job: JobSnapshot, now: datetime) -> bool:
    if job.interval_seconds is None:
        return False
    if job.last_run is None:
        return True
    return as_utc(now) - as_utc(job.last_run) >= timedelta(seconds=job.interval_seconds)


class JobScheduler:
    """Run registered singleton jobs whose interval has elapsed.

    Several scheduler instances may poll the same database; the job row lock
    guarantees that a job body still runs at most once at a time.
    """

    def __init__(
        self,
        jobs: Iterable[SingletonJob],
        *,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        self.jobs: dict[str, SingletonJob] = {job.name: job for job in jobs}
        self._session_factory = session_factory or SessionLocal
        self._clock = clock

    def due_jobs(self, now: datetime | None = None) -> list[JobSnapshot]:
        now = now or self._clock()
        with session_scope(self._session_factory) as session:
            snapshots = [snapshot_job(job) for job in JobRepository(session).list_schedulable_jobs()]
        return [job for job in snapshots if is_due(job, now)]

    def run_due(self, now: datetime | None = None) -> list[JobResult]:
        results: list[JobResult] = []
        for snapshot in self.due_jobs(now):
            job = self.jobs.get(snapshot.name)
            if job is None:
                logger.warning("No handler registered for job {}; skipping", snapshot.name)
                continue
            results.append(job())
        return results

    def run_forever(self, stop_event: StopSignal | None = None) -> None:
        stop_event = stop_event or threading.Event()
        interval = self.settings.job_scheduler_interval_seconds
        logger.info("Job scheduler started with jobs: {}", ", ".join(sorted(self.jobs)))
        while not stop_event.is_set():
            try:
                self.run_due()
            except Exception:  # noqa: BLE001
                logger.exception("Job scheduler cycle failed")
            stop_event.wait(interval)
        logger.info("Job scheduler stopped")
