"""Database-row mutual exclusion for singleton periodic jobs.

``acquire`` locks the job row with ``SELECT ... FOR UPDATE``, validates it and
flips it to LOCKED with an UPDATE guarded on ``executor_count < 1`` in one
short transaction; ``release`` undoes that in a second transaction once the
task body has finished. The lock is advisory: a holder that dies between the
two leaves the row LOCKED until the stale-lock alert prompts an operator to
reset it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, SessionLocal
from app.models import JobStatus, utcnow
from app.repositories import JobKey, JobRepository, JobSnapshot, snapshot_job


class AlertType(str, Enum):
    MISSING_JOB_DEFINITION = "MISSING_JOB_DEFINITION"
    JOB_LOCK_TIMEOUT = "JOB_LOCK_TIMEOUT"


class JobResultStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED_LOCKED = "skipped_locked"
    SKIPPED_MISSING = "skipped_missing"


class JobLockError(RuntimeError):
    def __init__(self, job_key: JobKey, message: str) -> None:
        self.job_key = job_key
        super().__init__(message)


class JobNotFoundError(JobLockError):
    def __init__(self, job_key: JobKey) -> None:
        super().__init__(job_key, f"Job not found: {job_key!r}")


class JobLockedError(JobLockError):
    def __init__(self, job_key: JobKey, job: JobSnapshot, *, stale: bool) -> None:
        self.job = job
        self.stale = stale
        super().__init__(
            job_key,
            f"Job {job.name!r} is not available (status={job.status}, "
            f"executor_count={job.executor_count}, stale={stale})",
        )


OnAlert = Callable[[JobSnapshot | None, AlertType], None]
TaskBody = Callable[[JobSnapshot], Any]


@dataclass(slots=True)
class JobResult:
    job_key: JobKey
    status: JobResultStatus
    job: JobSnapshot | None = None
    value: Any = None
    error: BaseException | None = None
    alert: AlertType | None = None

    @property
    def ran(self) -> bool:
        return self.status in (JobResultStatus.COMPLETED, JobResultStatus.FAILED)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JobLockManager:
    """Acquire, execute and release singleton jobs guarded by their DB row."""

    def __init__(
        self,
        *,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
        on_alert: OnAlert | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._session_factory = session_factory or SessionLocal
        self._clock = clock
        self._on_alert = on_alert

    # ------------------------------------------------------------------
    # Staleness

    def timeout_for(self, job: JobSnapshot) -> timedelta:
        seconds = job.timeout_seconds or self.settings.job_default_timeout_seconds
        return timedelta(seconds=seconds)

    def is_stale(self, job: JobSnapshot, now: datetime | None = None) -> bool:
        """``now - last_run > timeout``; a job that never ran is not stale."""

        if job.last_run is None:
            return False
        now = as_utc(now or self._clock())
        return now - as_utc(job.last_run) > self.timeout_for(job)

    def _fire_alert(
        self, on_alert: OnAlert | None, job: JobSnapshot | None, alert_type: AlertType
    ) -> None:
        callback = on_alert or self._on_alert
        label = job.name if job is not None else "<missing>"
        if callback is None:
            logger.error("Job alert {} for {} (no alert handler configured)", alert_type.value, label)
            return
        try:
            callback(job, alert_type)
        except Exception:  # noqa: BLE001
            logger.exception("Alert handler failed for job {} ({})", label, alert_type.value)

    # ------------------------------------------------------------------
    # Lifecycle

    def _refuse(
        self, job_key: JobKey, snapshot: JobSnapshot, on_alert: OnAlert | None
    ) -> JobLockedError:
        stale = self.is_stale(snapshot)
        if stale:
            self._fire_alert(on_alert, snapshot, AlertType.JOB_LOCK_TIMEOUT)
        return JobLockedError(job_key, snapshot, stale=stale)

    def acquire(self, job_key: JobKey, on_alert: OnAlert | None = None) -> JobSnapshot:
        """Lock the job row and mark it LOCKED; raises ``JobLockError`` otherwise."""

        session = self._session_factory()
        try:
            repository = JobRepository(session)
            job = repository.get_job(job_key, lock=True)

            if job is None:
                session.rollback()
                self._fire_alert(on_alert, None, AlertType.MISSING_JOB_DEFINITION)
                raise JobNotFoundError(job_key)

            if (job.executor_count or 0) >= 1 or job.status != JobStatus.ACTIVE.value:
                snapshot = snapshot_job(job)
                session.rollback()
                raise self._refuse(job_key, snapshot, on_alert)

            job_id = job.id
            if not repository.mark_locked(job_id, now=self._clock()):
                # Another acquirer committed between our read and the update.
                session.rollback()
                snapshot = snapshot_job(repository.get_job(job_id))
                session.rollback()
                raise self._refuse(job_key, snapshot, on_alert)

            session.refresh(job)
            snapshot = snapshot_job(job)
            session.commit()
        except JobLockError:
            raise
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.debug("Acquired job {} (id={})", snapshot.name, snapshot.id)
        return snapshot

    def execute(self, task_body: TaskBody, job: JobSnapshot) -> tuple[Any, BaseException | None]:
        """Run the task body; every exception is caught and returned."""

        try:
            return task_body(job), None
        except Exception as exc:  # noqa: BLE001
            logger.exception("Job {} failed", job.name)
            return None, exc

    def release(self, job_id: int) -> JobSnapshot | None:
        """Decrement ``executor_count`` in SQL and reset LOCKED to ACTIVE."""

        session = self._session_factory()
        try:
            repository = JobRepository(session)
            if not repository.mark_released(job_id):
                session.rollback()
                logger.warning("Job {} disappeared before it could be released", job_id)
                return None
            snapshot = snapshot_job(repository.get_job(job_id))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        logger.debug("Released job {} (id={})", snapshot.name, snapshot.id)
        return snapshot

    def run_singleton_job(
        self,
        job_key: JobKey,
        task_body: TaskBody,
        on_alert: OnAlert | None = None,
    ) -> JobResult:
        try:
            job = self.acquire(job_key, on_alert)
        except JobNotFoundError:
            logger.warning("Job {!r} has no definition; skipping", job_key)
            return JobResult(
                job_key=job_key,
                status=JobResultStatus.SKIPPED_MISSING,
                alert=AlertType.MISSING_JOB_DEFINITION,
            )
        except JobLockedError as exc:
            if exc.stale:
                logger.warning("Job {!r} is held by a stale lock", job_key)
            else:
                logger.info("Job {!r} is already running; skipping", job_key)
            return JobResult(
                job_key=job_key,
                status=JobResultStatus.SKIPPED_LOCKED,
                job=exc.job,
                alert=AlertType.JOB_LOCK_TIMEOUT if exc.stale else None,
            )

        value, error = self.execute(task_body, job)

        try:
            self.release(job.id)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to release job {}; it stays locked until reset", job.name)

        return JobResult(
            job_key=job_key,
            status=JobResultStatus.FAILED if error is not None else JobResultStatus.COMPLETED,
            job=job,
            value=value,
            error=error,
        )


__all__ = [
    "AlertType",
    "JobLockError",
    "JobLockManager",
    "JobLockedError",
    "JobNotFoundError",
    "JobResult",
    "JobResultStatus",
    "OnAlert",
    "TaskBody",
]
