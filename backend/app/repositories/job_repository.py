"""Job record access, including row-locking reads."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from app.models import Job, JobStatus

from .types import JobSnapshot

JobKey = int | str


def snapshot_job(job: Job) -> JobSnapshot:
    return JobSnapshot(
        id=job.id,
        name=job.name,
        status=job.status,
        executor_count=job.executor_count or 0,
        last_run=job.last_run,
        timeout_seconds=job.timeout_seconds,
        interval_seconds=job.interval_seconds,
        config=dict(job.config) if job.config else None,
    )


class JobRepository:
    """Encapsulate job row reads and writes."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def get_job(self, job_key: JobKey, *, lock: bool = False) -> Job | None:
        """Load a job by id (int) or unique name (str).

        With ``lock=True`` the row is read with ``SELECT ... FOR UPDATE`` and stays
        locked until the surrounding transaction ends.
        """

        if isinstance(job_key, int):
            query = select(Job).where(Job.id == job_key)
        else:
            query = select(Job).where(Job.name == job_key)
        if lock:
            query = query.with_for_update()
        return self._session.execute(query).scalars().first()

    def list_jobs(self) -> list[Job]:
        return list(self._session.execute(select(Job).order_by(Job.id)).scalars().all())

    def list_schedulable_jobs(self) -> list[Job]:
        query = (
            select(Job)
            .where(Job.status != JobStatus.INACTIVE.value, Job.interval_seconds.is_not(None))
            .order_by(Job.id)
        )
        return list(self._session.execute(query).scalars().all())

    def ensure_job(
        self,
        *,
        name: str,
        interval_seconds: int | None,
        timeout_seconds: int | None = None,
        config: dict[str, Any] | None = None,
    ) -> tuple[Job, bool]:
        existing = self.get_job(name)
        if existing is not None:
            return existing, False
        job = Job(
            name=name,
            status=JobStatus.ACTIVE.value,
            executor_count=0,
            interval_seconds=interval_seconds,
            timeout_seconds=timeout_seconds,
            config=config,
        )
        self._session.add(job)
        self._session.flush()
        return job, True

    def mark_locked(self, job_id: int, *, now: datetime) -> bool:
        """Flip an ACTIVE, unheld job to LOCKED; ``False`` when the guard matched no row."""

        statement = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.executor_count < 1,
                Job.status == JobStatus.ACTIVE.value,
            )
            .values(
                executor_count=Job.executor_count + 1,
                status=JobStatus.LOCKED.value,
                last_run=now,
            )
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount == 1

    def mark_released(self, job_id: int) -> bool:
        statement = (
            update(Job)
            .where(Job.id == job_id)
            .values(
                executor_count=case(
                    (Job.executor_count > 0, Job.executor_count - 1), else_=0
                ),
                status=case(
                    (Job.status == JobStatus.LOCKED.value, JobStatus.ACTIVE.value),
                    else_=Job.status,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        return self._session.execute(statement).rowcount == 1
