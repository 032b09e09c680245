from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, SessionLocal
from app.models import WorkerLogStatus
from app.repositories import JobSnapshot
from app.services.alerts import AlertChannel, AlertSink, SlackAlertSink
from app.services.audit import AuditLog, AuditSink

from .lock import AlertType, JobLockManager, JobResult


class SingletonJob(ABC):
    """A periodic task that must never run twice at the same time.

    Subclasses implement :meth:`run`. Calling the instance routes the run
    through :class:`JobLockManager` using the job row named :attr:`name`.
    """

    name: ClassVar[str]
    default_interval_seconds: ClassVar[int | None] = None

    def __init__(
        self,
        *,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        lock_manager: JobLockManager | None = None,
        alert_sink: AlertSink | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session_factory = session_factory or SessionLocal
        self.lock_manager = lock_manager or JobLockManager(
            session_factory=self.session_factory, settings=self.settings
        )
        self.alerts = alert_sink or SlackAlertSink(self.settings)
        self.audit = audit or AuditLog(self.name, self.session_factory)

    @abstractmethod
    def run(self, job: JobSnapshot) -> Any:
        """Do one unit of work while holding the job lock."""

    def on_alert(self, job: JobSnapshot | None, alert_type: AlertType) -> None:
        if alert_type == AlertType.MISSING_JOB_DEFINITION:
            message = f"*[JOB ERROR]*: Job definition `{self.name}` is missing."
        else:
            last_run = job.last_run.isoformat() if job and job.last_run else "never"
            message = (
                f"*[JOB ERROR]*: Job `{self.name}` has been locked since {last_run}; "
                "it may need a manual reset."
            )
        self.alerts.notify(message, urgent=True, channel=AlertChannel.JOBS)
        self.audit.write_log(
            WorkerLogStatus.WARNING,
            f"Job alert {alert_type.value}",
            context={"job": self.name, "job_id": job.id if job else None},
        )

    def _run_logged(self, job: JobSnapshot) -> Any:
        self.audit.write_log(WorkerLogStatus.DEBUG, "Started single thread job")
        try:
            value = self.run(job)
        except Exception as exc:
            self.audit.write_log(WorkerLogStatus.ERROR, "Job failed", error=exc)
            raise
        self.audit.write_log(WorkerLogStatus.SUCCESS, "Job completed")
        return value

    def __call__(self) -> JobResult:
        result = self.lock_manager.run_singleton_job(
            self.name, self._run_logged, on_alert=self.on_alert
        )
        logger.info("Job {} finished with status {}", self.name, result.status.value)
        return result
