"""Singleton jobs guarded by database row locks."""

from .base import SingletonJob
from .claims import CONDITIONAL_TOKENS_CONTRACT, ClaimsParserJob
from .health import IndexerHealthCheckJob
from .lock import (
    AlertType,
    JobLockError,
    JobLockManager,
    JobLockedError,
    JobNotFoundError,
    JobResult,
    JobResultStatus,
)
from .scheduler import JobScheduler, is_due

JOB_CLASSES: tuple[type[SingletonJob], ...] = (ClaimsParserJob, IndexerHealthCheckJob)

__all__ = [
    "AlertType",
    "CONDITIONAL_TOKENS_CONTRACT",
    "ClaimsParserJob",
    "IndexerHealthCheckJob",
    "JOB_CLASSES",
    "JobLockError",
    "JobLockManager",
    "JobLockedError",
    "JobNotFoundError",
    "JobResult",
    "JobResultStatus",
    "JobScheduler",
    "SingletonJob",
    "is_due",
]
