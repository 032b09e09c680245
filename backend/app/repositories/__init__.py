"""Repository abstractions for database interactions."""

from .contract_repository import ContractRepository
from .job_repository import JobKey, JobRepository, snapshot_job
from .market_repository import MarketRepository
from .transaction_repository import TransactionRepository
from .types import CursorLag, JobSnapshot
from .work_queue_repository import WorkQueueRepository
from .worker_log_repository import WorkerLogRepository

__all__ = [
    "ContractRepository",
    "CursorLag",
    "JobKey",
    "JobRepository",
    "JobSnapshot",
    "MarketRepository",
    "TransactionRepository",
    "WorkQueueRepository",
    "WorkerLogRepository",
    "snapshot_job",
]
