from __future__ import annotations

from typing import Any

from loguru import logger

from app.db import session_scope
from app.models import WorkerLogStatus
from app.repositories import CursorLag, JobSnapshot, MarketRepository
from app.services.alerts import AlertChannel
from ingestion.chain_client import ChainClient, Web3ChainClient

from ..errors import new_correlation_id
from .base import SingletonJob


class IndexerHealthCheckJob(SingletonJob):
    """Alert on every indexed market whose cursor trails the chain head too far."""

    name = "indexer_health_check"
    default_interval_seconds = 300

    def __init__(self, *, chain_client: ChainClient | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.chain = chain_client or Web3ChainClient(settings=self.settings)

    def run(self, job: JobSnapshot) -> list[CursorLag]:
        max_lag = int((job.config or {}).get("max_block_lag", self.settings.health_check_max_block_lag))
        chain_head = self.chain.get_block_number()

        with session_scope(self.session_factory) as session:
            lagging = MarketRepository(session).list_lagging_cursors(
                chain_head=chain_head, max_lag=max_lag
            )

        for lag in lagging:
            correlation_id = new_correlation_id()
            message = (
                f"Market {lag.market_id} is {lag.difference} blocks behind "
                f"current block ({chain_head})."
            )
            updated = lag.updated_at.isoformat() if lag.updated_at else "unknown"
            self.alerts.notify(
                f"{message}\n"
                f"- Error ID: `{correlation_id}`\n"
                f"- Last processed block: `{lag.last_processed_block}`\n"
                f"- Last update: `{updated}`",
                urgent=True,
                channel=AlertChannel.INDEXER,
            )
            self.audit.write_log(
                WorkerLogStatus.WARNING,
                message,
                context={
                    "market_id": lag.market_id,
                    "chain_head": chain_head,
                    "last_processed_block": lag.last_processed_block,
                    "difference": lag.difference,
                },
                correlation_id=correlation_id,
            )

        if not lagging:
            logger.debug("{}: all cursors within {} blocks of {}", self.name, max_lag, chain_head)
        return lagging
