"""Fan-out workers: independent per-entity tasks executed in parallel.

Unlike singleton jobs there is no shared cursor or job row; ``plan`` produces
self-contained items and ``execute`` handles exactly one of them, so any number
of items (and worker instances) can run side by side.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, ClassVar, Generic, TypeVar

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, SessionLocal, session_scope
from app.models import MarketStatus, WorkItemKind, WorkerLogStatus, utcnow
from app.repositories import MarketRepository, TransactionRepository, WorkQueueRepository
from app.repositories.pipeline_models import OutcomeChanceInput
from app.services.audit import AuditLog, AuditSink
from ingestion.chain_client import ChainClient, Web3ChainClient
from ingestion.derivation import fpmm_chances

ItemT = TypeVar("ItemT")


@dataclass(slots=True)
class FanOutReport(Generic[ItemT]):
    planned: int = 0
    succeeded: list[ItemT] = field(default_factory=list)
    failed: list[tuple[ItemT, BaseException]] = field(default_factory=list)


class FanOutWorker(ABC, Generic[ItemT]):
    name: ClassVar[str]

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        max_workers: int | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.max_workers = max_workers or self.settings.fanout_max_workers

    @abstractmethod
    def plan(self) -> list[ItemT]:
        """Enumerate the independent items to process this run."""

    @abstractmethod
    def execute(self, item: ItemT) -> Any:
        """Process exactly one item."""

    def on_item_error(self, item: ItemT, exc: BaseException) -> None:
        logger.opt(exception=exc).error("{}: item {} failed", self.name, item)

    def run(self) -> FanOutReport[ItemT]:
        items = self.plan()
        report: FanOutReport[ItemT] = FanOutReport(planned=len(items))
        if not items:
            logger.debug("{}: nothing to do", self.name)
            return report

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=self.name) as pool:
            futures = {pool.submit(self.execute, item): item for item in items}
            for future in as_completed(futures):
                item = futures[future]
                try:
                    future.result()
                except Exception as exc:  # noqa: BLE001
                    report.failed.append((item, exc))
                    self.on_item_error(item, exc)
                else:
                    report.succeeded.append(item)

        logger.info(
            "{}: processed {} items ({} succeeded, {} failed)",
            self.name,
            report.planned,
            len(report.succeeded),
            len(report.failed),
        )
        return report


@dataclass(slots=True, frozen=True)
class RefreshItem:
    market_id: int
    work_item_ids: tuple[int, ...]


class RefreshOutcomeChancesWorker(FanOutWorker[RefreshItem]):
    """Recompute outcome chances of markets the indexer flagged as changed.

    With ``refresh_all_active`` every ACTIVE market with position ids is
    refreshed on each run as well, queued or not.
    """

    name = "refresh_outcome_chances"

    def __init__(
        self,
        *,
        chain_client: ChainClient | None = None,
        session_factory: SessionFactory | None = None,
        audit: AuditSink | None = None,
        batch_size: int | None = None,
        refresh_all_active: bool | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.chain = chain_client or Web3ChainClient(settings=self.settings)
        self.session_factory = session_factory or SessionLocal
        self.audit = audit or AuditLog(self.name, self.session_factory)
        self.batch_size = batch_size or self.settings.fanout_batch_size
        self.refresh_all_active = (
            self.settings.fanout_refresh_all_active
            if refresh_all_active is None
            else refresh_all_active
        )

    def plan(self) -> list[RefreshItem]:
        kind = WorkItemKind.REFRESH_OUTCOME_CHANCES.value
        claimed_before = utcnow() - timedelta(seconds=self.settings.fanout_claim_timeout_seconds)
        with session_scope(self.session_factory) as session:
            queue = WorkQueueRepository(session)
            reclaimed = queue.release_stale_claims(kind, claimed_before=claimed_before)
            if reclaimed:
                logger.warning("{}: re-queued {} abandoned work items", self.name, reclaimed)
            by_market: dict[int, list[int]] = {}
            for work_item in queue.claim_pending(kind, limit=self.batch_size):
                by_market.setdefault(work_item.entity_id, []).append(work_item.id)
            if self.refresh_all_active:
                for market_id in MarketRepository(session).list_active_markets_with_positions():
                    by_market.setdefault(market_id, [])
        return [
            RefreshItem(market_id=market_id, work_item_ids=tuple(ids))
            for market_id, ids in sorted(by_market.items())
        ]

    def execute(self, item: RefreshItem) -> int:
        try:
            with session_scope(self.session_factory) as session:
                written = self._refresh(session, item)
                queue = WorkQueueRepository(session)
                for work_item_id in item.work_item_ids:
                    queue.mark_done(work_item_id)
        except Exception as exc:
            self._mark_failed(item, exc)
            raise
        return written

    def _refresh(self, session, item: RefreshItem) -> int:
        markets = MarketRepository(session)
        market = markets.get_market(item.market_id)
        cursor = markets.get_cursor(item.market_id)
        if market is None or cursor is None or not cursor.contract_address:
            raise LookupError(f"Market {item.market_id} has no contract to read balances from")
        if market.status != MarketStatus.ACTIVE.value:
            logger.debug("{}: market {} is {}; skipping", self.name, market.id, market.status)
            return 0

        outcomes = markets.list_outcomes(market.id)
        missing = [outcome.outcome_index for outcome in outcomes if not outcome.position_id]
        if not outcomes or missing:
            raise LookupError(f"Market {market.id} has outcomes without position ids: {missing}")

        balances = self.chain.balance_of_batch(
            [cursor.contract_address] * len(outcomes),
            [int(outcome.position_id) for outcome in outcomes],
        )
        if not balances:
            return 0

        total_supply = sum(balances)
        chances = fpmm_chances(balances)
        TransactionRepository(session).record_outcome_chances(
            [
                OutcomeChanceInput(
                    market_id=market.id,
                    outcome_id=outcome.id,
                    chance=chance,
                    supply=balance,
                    total_supply=total_supply,
                )
                for outcome, balance, chance in zip(outcomes, balances, chances)
            ]
        )
        return len(outcomes)

    def _mark_failed(self, item: RefreshItem, exc: BaseException) -> None:
        with session_scope(self.session_factory) as session:
            queue = WorkQueueRepository(session)
            for work_item_id in item.work_item_ids:
                queue.mark_failed(work_item_id, f"{type(exc).__name__}: {exc}")
        self.audit.write_log(
            WorkerLogStatus.ERROR,
            "Error while refreshing outcome chances",
            context={"market_id": item.market_id},
            error=exc,
        )


__all__ = [
    "FanOutReport",
    "FanOutWorker",
    "RefreshItem",
    "RefreshOutcomeChancesWorker",
]
