"""Per-market event indexer.

Each cycle reads one block window from the market maker contract, derives the
funding and share records it implies and advances the market's chain cursor,
all inside a single database transaction. Either the whole window lands or
nothing does, so a failed cycle is retried over the identical window.
"""

from __future__ import annotations

import sys
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

from loguru import logger
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.db import SessionFactory, SessionLocal
from app.domain import (
    MARKET_EVENT_KINDS,
    BlockWindow,
    BuyEvent,
    ChainEvent,
    FundingAddedEvent,
    FundingRemovedEvent,
    SellEvent,
)
from app.models import (
    FundingTransactionType,
    Market,
    MarketStatus,
    ShareTransactionType,
    WorkItemKind,
    WorkerLogStatus,
)
from app.repositories import MarketRepository, TransactionRepository, WorkQueueRepository
from app.repositories.pipeline_models import (
    FundingAllocationInput,
    FundingTransactionInput,
    ShareTransactionInput,
)
from app.services.alerts import AlertChannel, AlertSink, SlackAlertSink
from app.services.audit import AuditLog, AuditSink
from ingestion.chain_client import ChainClient, ChainTimeoutError, Web3ChainClient
from ingestion.derivation import funding_collateral, merge_chain_order, split_funding

from .errors import DataIntegrityError, TransientIndexerError, new_correlation_id


class StopSignal(Protocol):
    def is_set(self) -> bool:
        ...

    def wait(self, timeout: float | None = None) -> bool:
        ...


class IndexerState(str, Enum):
    COMPUTE_WINDOW = "compute_window"
    FETCH_EVENTS = "fetch_events"
    PERSIST = "persist"
    ADVANCE_CURSOR = "advance_cursor"
    COMMIT = "commit"
    ROLLBACK = "rollback"
    SLEEP = "sleep"


@dataclass(slots=True)
class CycleResult:
    market_id: int
    state: IndexerState
    chain_head: int | None = None
    window: BlockWindow | None = None
    events_applied: int = 0
    market_activated: bool = False

    @property
    def committed(self) -> bool:
        return self.state == IndexerState.COMMIT


def process_name(kind: str, market_id: int) -> str:
    return f"{kind}_{market_id}"


def compute_window(
    last_processed_block: int,
    window_size: int,
    chain_head: int,
    confirmation_lag: int,
) -> BlockWindow | None:
    """Next block range to index, or ``None`` when no new safe block exists.

    ``from = last + 1`` and ``to = min(from + window_size - 1, chain_head - lag)``.
    """

    if window_size < 1:
        raise ValueError(f"window_size must be positive, got {window_size}")
    if confirmation_lag < 0:
        raise ValueError(f"confirmation_lag must not be negative, got {confirmation_lag}")

    from_block = last_processed_block + 1
    safe_head = chain_head - confirmation_lag
    to_block = min(from_block + window_size - 1, safe_head)
    if from_block > to_block:
        return None
    return BlockWindow(from_block=from_block, to_block=to_block)


class MarketIndexer:
    """Advance one market's chain cursor window by window."""

    def __init__(
        self,
        market_id: int,
        *,
        chain_client: ChainClient,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        alert_sink: AlertSink | None = None,
        audit: AuditSink | None = None,
    ) -> None:
        self.market_id = market_id
        self.settings = settings or get_settings()
        self.name = process_name(self.settings.supervisor_process_kind, market_id)
        self.state = IndexerState.SLEEP
        self._chain = chain_client
        self._session_factory = session_factory or SessionLocal
        self._alerts = alert_sink or SlackAlertSink(self.settings)
        self._audit = audit or AuditLog(self.name, self._session_factory)

    def _transition(self, state: IndexerState) -> None:
        self.state = state
        logger.trace("{} -> {}", self.name, state.value)

    def _rollback(self, session: Session) -> None:
        self._transition(IndexerState.ROLLBACK)
        # A failing rollback propagates and takes the process down.
        session.rollback()

    # ------------------------------------------------------------------
    # Cycle

    def run_cycle(self) -> CycleResult:
        """Run one COMPUTE_WINDOW → ... → COMMIT|ROLLBACK pass."""

        session = self._session_factory()
        try:
            result = self._run_cycle(session)
        except ChainTimeoutError as exc:
            self._rollback(session)
            raise TransientIndexerError(str(exc)) from exc
        except Exception:
            self._rollback(session)
            raise
        finally:
            session.close()

        self._transition(IndexerState.SLEEP)
        return result

    def _run_cycle(self, session: Session) -> CycleResult:
        self._transition(IndexerState.COMPUTE_WINDOW)
        markets = MarketRepository(session)

        market = markets.get_market(self.market_id)
        if market is None:
            raise DataIntegrityError(
                f"Market {self.market_id} does not exist",
                context={"market_id": self.market_id},
            )
        cursor = markets.get_cursor(self.market_id)
        if cursor is None or not cursor.contract_address:
            raise DataIntegrityError(
                f"Market {self.market_id} has no chain cursor with a contract address",
                context={"market_id": self.market_id},
            )
        if cursor.window_size < 1:
            raise DataIntegrityError(
                f"Market {self.market_id} has an invalid window size {cursor.window_size}",
                context={"market_id": self.market_id, "window_size": cursor.window_size},
            )

        chain_head = self._chain.get_block_number()
        last_processed_block = cursor.last_processed_block
        window = compute_window(
            last_processed_block,
            cursor.window_size,
            chain_head,
            self.settings.indexer_confirmation_lag,
        )
        if window is None:
            self._rollback(session)
            logger.debug(
                "{}: no new safe blocks (cursor={}, head={})",
                self.name,
                last_processed_block,
                chain_head,
            )
            return CycleResult(
                market_id=self.market_id, state=IndexerState.ROLLBACK, chain_head=chain_head
            )

        self._transition(IndexerState.FETCH_EVENTS)
        contract_address = cursor.contract_address
        streams = [
            self._chain.query_events(kind, contract_address, window.from_block, window.to_block)
            for kind in MARKET_EVENT_KINDS
        ]
        events = merge_chain_order(*streams)

        self._transition(IndexerState.PERSIST)
        funding_applied = self._persist_events(session, markets, market, events)

        market_activated = False
        if events:
            WorkQueueRepository(session).enqueue(
                WorkItemKind.REFRESH_OUTCOME_CHANCES.value, market.id
            )
        if (
            funding_applied
            and market.status != MarketStatus.ACTIVE.value
            and self._chain.can_trade(contract_address)
        ):
            market_activated = markets.activate_market(market)

        self._transition(IndexerState.ADVANCE_CURSOR)
        markets.advance_cursor(cursor, window.to_block)

        self._transition(IndexerState.COMMIT)
        session.commit()

        logger.info(
            "{}: applied {} events in blocks {}-{} (head={})",
            self.name,
            len(events),
            window.from_block,
            window.to_block,
            chain_head,
        )
        if market_activated:
            logger.info("{}: market {} is tradeable and now active", self.name, market.id)

        return CycleResult(
            market_id=self.market_id,
            state=IndexerState.COMMIT,
            chain_head=chain_head,
            window=window,
            events_applied=len(events),
            market_activated=market_activated,
        )

    # ------------------------------------------------------------------
    # Persistence

    def _persist_events(
        self,
        session: Session,
        markets: MarketRepository,
        market: Market,
        events: list[ChainEvent],
    ) -> bool:
        transactions = TransactionRepository(session)
        funding_applied = False
        for event in events:
            if isinstance(event, FundingAddedEvent):
                self._persist_funding_added(markets, transactions, market, event)
                funding_applied = True
            elif isinstance(event, FundingRemovedEvent):
                self._persist_funding_removed(markets, transactions, market, event)
                funding_applied = True
            elif isinstance(event, (BuyEvent, SellEvent)):
                self._persist_share(markets, transactions, market, event)
            else:
                raise DataIntegrityError(
                    f"Unexpected {event.kind.value} event for market {market.id}",
                    context={"market_id": market.id, "tx_hash": event.position.tx_hash},
                )
        return funding_applied

    def _resolve_user_id(self, markets: MarketRepository, wallet: str, event: ChainEvent) -> int | None:
        user = markets.resolve_user_by_wallet(wallet)
        if user is not None:
            return user.id
        if self.settings.indexer_require_known_wallets:
            raise DataIntegrityError(
                f"No user for wallet {wallet}",
                context={
                    "market_id": self.market_id,
                    "wallet": wallet,
                    "tx_hash": event.position.tx_hash,
                },
            )
        return None

    def _require_outcome(self, markets: MarketRepository, outcome_index: int, event: ChainEvent):
        outcome = markets.get_outcome_by_index(self.market_id, outcome_index)
        if outcome is None:
            raise DataIntegrityError(
                f"Outcome {outcome_index} of market {self.market_id} does not exist",
                context={
                    "market_id": self.market_id,
                    "outcome_index": outcome_index,
                    "tx_hash": event.position.tx_hash,
                    "block_number": event.position.block_number,
                },
            )
        return outcome

    def _persist_funding_added(
        self,
        markets: MarketRepository,
        transactions: TransactionRepository,
        market: Market,
        event: FundingAddedEvent,
    ) -> None:
        collateral = funding_collateral(event.amounts_added)
        shares = split_funding(collateral, event.amounts_added)
        allocations = [
            FundingAllocationInput(
                outcome_id=self._require_outcome(markets, index, event).id,
                amount_added=amount,
                collateral_share=share,
            )
            for index, (amount, share) in enumerate(zip(event.amounts_added, shares))
        ]
        transactions.record_funding_transaction(
            FundingTransactionInput(
                market_id=market.id,
                user_id=self._resolve_user_id(markets, event.funder, event),
                type=FundingTransactionType.ADDED.value,
                tx_hash=event.position.tx_hash,
                block_number=event.position.block_number,
                log_index=event.position.log_index,
                wallet=event.funder,
                amounts=event.amounts_added,
                shares=event.shares_minted,
                collateral_amount=collateral,
                allocations=allocations,
            )
        )

    def _persist_funding_removed(
        self,
        markets: MarketRepository,
        transactions: TransactionRepository,
        market: Market,
        event: FundingRemovedEvent,
    ) -> None:
        transactions.record_funding_transaction(
            FundingTransactionInput(
                market_id=market.id,
                user_id=self._resolve_user_id(markets, event.funder, event),
                type=FundingTransactionType.REMOVED.value,
                tx_hash=event.position.tx_hash,
                block_number=event.position.block_number,
                log_index=event.position.log_index,
                wallet=event.funder,
                amounts=event.amounts_removed,
                shares=event.shares_burnt,
                collateral_removed_from_fee_pool=event.collateral_removed_from_fee_pool,
            )
        )

    def _persist_share(
        self,
        markets: MarketRepository,
        transactions: TransactionRepository,
        market: Market,
        event: BuyEvent | SellEvent,
    ) -> None:
        if isinstance(event, BuyEvent):
            wallet = event.buyer
            kind = ShareTransactionType.BUY.value
            amount = event.investment_amount
            outcome_tokens = event.outcome_tokens_bought
        else:
            wallet = event.seller
            kind = ShareTransactionType.SELL.value
            amount = event.return_amount
            outcome_tokens = event.outcome_tokens_sold

        outcome = self._require_outcome(markets, event.outcome_index, event)
        transactions.record_share_transaction(
            ShareTransactionInput(
                market_id=market.id,
                outcome_id=outcome.id,
                user_id=self._resolve_user_id(markets, wallet, event),
                type=kind,
                tx_hash=event.position.tx_hash,
                block_number=event.position.block_number,
                log_index=event.position.log_index,
                wallet=wallet,
                amount=amount,
                fee_amount=event.fee_amount,
                outcome_tokens=outcome_tokens,
            )
        )

    # ------------------------------------------------------------------
    # Loop

    def _report_failure(
        self, exc: BaseException, correlation_id: str, context: dict[str, object]
    ) -> None:
        logger.error(
            "{}: indexing failed, rolled back (correlation_id={}): {}",
            self.name,
            correlation_id,
            exc,
        )
        self._alerts.notify(
            f"*[INDEXER ERROR]*: Error while parsing market events.\n"
            f"- Error ID: `{correlation_id}`\n"
            f"- Market ID: `{self.market_id}`",
            urgent=True,
            channel=AlertChannel.INDEXER,
        )
        self._audit.write_log(
            WorkerLogStatus.ERROR,
            "Error while parsing market events",
            context={"market_id": self.market_id, **context},
            error=exc,
            correlation_id=correlation_id,
        )

    def run(self, stop_event: StopSignal | None = None) -> None:
        """Loop until stopped; data and infrastructure failures are re-raised."""

        stop_event = stop_event or threading.Event()
        sleep_seconds = self.settings.indexer_sleep_seconds
        logger.info("{}: starting (sleep={}s)", self.name, sleep_seconds)
        self._audit.write_log(
            WorkerLogStatus.START, "Indexer started", context={"market_id": self.market_id}
        )

        while True:
            try:
                self.run_cycle()
            except TransientIndexerError as exc:
                logger.warning("{}: transient failure, retrying next cycle: {}", self.name, exc)
            except DataIntegrityError as exc:
                self._report_failure(exc, exc.correlation_id, exc.context)
                raise
            except Exception as exc:
                self._report_failure(exc, new_correlation_id(), {})
                raise

            self._transition(IndexerState.SLEEP)
            if stop_event.wait(sleep_seconds):
                break

        logger.info("{}: stopped", self.name)


# ----------------------------------------------------------------------
# Process entry points


def run_indexer_process(
    market_id: int,
    stop_event: StopSignal | None = None,
    *,
    chain_client_factory: Callable[[], ChainClient] | None = None,
    session_factory: SessionFactory | None = None,
    settings: Settings | None = None,
    alert_sink: AlertSink | None = None,
    audit: AuditSink | None = None,
) -> int:
    """Run one market's indexer; returns the process exit code."""

    settings = settings or get_settings()
    try:
        chain_client = (chain_client_factory or (lambda: Web3ChainClient(settings=settings)))()
        indexer = MarketIndexer(
            market_id,
            chain_client=chain_client,
            session_factory=session_factory,
            settings=settings,
            alert_sink=alert_sink,
            audit=audit,
        )
        indexer.run(stop_event)
    except Exception:  # noqa: BLE001
        logger.exception("Indexer for market {} exited with an error", market_id)
        return 1
    return 0


def indexer_process_main(market_id: int, stop_event: StopSignal) -> None:
    """``multiprocessing`` target; the return code becomes the process exit code."""

    sys.exit(run_indexer_process(market_id, stop_event))


__all__ = [
    "CycleResult",
    "IndexerState",
    "MarketIndexer",
    "compute_window",
    "indexer_process_main",
    "process_name",
    "run_indexer_process",
]
