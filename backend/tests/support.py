"""Fakes and builders shared by the test modules."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from typing import Any

from app.db import SessionFactory, session_scope
from app.domain import (
    BuyEvent,
    ChainEvent,
    EventKind,
    FundingAddedEvent,
    FundingRemovedEvent,
    LogPosition,
    PayoutRedemptionEvent,
    SellEvent,
)
from app.models import ChainCursor, CursorStatus, Market, MarketStatus, Outcome, User, WorkerLogStatus
from app.services.alerts import AlertChannel

MARKET_ADDRESS = "0x" + "ab" * 20
CONDITIONAL_TOKENS_ADDRESS = "0x" + "cd" * 20
WALLET = "0x" + "11" * 20
OTHER_WALLET = "0x" + "22" * 20


def condition_id_for(market_id: int) -> str:
    return "0x" + f"{market_id:064x}"


def position(block: int, log_index: int = 0) -> LogPosition:
    return LogPosition(
        tx_hash=f"0x{block:032x}{log_index:032x}", block_number=block, log_index=log_index
    )


def funding_added(
    block: int,
    amounts: Sequence[int],
    *,
    log_index: int = 0,
    funder: str = WALLET,
    shares: int = 100,
) -> FundingAddedEvent:
    return FundingAddedEvent(
        position=position(block, log_index),
        funder=funder,
        amounts_added=tuple(amounts),
        shares_minted=shares,
    )


def funding_removed(
    block: int,
    amounts: Sequence[int],
    *,
    log_index: int = 0,
    funder: str = WALLET,
    fee_pool: int = 3,
    shares: int = 40,
) -> FundingRemovedEvent:
    return FundingRemovedEvent(
        position=position(block, log_index),
        funder=funder,
        amounts_removed=tuple(amounts),
        collateral_removed_from_fee_pool=fee_pool,
        shares_burnt=shares,
    )


def buy(
    block: int,
    outcome_index: int,
    *,
    log_index: int = 0,
    buyer: str = WALLET,
    amount: int = 10,
    fee: int = 1,
    tokens: int = 18,
) -> BuyEvent:
    return BuyEvent(
        position=position(block, log_index),
        buyer=buyer,
        investment_amount=amount,
        fee_amount=fee,
        outcome_index=outcome_index,
        outcome_tokens_bought=tokens,
    )


def sell(
    block: int,
    outcome_index: int,
    *,
    log_index: int = 0,
    seller: str = WALLET,
    amount: int = 7,
    fee: int = 1,
    tokens: int = 12,
) -> SellEvent:
    return SellEvent(
        position=position(block, log_index),
        seller=seller,
        return_amount=amount,
        fee_amount=fee,
        outcome_index=outcome_index,
        outcome_tokens_sold=tokens,
    )


def payout_redemption(
    block: int,
    condition_id: str,
    index_set: int,
    *,
    log_index: int = 0,
    redeemer: str = WALLET,
    payout: int = 500,
) -> PayoutRedemptionEvent:
    return PayoutRedemptionEvent(
        position=position(block, log_index),
        redeemer=redeemer,
        collateral_token="0x" + "ee" * 20,
        parent_collection_id="0x" + "00" * 32,
        condition_id=condition_id,
        index_sets=(index_set,),
        payout=payout,
    )


class FakeChainClient:
    """In-memory chain returning canned logs for any block window."""

    def __init__(self, head: int = 0) -> None:
        self.head = head
        self.tradeable = True
        self.block_number_error: BaseException | None = None
        self.can_trade_error: BaseException | None = None
        self.balances: dict[int, int] = {}
        self.queries: list[tuple[EventKind, str, int, int]] = []
        self.balance_requests: list[tuple[list[str], list[int]]] = []
        self._events: dict[tuple[EventKind, str], list[ChainEvent]] = defaultdict(list)

    def add_events(self, address: str, *events: ChainEvent) -> None:
        for event in events:
            self._events[(event.kind, address.lower())].append(event)

    def get_block_number(self) -> int:
        if self.block_number_error is not None:
            raise self.block_number_error
        return self.head

    def query_events(
        self, kind: EventKind, contract_address: str, from_block: int, to_block: int
    ) -> list[ChainEvent]:
        self.queries.append((kind, contract_address, from_block, to_block))
        events = [
            event
            for event in self._events[(kind, contract_address.lower())]
            if from_block <= event.position.block_number <= to_block
        ]
        return sorted(events, key=lambda event: event.position.order_key)

    def can_trade(self, contract_address: str) -> bool:
        if self.can_trade_error is not None:
            raise self.can_trade_error
        return self.tradeable

    def balance_of_batch(self, owners: Sequence[str], position_ids: Sequence[int]) -> list[int]:
        self.balance_requests.append((list(owners), list(position_ids)))
        return [self.balances.get(position_id, 0) for position_id in position_ids]


class RecordingAlertSink:
    def __init__(self, fail: bool = False) -> None:
        self.alerts: list[tuple[str, bool, AlertChannel]] = []
        self.fail = fail

    def notify(
        self, message: str, urgent: bool = False, channel: AlertChannel = AlertChannel.GENERAL
    ) -> None:
        self.alerts.append((message, urgent, channel))
        if self.fail:
            raise RuntimeError("alert transport down")


class RecordingAudit:
    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def write_log(
        self,
        severity: WorkerLogStatus,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self.entries.append(
            {
                "severity": WorkerLogStatus.ERROR if error is not None else severity,
                "message": message,
                "context": context,
                "error": error,
                "correlation_id": correlation_id,
            }
        )

    def with_severity(self, severity: WorkerLogStatus) -> list[dict[str, Any]]:
        return [entry for entry in self.entries if entry["severity"] == severity]


def seed_market(
    session_factory: SessionFactory,
    market_id: int,
    *,
    status: MarketStatus = MarketStatus.FUNDING,
    outcome_count: int = 3,
    last_processed_block: int = 100,
    window_size: int = 50,
    contract_address: str | None = MARKET_ADDRESS,
    with_position_ids: bool = True,
    with_cursor: bool = True,
) -> None:
    with session_scope(session_factory) as session:
        session.add(Market(id=market_id, question=f"Market {market_id}?", status=status.value))
        for index in range(outcome_count):
            session.add(
                Outcome(
                    market_id=market_id,
                    outcome_index=index,
                    name=f"Outcome {index}",
                    position_id=str(market_id * 1000 + index) if with_position_ids else None,
                )
            )
        if with_cursor:
            session.add(
                ChainCursor(
                    market_id=market_id,
                    contract_address=contract_address,
                    condition_id=condition_id_for(market_id),
                    last_processed_block=last_processed_block,
                    window_size=window_size,
                    status=CursorStatus.ACTIVE.value,
                )
            )


def seed_user(session_factory: SessionFactory, wallet: str = WALLET) -> int:
    with session_scope(session_factory) as session:
        user = User(wallet_address=wallet)
        session.add(user)
        session.flush()
        return user.id
