"""Typed chain events decoded once at the chain client boundary."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Union


class EventKind(str, Enum):
    FUNDING_ADDED = "FPMMFundingAdded"
    FUNDING_REMOVED = "FPMMFundingRemoved"
    BUY = "FPMMBuy"
    SELL = "FPMMSell"
    PAYOUT_REDEMPTION = "PayoutRedemption"


# Event kinds emitted by a single market maker contract.
MARKET_EVENT_KINDS: tuple[EventKind, ...] = (
    EventKind.FUNDING_ADDED,
    EventKind.FUNDING_REMOVED,
    EventKind.BUY,
    EventKind.SELL,
)


@dataclass(slots=True, frozen=True)
class BlockWindow:
    """Inclusive block range processed by one indexer cycle."""

    from_block: int
    to_block: int

    def __post_init__(self) -> None:
        if self.from_block > self.to_block:
            raise ValueError(
                f"Invalid block window [{self.from_block}, {self.to_block}]"
            )

    @property
    def size(self) -> int:
        return self.to_block - self.from_block + 1


@dataclass(slots=True, frozen=True)
class LogPosition:
    tx_hash: str
    block_number: int
    log_index: int

    @property
    def order_key(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(slots=True, frozen=True)
class FundingAddedEvent:
    position: LogPosition
    funder: str
    amounts_added: tuple[int, ...]
    shares_minted: int
    kind: EventKind = EventKind.FUNDING_ADDED


@dataclass(slots=True, frozen=True)
class FundingRemovedEvent:
    position: LogPosition
    funder: str
    amounts_removed: tuple[int, ...]
    collateral_removed_from_fee_pool: int
    shares_burnt: int
    kind: EventKind = EventKind.FUNDING_REMOVED


@dataclass(slots=True, frozen=True)
class BuyEvent:
    position: LogPosition
    buyer: str
    investment_amount: int
    fee_amount: int
    outcome_index: int
    outcome_tokens_bought: int
    kind: EventKind = EventKind.BUY


@dataclass(slots=True, frozen=True)
class SellEvent:
    position: LogPosition
    seller: str
    return_amount: int
    fee_amount: int
    outcome_index: int
    outcome_tokens_sold: int
    kind: EventKind = EventKind.SELL


@dataclass(slots=True, frozen=True)
class PayoutRedemptionEvent:
    position: LogPosition
    redeemer: str
    collateral_token: str
    parent_collection_id: str
    condition_id: str
    index_sets: tuple[int, ...]
    payout: int
    kind: EventKind = EventKind.PAYOUT_REDEMPTION


ChainEvent = Union[
    FundingAddedEvent,
    FundingRemovedEvent,
    BuyEvent,
    SellEvent,
    PayoutRedemptionEvent,
]
