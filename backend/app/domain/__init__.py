"""Domain types for decoded chain events."""

from .models import (
    MARKET_EVENT_KINDS,
    BlockWindow,
    BuyEvent,
    ChainEvent,
    EventKind,
    FundingAddedEvent,
    FundingRemovedEvent,
    LogPosition,
    PayoutRedemptionEvent,
    SellEvent,
)

__all__ = [
    "MARKET_EVENT_KINDS",
    "BlockWindow",
    "BuyEvent",
    "ChainEvent",
    "EventKind",
    "FundingAddedEvent",
    "FundingRemovedEvent",
    "LogPosition",
    "PayoutRedemptionEvent",
    "SellEvent",
]
