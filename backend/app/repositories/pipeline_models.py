"""DTOs for derived-record persistence."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class FundingAllocationInput:
    outcome_id: int
    amount_added: int
    collateral_share: int


@dataclass(slots=True)
class FundingTransactionInput:
    market_id: int
    user_id: int | None
    type: str
    tx_hash: str
    block_number: int
    log_index: int
    wallet: str
    amounts: tuple[int, ...]
    shares: int
    collateral_amount: int | None = None
    collateral_removed_from_fee_pool: int | None = None
    allocations: list[FundingAllocationInput] = field(default_factory=list)


@dataclass(slots=True)
class ShareTransactionInput:
    market_id: int
    outcome_id: int
    user_id: int | None
    type: str
    tx_hash: str
    block_number: int
    log_index: int
    wallet: str
    amount: int
    fee_amount: int
    outcome_tokens: int


@dataclass(slots=True)
class ClaimTransactionInput:
    market_id: int
    outcome_id: int
    user_id: int
    tx_hash: str
    block_number: int
    log_index: int
    wallet: str
    amount: int


@dataclass(slots=True)
class OutcomeChanceInput:
    market_id: int
    outcome_id: int
    chance: float
    supply: int
    total_supply: int
