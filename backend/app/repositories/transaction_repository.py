"""Append-only persistence for records derived from chain events."""

from __future__ import annotations

from typing import Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import (
    ClaimTransaction,
    FundingAllocation,
    FundingTransaction,
    OutcomeChance,
    ShareTransaction,
)

from .pipeline_models import (
    ClaimTransactionInput,
    FundingTransactionInput,
    OutcomeChanceInput,
    ShareTransactionInput,
)


def _join_amounts(amounts: Sequence[int]) -> str:
    return ",".join(str(amount) for amount in amounts)


def _optional_str(value: int | None) -> str | None:
    return None if value is None else str(value)


class TransactionRepository:
    """Insert domain events; rows are never updated once written."""

    def __init__(self, session: Session) -> None:
        self._session = session

    def record_funding_transaction(self, payload: FundingTransactionInput) -> FundingTransaction:
        record = FundingTransaction(
            market_id=payload.market_id,
            user_id=payload.user_id,
            type=payload.type,
            tx_hash=payload.tx_hash,
            block_number=payload.block_number,
            log_index=payload.log_index,
            wallet=payload.wallet,
            amounts=_join_amounts(payload.amounts),
            shares=str(payload.shares),
            collateral_amount=_optional_str(payload.collateral_amount),
            collateral_removed_from_fee_pool=_optional_str(
                payload.collateral_removed_from_fee_pool
            ),
        )
        self._session.add(record)

        for allocation in payload.allocations:
            self._session.add(
                FundingAllocation(
                    funding_transaction=record,
                    outcome_id=allocation.outcome_id,
                    amount_added=str(allocation.amount_added),
                    collateral_share=str(allocation.collateral_share),
                )
            )

        self._session.flush()
        return record

    def record_share_transaction(self, payload: ShareTransactionInput) -> ShareTransaction:
        record = ShareTransaction(
            market_id=payload.market_id,
            outcome_id=payload.outcome_id,
            user_id=payload.user_id,
            type=payload.type,
            tx_hash=payload.tx_hash,
            block_number=payload.block_number,
            log_index=payload.log_index,
            wallet=payload.wallet,
            amount=str(payload.amount),
            fee_amount=str(payload.fee_amount),
            outcome_tokens=str(payload.outcome_tokens),
        )
        self._session.add(record)
        self._session.flush()
        return record

    def record_claim_transaction(self, payload: ClaimTransactionInput) -> ClaimTransaction:
        record = ClaimTransaction(
            market_id=payload.market_id,
            outcome_id=payload.outcome_id,
            user_id=payload.user_id,
            tx_hash=payload.tx_hash,
            block_number=payload.block_number,
            log_index=payload.log_index,
            wallet=payload.wallet,
            amount=str(payload.amount),
        )
        self._session.add(record)
        self._session.flush()
        return record

    def record_outcome_chances(self, payloads: Sequence[OutcomeChanceInput]) -> list[OutcomeChance]:
        records = [
            OutcomeChance(
                market_id=payload.market_id,
                outcome_id=payload.outcome_id,
                chance=payload.chance,
                supply=str(payload.supply),
                total_supply=str(payload.total_supply),
            )
            for payload in payloads
        ]
        self._session.add_all(records)
        self._session.flush()
        return records

    def count_market_events(self, market_id: int) -> int:
        """Number of funding and share rows recorded for a market."""

        funding = self._session.execute(
            select(func.count()).select_from(FundingTransaction).where(
                FundingTransaction.market_id == market_id
            )
        ).scalar_one()
        shares = self._session.execute(
            select(func.count()).select_from(ShareTransaction).where(
                ShareTransaction.market_id == market_id
            )
        ).scalar_one()
        return int(funding) + int(shares)
