"""Singleton job recording winnings redeemed through the conditional tokens contract."""

from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from app.domain import EventKind, PayoutRedemptionEvent
from app.models import WorkerLogStatus
from app.repositories import (
    ContractRepository,
    JobSnapshot,
    MarketRepository,
    TransactionRepository,
)
from app.repositories.pipeline_models import ClaimTransactionInput
from app.services.alerts import AlertChannel
from ingestion.chain_client import ChainClient, Web3ChainClient
from ingestion.derivation import outcome_index_from_index_set

from ..errors import DataIntegrityError, new_correlation_id
from ..indexer import compute_window
from .base import SingletonJob

CONDITIONAL_TOKENS_CONTRACT = "conditional_tokens"


class ClaimsParserJob(SingletonJob):
    """Parse ``PayoutRedemption`` logs window by window from a shared contract cursor."""

    name = "claims_parser"
    default_interval_seconds = 60

    def __init__(self, *, chain_client: ChainClient | None = None, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.chain = chain_client or Web3ChainClient(settings=self.settings)

    def run(self, job: JobSnapshot) -> int:
        contract_name = (job.config or {}).get("contract", CONDITIONAL_TOKENS_CONTRACT)
        session = self.session_factory()
        try:
            recorded = self._parse_window(session, contract_name)
        except Exception as exc:
            session.rollback()
            correlation_id = getattr(exc, "correlation_id", None) or new_correlation_id()
            self.alerts.notify(
                "Error while parsing market claims. See DB worker logs for more info:\n"
                f"- Error ID: `{correlation_id}`",
                urgent=True,
                channel=AlertChannel.JOBS,
            )
            self.audit.write_log(
                WorkerLogStatus.ERROR,
                "Error while parsing market claims",
                context=getattr(exc, "context", None),
                error=exc,
                correlation_id=correlation_id,
            )
            raise
        finally:
            session.close()
        return recorded

    def _parse_window(self, session: Session, contract_name: str) -> int:
        contracts = ContractRepository(session)
        contract = contracts.get_by_name(contract_name)
        if contract is None:
            raise DataIntegrityError(
                f"Contract cursor {contract_name!r} does not exist",
                context={"contract": contract_name},
            )

        chain_head = self.chain.get_block_number()
        window = compute_window(
            contract.last_processed_block,
            contract.window_size,
            chain_head,
            contract.confirmation_lag,
        )
        if window is None:
            session.rollback()
            return 0

        events = self.chain.query_events(
            EventKind.PAYOUT_REDEMPTION,
            contract.contract_address,
            window.from_block,
            window.to_block,
        )

        markets = MarketRepository(session)
        transactions = TransactionRepository(session)
        recorded = 0
        for event in events:
            if not isinstance(event, PayoutRedemptionEvent):
                continue
            if self._record_claim(markets, transactions, event):
                recorded += 1

        contracts.advance(contract, window.to_block)
        session.commit()
        logger.info(
            "{}: recorded {} of {} claims in blocks {}-{}",
            self.name,
            recorded,
            len(events),
            window.from_block,
            window.to_block,
        )
        return recorded

    def _record_claim(
        self,
        markets: MarketRepository,
        transactions: TransactionRepository,
        event: PayoutRedemptionEvent,
    ) -> bool:
        position = event.position
        cursor = markets.get_cursor_by_condition_id(event.condition_id)
        if cursor is None or markets.get_market(cursor.market_id) is None:
            # Redemptions of conditions created outside this system.
            logger.debug("{}: skipping unknown condition {}", self.name, event.condition_id)
            return False

        context = {
            "market_id": cursor.market_id,
            "wallet": event.redeemer,
            "tx_hash": position.tx_hash,
            "block_number": position.block_number,
        }
        user = markets.resolve_user_by_wallet(event.redeemer)
        if user is None:
            raise DataIntegrityError(f"No user for wallet {event.redeemer}", context=context)

        if not event.index_sets:
            raise DataIntegrityError("Redemption without index sets", context=context)
        try:
            outcome_index = outcome_index_from_index_set(event.index_sets[0])
        except ValueError as exc:
            raise DataIntegrityError(str(exc), context=context) from exc

        outcome = markets.get_outcome_by_index(cursor.market_id, outcome_index)
        if outcome is None:
            raise DataIntegrityError(
                f"Outcome {outcome_index} of market {cursor.market_id} does not exist",
                context={**context, "outcome_index": outcome_index},
            )

        transactions.record_claim_transaction(
            ClaimTransactionInput(
                market_id=cursor.market_id,
                outcome_id=outcome.id,
                user_id=user.id,
                tx_hash=position.tx_hash,
                block_number=position.block_number,
                log_index=position.log_index,
                wallet=event.redeemer,
                amount=event.payout,
            )
        )
        return True
