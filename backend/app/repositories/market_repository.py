"""Market, outcome, user and chain cursor data access helpers."""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models import (
    INDEXED_MARKET_STATUSES,
    ChainCursor,
    CursorStatus,
    Market,
    MarketStatus,
    Outcome,
    User,
)

from .types import CursorLag


class MarketRepository:
    """Encapsulate market lookups and cursor bookkeeping for the indexer."""

    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Queries

    def list_markets_to_index(self) -> list[int]:
        """Markets that are trading or funding and have an enabled contract cursor."""

        query = (
            select(Market.id)
            .join(ChainCursor, ChainCursor.market_id == Market.id)
            .where(
                Market.status.in_(INDEXED_MARKET_STATUSES),
                Market.enabled.is_(True),
                ChainCursor.status == CursorStatus.ACTIVE.value,
                ChainCursor.contract_address.is_not(None),
            )
            .order_by(Market.id)
        )
        return list(self._session.execute(query).scalars().all())

    def list_active_markets_with_positions(self) -> list[int]:
        """ACTIVE markets whose outcomes all carry a position id."""

        has_outcomes = select(Outcome.id).where(Outcome.market_id == Market.id).exists()
        missing_position = (
            select(Outcome.id)
            .where(Outcome.market_id == Market.id, Outcome.position_id.is_(None))
            .exists()
        )
        query = (
            select(Market.id)
            .where(
                Market.status == MarketStatus.ACTIVE.value,
                Market.enabled.is_(True),
                has_outcomes,
                ~missing_position,
            )
            .order_by(Market.id)
        )
        return list(self._session.execute(query).scalars().all())

    def get_market(self, market_id: int) -> Market | None:
        return self._session.get(Market, market_id)

    def get_cursor(self, market_id: int) -> ChainCursor | None:
        return self._session.get(ChainCursor, market_id)

    def get_cursor_by_condition_id(self, condition_id: str) -> ChainCursor | None:
        query = select(ChainCursor).where(
            func.lower(ChainCursor.condition_id) == condition_id.lower()
        )
        return self._session.execute(query).scalars().first()

    def get_outcome_by_index(self, market_id: int, outcome_index: int) -> Outcome | None:
        query = select(Outcome).where(
            Outcome.market_id == market_id,
            Outcome.outcome_index == outcome_index,
        )
        return self._session.execute(query).scalars().first()

    def list_outcomes(self, market_id: int) -> list[Outcome]:
        query = (
            select(Outcome)
            .where(Outcome.market_id == market_id)
            .order_by(Outcome.outcome_index)
        )
        return list(self._session.execute(query).scalars().all())

    def resolve_user_by_wallet(self, wallet: str) -> User | None:
        query = select(User).where(func.lower(User.wallet_address) == wallet.lower())
        return self._session.execute(query).scalars().first()

    def list_lagging_cursors(self, *, chain_head: int, max_lag: int) -> list[CursorLag]:
        query = (
            select(ChainCursor.market_id, ChainCursor.last_processed_block, ChainCursor.updated_at)
            .join(Market, Market.id == ChainCursor.market_id)
            .where(
                Market.status.in_(INDEXED_MARKET_STATUSES),
                Market.enabled.is_(True),
                ChainCursor.status == CursorStatus.ACTIVE.value,
                ChainCursor.contract_address.is_not(None),
                (chain_head - ChainCursor.last_processed_block) > max_lag,
            )
            .order_by(ChainCursor.market_id)
        )
        return [
            CursorLag(
                market_id=row.market_id,
                last_processed_block=row.last_processed_block,
                chain_head=chain_head,
                updated_at=row.updated_at,
            )
            for row in self._session.execute(query).all()
        ]

    def list_cursors(self) -> list[ChainCursor]:
        query = select(ChainCursor).order_by(ChainCursor.market_id)
        return list(self._session.execute(query).scalars().all())

    # ------------------------------------------------------------------
    # Mutations

    def create_cursor(
        self,
        *,
        market_id: int,
        contract_address: str | None,
        condition_id: str | None,
        start_block: int,
        window_size: int,
    ) -> ChainCursor:
        cursor = ChainCursor(
            market_id=market_id,
            contract_address=contract_address,
            condition_id=condition_id,
            last_processed_block=start_block,
            window_size=window_size,
            status=CursorStatus.ACTIVE.value,
        )
        self._session.add(cursor)
        self._session.flush()
        return cursor

    def advance_cursor(self, cursor: ChainCursor, to_block: int) -> None:
        if to_block < cursor.last_processed_block:
            raise ValueError(
                f"Cursor for market {cursor.market_id} cannot move backwards "
                f"({cursor.last_processed_block} -> {to_block})"
            )
        cursor.last_processed_block = to_block
        self._session.flush()

    def activate_market(self, market: Market) -> bool:
        if market.status == MarketStatus.ACTIVE.value:
            return False
        market.status = MarketStatus.ACTIVE.value
        self._session.flush()
        return True
