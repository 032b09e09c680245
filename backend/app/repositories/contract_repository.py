"""Cursors for shared contracts parsed by singleton jobs."""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import Contract


class ContractRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get_by_name(self, name: str) -> Contract | None:
        query = select(Contract).where(Contract.name == name)
        return self._session.execute(query).scalars().first()

    def ensure_contract(
        self,
        *,
        name: str,
        contract_address: str,
        start_block: int,
        window_size: int,
        confirmation_lag: int = 0,
    ) -> tuple[Contract, bool]:
        existing = self.get_by_name(name)
        if existing is not None:
            return existing, False
        contract = Contract(
            name=name,
            contract_address=contract_address,
            last_processed_block=start_block,
            window_size=window_size,
            confirmation_lag=confirmation_lag,
        )
        self._session.add(contract)
        self._session.flush()
        return contract, True

    def advance(self, contract: Contract, to_block: int) -> None:
        if to_block < contract.last_processed_block:
            raise ValueError(
                f"Contract cursor {contract.name} cannot move backwards "
                f"({contract.last_processed_block} -> {to_block})"
            )
        contract.last_processed_block = to_block
        self._session.flush()
