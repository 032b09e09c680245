"""JSON-RPC boundary: block height, typed event logs and contract views."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Callable, Protocol, TypeVar

import requests
from loguru import logger
from web3 import Web3
from web3.contract import Contract as Web3Contract

from app.core.config import Settings, get_settings
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

from .abis import CONDITIONAL_TOKENS_ABI, FPMM_ABI

T = TypeVar("T")


class ChainTimeoutError(RuntimeError):
    """The RPC endpoint timed out or refused the connection."""


class ChainClient(Protocol):
    def get_block_number(self) -> int:
        ...

    def query_events(
        self, kind: EventKind, contract_address: str, from_block: int, to_block: int
    ) -> list[ChainEvent]:
        ...

    def can_trade(self, contract_address: str) -> bool:
        ...

    def balance_of_batch(self, owners: Sequence[str], position_ids: Sequence[int]) -> list[int]:
        ...


# ----------------------------------------------------------------------
# Log decoding


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return Web3.to_hex(value)


def _address(value: Any) -> str:
    return str(value).lower()


def _position(log: Mapping[str, Any]) -> LogPosition:
    return LogPosition(
        tx_hash=_hex(log["transactionHash"]),
        block_number=int(log["blockNumber"]),
        log_index=int(log["logIndex"]),
    )


def _ints(values: Sequence[Any]) -> tuple[int, ...]:
    return tuple(int(value) for value in values)


def _decode_funding_added(log: Mapping[str, Any]) -> FundingAddedEvent:
    args = log["args"]
    return FundingAddedEvent(
        position=_position(log),
        funder=_address(args["funder"]),
        amounts_added=_ints(args["amountsAdded"]),
        shares_minted=int(args["sharesMinted"]),
    )


def _decode_funding_removed(log: Mapping[str, Any]) -> FundingRemovedEvent:
    args = log["args"]
    return FundingRemovedEvent(
        position=_position(log),
        funder=_address(args["funder"]),
        amounts_removed=_ints(args["amountsRemoved"]),
        collateral_removed_from_fee_pool=int(args["collateralRemovedFromFeePool"]),
        shares_burnt=int(args["sharesBurnt"]),
    )


def _decode_buy(log: Mapping[str, Any]) -> BuyEvent:
    args = log["args"]
    return BuyEvent(
        position=_position(log),
        buyer=_address(args["buyer"]),
        investment_amount=int(args["investmentAmount"]),
        fee_amount=int(args["feeAmount"]),
        outcome_index=int(args["outcomeIndex"]),
        outcome_tokens_bought=int(args["outcomeTokensBought"]),
    )


def _decode_sell(log: Mapping[str, Any]) -> SellEvent:
    args = log["args"]
    return SellEvent(
        position=_position(log),
        seller=_address(args["seller"]),
        return_amount=int(args["returnAmount"]),
        fee_amount=int(args["feeAmount"]),
        outcome_index=int(args["outcomeIndex"]),
        outcome_tokens_sold=int(args["outcomeTokensSold"]),
    )


def _decode_payout_redemption(log: Mapping[str, Any]) -> PayoutRedemptionEvent:
    args = log["args"]
    return PayoutRedemptionEvent(
        position=_position(log),
        redeemer=_address(args["redeemer"]),
        collateral_token=_address(args["collateralToken"]),
        parent_collection_id=_hex(args["parentCollectionId"]),
        condition_id=_hex(args["conditionId"]).lower(),
        index_sets=_ints(args["indexSets"]),
        payout=int(args["payout"]),
    )


DECODERS: dict[EventKind, Callable[[Mapping[str, Any]], ChainEvent]] = {
    EventKind.FUNDING_ADDED: _decode_funding_added,
    EventKind.FUNDING_REMOVED: _decode_funding_removed,
    EventKind.BUY: _decode_buy,
    EventKind.SELL: _decode_sell,
    EventKind.PAYOUT_REDEMPTION: _decode_payout_redemption,
}


def decode_logs(kind: EventKind, logs: Sequence[Mapping[str, Any]]) -> list[ChainEvent]:
    """Decode raw web3 event logs of one kind, ordered by chain position."""

    decoder = DECODERS[kind]
    events = [decoder(log) for log in logs]
    events.sort(key=lambda event: event.position.order_key)
    return events


# ----------------------------------------------------------------------
# web3 client


class Web3ChainClient:
    """Chain client backed by a web3 HTTP provider."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        rpc_url: str | None = None,
        timeout: float | None = None,
        web3: Web3 | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.rpc_url = rpc_url or self.settings.rpc_url
        self.timeout = timeout or self.settings.rpc_timeout_seconds
        self.web3 = web3 or Web3(
            Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.timeout})
        )
        self._contracts: dict[tuple[str, str], Web3Contract] = {}

    def _call(self, description: str, func: Callable[[], T]) -> T:
        try:
            return func()
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            logger.warning("RPC {} failed against {}: {}", description, self.rpc_url, exc)
            raise ChainTimeoutError(f"{description} failed: {exc}") from exc

    def _contract(self, address: str, kind: str) -> Web3Contract:
        key = (kind, address.lower())
        contract = self._contracts.get(key)
        if contract is None:
            abi = CONDITIONAL_TOKENS_ABI if kind == "conditional_tokens" else FPMM_ABI
            contract = self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)
            self._contracts[key] = contract
        return contract

    def get_block_number(self) -> int:
        return int(self._call("eth_blockNumber", lambda: self.web3.eth.block_number))

    def query_events(
        self, kind: EventKind, contract_address: str, from_block: int, to_block: int
    ) -> list[ChainEvent]:
        contract_kind = "conditional_tokens" if kind == EventKind.PAYOUT_REDEMPTION else "fpmm"
        contract = self._contract(contract_address, contract_kind)
        event = getattr(contract.events, kind.value)
        logs = self._call(
            f"eth_getLogs({kind.value}, {from_block}-{to_block})",
            lambda: event().get_logs(from_block=from_block, to_block=to_block),
        )
        events = decode_logs(kind, logs)
        logger.debug(
            "Fetched {} {} logs from {} in blocks {}-{}",
            len(events),
            kind.value,
            contract_address,
            from_block,
            to_block,
        )
        return events

    def can_trade(self, contract_address: str) -> bool:
        contract = self._contract(contract_address, "fpmm")
        return bool(self._call("canTrade", lambda: contract.functions.canTrade().call()))

    def balance_of_batch(self, owners: Sequence[str], position_ids: Sequence[int]) -> list[int]:
        if len(owners) != len(position_ids):
            raise ValueError("owners and position_ids must have the same length")
        address = self.settings.conditional_tokens_address
        if not address:
            raise ValueError("CONDITIONAL_TOKENS_ADDRESS must be configured to read balances")
        contract = self._contract(address, "conditional_tokens")
        checksum_owners = [Web3.to_checksum_address(owner) for owner in owners]
        balances = self._call(
            "balanceOfBatch",
            lambda: contract.functions.balanceOfBatch(
                checksum_owners, [int(position_id) for position_id in position_ids]
            ).call(),
        )
        return [int(balance) for balance in balances]


__all__ = [
    "ChainClient",
    "ChainTimeoutError",
    "DECODERS",
    "Web3ChainClient",
    "decode_logs",
]
