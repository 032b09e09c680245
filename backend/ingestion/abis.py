"""Minimal ABI fragments for the contracts the indexer reads."""

from __future__ import annotations

from typing import Any


def _input(name: str, type_: str, indexed: bool = False) -> dict[str, Any]:
    return {"indexed": indexed, "name": name, "type": type_}


def _event(name: str, *inputs: dict[str, Any]) -> dict[str, Any]:
    return {"anonymous": False, "inputs": list(inputs), "name": name, "type": "event"}


FPMM_ABI: list[dict[str, Any]] = [
    _event(
        "FPMMFundingAdded",
        _input("funder", "address", indexed=True),
        _input("amountsAdded", "uint256[]"),
        _input("sharesMinted", "uint256"),
    ),
    _event(
        "FPMMFundingRemoved",
        _input("funder", "address", indexed=True),
        _input("amountsRemoved", "uint256[]"),
        _input("collateralRemovedFromFeePool", "uint256"),
        _input("sharesBurnt", "uint256"),
    ),
    _event(
        "FPMMBuy",
        _input("buyer", "address", indexed=True),
        _input("investmentAmount", "uint256"),
        _input("feeAmount", "uint256"),
        _input("outcomeIndex", "uint256", indexed=True),
        _input("outcomeTokensBought", "uint256"),
    ),
    _event(
        "FPMMSell",
        _input("seller", "address", indexed=True),
        _input("returnAmount", "uint256"),
        _input("feeAmount", "uint256"),
        _input("outcomeIndex", "uint256", indexed=True),
        _input("outcomeTokensSold", "uint256"),
    ),
    {
        "inputs": [],
        "name": "canTrade",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

CONDITIONAL_TOKENS_ABI: list[dict[str, Any]] = [
    _event(
        "PayoutRedemption",
        _input("redeemer", "address", indexed=True),
        _input("collateralToken", "address", indexed=True),
        _input("parentCollectionId", "bytes32", indexed=True),
        _input("conditionId", "bytes32"),
        _input("indexSets", "uint256[]"),
        _input("payout", "uint256"),
    ),
    {
        "inputs": [
            {"internalType": "address[]", "name": "owners", "type": "address[]"},
            {"internalType": "uint256[]", "name": "ids", "type": "uint256[]"},
        ],
        "name": "balanceOfBatch",
        "outputs": [{"internalType": "uint256[]", "name": "", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
]
