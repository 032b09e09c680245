from __future__ import annotations

from unittest.mock import MagicMock, PropertyMock

import pytest
import requests

from app.domain import BuyEvent, EventKind, FundingAddedEvent, PayoutRedemptionEvent
from ingestion.chain_client import ChainTimeoutError, Web3ChainClient, decode_logs


def _log(block: int, log_index: int, args: dict) -> dict:
    return {
        "transactionHash": bytes([block % 256]) * 32,
        "blockNumber": block,
        "logIndex": log_index,
        "args": args,
    }


def test_decode_logs_builds_typed_events_in_chain_order():
    """Raw logs are decoded once into typed events sorted by block and log index."""
    logs = [
        _log(12, 0, {"buyer": "0xABC", "investmentAmount": 10, "feeAmount": 1, "outcomeIndex": 1, "outcomeTokensBought": 19}),
        _log(11, 4, {"buyer": "0xDEF", "investmentAmount": 5, "feeAmount": 0, "outcomeIndex": 0, "outcomeTokensBought": 9}),
    ]

    events = decode_logs(EventKind.BUY, logs)

    assert [type(event) for event in events] == [BuyEvent, BuyEvent]
    assert [event.position.order_key for event in events] == [(11, 4), (12, 0)]
    assert events[0].buyer == "0xdef"
    assert events[1].outcome_tokens_bought == 19
    assert events[0].position.tx_hash == "0x" + "0b" * 32


def test_decode_funding_added_amounts_are_ints():
    logs = [_log(5, 0, {"funder": "0x01", "amountsAdded": ["50", "30"], "sharesMinted": 80})]

    (event,) = decode_logs(EventKind.FUNDING_ADDED, logs)

    assert isinstance(event, FundingAddedEvent)
    assert event.amounts_added == (50, 30)
    assert event.shares_minted == 80


def test_decode_payout_redemption_normalises_condition_id():
    logs = [
        _log(
            7,
            2,
            {
                "redeemer": "0xAa",
                "collateralToken": "0xBb",
                "parentCollectionId": b"\x00" * 32,
                "conditionId": b"\xAB" * 32,
                "indexSets": [2],
                "payout": 1000,
            },
        )
    ]

    (event,) = decode_logs(EventKind.PAYOUT_REDEMPTION, logs)

    assert isinstance(event, PayoutRedemptionEvent)
    assert event.condition_id == "0x" + "ab" * 32
    assert event.index_sets == (2,)
    assert event.redeemer == "0xaa"


def test_rpc_timeout_maps_to_chain_timeout_error(test_settings):
    web3 = MagicMock()
    type(web3.eth).block_number = PropertyMock(side_effect=requests.exceptions.Timeout("slow"))
    client = Web3ChainClient(settings=test_settings, web3=web3)

    with pytest.raises(ChainTimeoutError):
        client.get_block_number()


def test_block_number_is_returned(test_settings):
    web3 = MagicMock()
    type(web3.eth).block_number = PropertyMock(return_value=1234)
    client = Web3ChainClient(settings=test_settings, web3=web3)

    assert client.get_block_number() == 1234


def test_balance_of_batch_requires_matching_lengths(test_settings):
    client = Web3ChainClient(settings=test_settings, web3=MagicMock())

    with pytest.raises(ValueError):
        client.balance_of_batch(["0x" + "ab" * 20], [1, 2])
