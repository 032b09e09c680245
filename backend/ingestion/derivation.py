"""Pure arithmetic applied to decoded chain events."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence
from math import prod

from app.domain import ChainEvent


def funding_collateral(amounts: Sequence[int]) -> int:
    """Collateral deposited by a funding event: the largest per-outcome amount."""

    return max(amounts, default=0)


def split_funding(collateral: int, amounts: Sequence[int]) -> list[int]:
    """Allocate ``collateral`` across outcomes in proportion to ``total - amount_i``.

    Shares are floored and the rounding remainder goes to the last outcome, so
    the shares always sum to ``collateral``. If every complement is zero the
    collateral is split evenly.
    """

    if collateral < 0:
        raise ValueError("collateral must not be negative")
    if not amounts:
        return []

    total = sum(amounts)
    complements = [total - amount for amount in amounts]
    weight = sum(complements)

    if weight == 0:
        shares = [collateral // len(amounts)] * len(amounts)
    else:
        shares = [collateral * complement // weight for complement in complements]
    shares[-1] += collateral - sum(shares)
    return shares


def fpmm_chances(balances: Sequence[int]) -> list[float]:
    """Outcome probabilities implied by the market maker's outcome token balances.

    ``num_i`` is the product of every other outcome's balance; chances are
    ``num_i / sum(num)``. With no usable balances every outcome is equally likely.
    """

    if not balances:
        return []
    if any(balance < 0 for balance in balances):
        raise ValueError("balances must not be negative")

    numerators = [
        prod(balance for position, balance in enumerate(balances) if position != index)
        for index in range(len(balances))
    ]
    denominator = sum(numerators)
    if denominator == 0:
        return [1.0 / len(balances)] * len(balances)
    return [numerator / denominator for numerator in numerators]


def merge_chain_order(*streams: Iterable[ChainEvent]) -> list[ChainEvent]:
    """Merge per-kind streams into one stream ordered by ``(block, log_index)``."""

    materialized: list[list[ChainEvent]] = []
    for stream in streams:
        events = list(stream)
        for previous, current in zip(events, events[1:]):
            if current.position.order_key < previous.position.order_key:
                raise ValueError(
                    "Event stream is not in chain order: "
                    f"{previous.position.order_key} precedes {current.position.order_key}"
                )
        materialized.append(events)
    return list(heapq.merge(*materialized, key=lambda event: event.position.order_key))


def outcome_index_from_index_set(index_set: int) -> int:
    """Outcome index encoded by a single-bit conditional tokens index set."""

    if index_set <= 0 or index_set & (index_set - 1):
        raise ValueError(f"Index set {index_set} does not select exactly one outcome")
    return index_set.bit_length() - 1


__all__ = [
    "fpmm_chances",
    "funding_collateral",
    "merge_chain_order",
    "outcome_index_from_index_set",
    "split_funding",
]
