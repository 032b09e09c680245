from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from app.db import session_scope
from app.models import (
    MarketStatus,
    OutcomeChance,
    WorkItem,
    WorkItemKind,
    WorkItemStatus,
    WorkerLogStatus,
    utcnow,
)
from app.repositories import WorkQueueRepository
from pipelines.fanout import FanOutWorker, RefreshItem, RefreshOutcomeChancesWorker
from support import MARKET_ADDRESS, seed_market

KIND = WorkItemKind.REFRESH_OUTCOME_CHANCES.value


class SquareWorker(FanOutWorker[int]):
    name = "square"

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.results: dict[int, int] = {}
        self._lock = threading.Lock()

    def plan(self) -> list[int]:
        return [1, 2, 3, 4, 5]

    def execute(self, item: int) -> int:
        if item == 3:
            raise ValueError("three is unlucky")
        with self._lock:
            self.results[item] = item * item
        return item * item


class EmptyWorker(FanOutWorker[int]):
    name = "empty"

    def plan(self) -> list[int]:
        return []

    def execute(self, item: int) -> None:
        raise AssertionError("nothing should run")


@pytest.fixture
def worker(chain, session_factory, audit, test_settings) -> RefreshOutcomeChancesWorker:
    return RefreshOutcomeChancesWorker(
        chain_client=chain,
        session_factory=session_factory,
        audit=audit,
        settings=test_settings,
    )


def _enqueue(session_factory, *market_ids: int) -> None:
    with session_scope(session_factory) as session:
        queue = WorkQueueRepository(session)
        for market_id in market_ids:
            queue.enqueue(KIND, market_id)


def _statuses(session_factory) -> dict[int, str]:
    with session_factory() as session:
        return {item.entity_id: item.status for item in WorkQueueRepository(session).list_items(KIND)}


def test_failing_item_does_not_affect_the_others(test_settings):
    """One item raising leaves every other item's result intact."""
    worker = SquareWorker(settings=test_settings, max_workers=3)

    report = worker.run()

    assert report.planned == 5
    assert sorted(report.succeeded) == [1, 2, 4, 5]
    assert [item for item, _ in report.failed] == [3]
    assert isinstance(report.failed[0][1], ValueError)
    assert worker.results == {1: 1, 2: 4, 4: 16, 5: 25}


def test_empty_plan_is_a_no_op(test_settings):
    report = EmptyWorker(settings=test_settings).run()

    assert report.planned == 0
    assert report.succeeded == [] and report.failed == []


def test_refresh_writes_chances_from_contract_balances(session_factory, chain, worker):
    seed_market(session_factory, 1, status=MarketStatus.ACTIVE)
    chain.balances = {1000: 100, 1001: 200, 1002: 400}
    _enqueue(session_factory, 1)

    report = worker.run()

    assert report.succeeded == [RefreshItem(market_id=1, work_item_ids=(1,))]
    assert chain.balance_requests == [([MARKET_ADDRESS] * 3, [1000, 1001, 1002])]
    with session_factory() as session:
        rows = session.execute(select(OutcomeChance).order_by(OutcomeChance.outcome_id)).scalars().all()
    assert [row.chance for row in rows] == pytest.approx([4 / 7, 2 / 7, 1 / 7])
    assert [row.supply for row in rows] == ["100", "200", "400"]
    assert {row.total_supply for row in rows} == {"700"}
    assert _statuses(session_factory) == {1: WorkItemStatus.DONE.value}


def test_duplicate_requests_collapse_into_one_item(session_factory, chain, worker):
    seed_market(session_factory, 1, status=MarketStatus.ACTIVE)
    _enqueue(session_factory, 1, 1, 1)

    assert worker.plan() == [RefreshItem(market_id=1, work_item_ids=(1,))]


def test_refresh_skips_markets_that_are_not_trading(session_factory, chain, worker):
    seed_market(session_factory, 1, status=MarketStatus.FUNDING)
    _enqueue(session_factory, 1)

    report = worker.run()

    assert len(report.succeeded) == 1
    assert chain.balance_requests == []
    assert _statuses(session_factory) == {1: WorkItemStatus.DONE.value}


def test_failed_market_is_marked_and_others_complete(session_factory, chain, worker, audit):
    seed_market(session_factory, 1, status=MarketStatus.ACTIVE)
    seed_market(session_factory, 2, status=MarketStatus.ACTIVE, with_position_ids=False)
    chain.balances = {1000: 1, 1001: 1, 1002: 2}
    _enqueue(session_factory, 1, 2)

    report = worker.run()

    assert [item.market_id for item in report.succeeded] == [1]
    assert [item.market_id for item, _ in report.failed] == [2]
    statuses = _statuses(session_factory)
    assert statuses == {1: WorkItemStatus.DONE.value, 2: WorkItemStatus.FAILED.value}
    with session_factory() as session:
        failed = WorkQueueRepository(session).list_items(KIND)[1]
        assert failed.last_error.startswith("LookupError")
        assert session.execute(select(OutcomeChance.market_id)).scalars().all() == [1, 1, 1]
    (entry,) = audit.with_severity(WorkerLogStatus.ERROR)
    assert entry["context"] == {"market_id": 2}


def test_claimed_items_are_not_planned_twice(session_factory, worker):
    seed_market(session_factory, 1, status=MarketStatus.ACTIVE)
    _enqueue(session_factory, 1)

    assert len(worker.plan()) == 1
    assert worker.plan() == []


def test_abandoned_claims_are_planned_again(session_factory, worker):
    seed_market(session_factory, 1, status=MarketStatus.ACTIVE)
    _enqueue(session_factory, 1)
    assert len(worker.plan()) == 1

    with session_scope(session_factory) as session:
        session.execute(update(WorkItem).values(claimed_at=utcnow() - timedelta(hours=1)))

    assert worker.plan() == [RefreshItem(market_id=1, work_item_ids=(1,))]
    with session_factory() as session:
        (item,) = WorkQueueRepository(session).list_items(KIND)
    assert item.status == WorkItemStatus.CLAIMED.value
    assert item.attempts == 2


def test_refresh_all_active_includes_unqueued_markets(session_factory, chain, audit, test_settings):
    seed_market(session_factory, 1, status=MarketStatus.ACTIVE)
    seed_market(session_factory, 2, status=MarketStatus.ACTIVE, with_position_ids=False)
    seed_market(session_factory, 3, status=MarketStatus.FUNDING)
    seed_market(session_factory, 4, status=MarketStatus.ACTIVE)
    chain.balances = {1000: 1, 1001: 1, 1002: 2}
    _enqueue(session_factory, 4)
    worker = RefreshOutcomeChancesWorker(
        chain_client=chain,
        session_factory=session_factory,
        audit=audit,
        settings=test_settings,
        refresh_all_active=True,
    )

    report = worker.run()

    assert sorted(report.succeeded, key=lambda item: item.market_id) == [
        RefreshItem(market_id=1, work_item_ids=()),
        RefreshItem(market_id=4, work_item_ids=(1,)),
    ]
    with session_factory() as session:
        written = session.execute(select(OutcomeChance.market_id)).scalars().all()
    assert sorted(written) == [1, 1, 1, 4, 4, 4]
    assert _statuses(session_factory) == {4: WorkItemStatus.DONE.value}
