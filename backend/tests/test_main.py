from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app.db import get_db, session_scope
from app.main import app
from app.models import MarketStatus
from app.repositories import JobRepository
from support import MARKET_ADDRESS, seed_market


@pytest.fixture
def client(session_factory):
    """Test client bound to the in-memory database; overrides cleared after each test."""

    def _override():
        with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_healthcheck(client):
    """Verify the healthcheck endpoint returns a successful response."""
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_indexer_status_empty(client):
    """Verify the status endpoint works against an empty database."""
    response = client.get("/indexer/status")
    assert response.status_code == 200
    assert response.json() == {"cursors": [], "jobs": []}


def test_indexer_status_lists_cursors_and_jobs(client, session_factory):
    """Verify cursors and job locks are reported."""
    seed_market(session_factory, 7, status=MarketStatus.ACTIVE, last_processed_block=321)
    with session_scope(session_factory) as session:
        JobRepository(session).ensure_job(name="claims_parser", interval_seconds=60)

    response = client.get("/indexer/status")
    assert response.status_code == 200
    payload = response.json()

    (cursor,) = payload["cursors"]
    assert cursor["market_id"] == 7
    assert cursor["contract_address"] == MARKET_ADDRESS
    assert cursor["last_processed_block"] == 321
    assert cursor["status"] == "active"

    (job,) = payload["jobs"]
    assert job["name"] == "claims_parser"
    assert job["status"] == "active"
    assert job["executor_count"] == 0
    assert job["interval_seconds"] == 60
    assert job["last_run"] is None
