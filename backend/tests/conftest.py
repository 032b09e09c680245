from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.db import create_session_factory, init_db
from support import FakeChainClient, RecordingAlertSink, RecordingAudit

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        indexer_confirmation_lag=5,
        indexer_sleep_seconds=0,
        slack_webhook_url=None,
        job_default_timeout_seconds=15 * 60,
        fanout_max_workers=1,
        fanout_batch_size=10,
        supervisor_restart_backoff_seconds=[0.0, 2.0, 4.0],
        supervisor_restart_backoff_max_seconds=30.0,
        supervisor_healthy_runtime_seconds=60.0,
        supervisor_stop_timeout_seconds=0.1,
    )


@pytest.fixture
def chain() -> FakeChainClient:
    return FakeChainClient(head=200)


@pytest.fixture
def alerts() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


class Clock:
    """Manually advanced wall clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()
