from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from app.db import create_db_engine, create_session_factory, init_db, session_scope
from app.models import Job, JobStatus
from app.repositories import JobRepository, snapshot_job
from pipelines.jobs.lock import (
    AlertType,
    JobLockManager,
    JobLockedError,
    JobNotFoundError,
    JobResultStatus,
)


class AlertRecorder:
    def __init__(self, fail: bool = False) -> None:
        self.calls: list[tuple[object, AlertType]] = []
        self.fail = fail

    def __call__(self, job, alert_type: AlertType) -> None:
        self.calls.append((job, alert_type))
        if self.fail:
            raise RuntimeError("slack is down")


@pytest.fixture
def recorder() -> AlertRecorder:
    return AlertRecorder()


@pytest.fixture
def manager(session_factory, test_settings, clock, recorder) -> JobLockManager:
    return JobLockManager(
        session_factory=session_factory, settings=test_settings, clock=clock, on_alert=recorder
    )


def _create_job(session_factory, name: str = "refresh-prices", **fields) -> int:
    with session_scope(session_factory) as session:
        job = Job(**{"name": name, "status": JobStatus.ACTIVE.value, "executor_count": 0, **fields})
        session.add(job)
        session.flush()
        return job.id


def _load(session_factory, job_id: int) -> Job:
    with session_factory() as session:
        return JobRepository(session).get_job(job_id)


def test_second_acquirer_sees_the_lock(session_factory, manager, recorder, clock):
    """The second acquirer sees the lock and aborts without touching the row."""
    job_id = _create_job(session_factory)

    winner = manager.acquire("refresh-prices")
    locked = _load(session_factory, job_id)
    assert (locked.status, locked.executor_count) == (JobStatus.LOCKED.value, 1)

    clock.now += timedelta(seconds=5)
    with pytest.raises(JobLockedError) as excinfo:
        manager.acquire(job_id)

    assert winner.id == job_id
    assert excinfo.value.stale is False
    after = _load(session_factory, job_id)
    assert (after.status, after.executor_count) == (JobStatus.LOCKED.value, 1)
    assert after.last_run == locked.last_run
    assert recorder.calls == []

    manager.release(job_id)
    released = _load(session_factory, job_id)
    assert (released.status, released.executor_count) == (JobStatus.ACTIVE.value, 0)


def test_only_one_concurrent_acquirer_wins(tmp_path, test_settings, clock, recorder, monkeypatch):
    """Both acquirers pass the locked read before either updates; exactly one locks the job."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'jobs.db'}")
    init_db(engine)
    factory = create_session_factory(engine)
    job_id = _create_job(factory)
    manager = JobLockManager(
        session_factory=factory, settings=test_settings, clock=clock, on_alert=recorder
    )

    barrier = threading.Barrier(2, timeout=5)
    get_job = JobRepository.get_job

    def get_job_then_wait(self, job_key, *, lock=False):
        job = get_job(self, job_key, lock=lock)
        if lock:
            barrier.wait()
        return job

    monkeypatch.setattr(JobRepository, "get_job", get_job_then_wait)
    outcomes: list[str] = []

    def attempt() -> None:
        try:
            manager.acquire("refresh-prices")
        except JobLockedError:
            outcomes.append("locked")
        else:
            outcomes.append("won")

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
    monkeypatch.undo()

    assert sorted(outcomes) == ["locked", "won"]
    row = _load(factory, job_id)
    assert (row.status, row.executor_count) == (JobStatus.LOCKED.value, 1)
    assert recorder.calls == []

    manager.release(job_id)
    row = _load(factory, job_id)
    assert (row.status, row.executor_count) == (JobStatus.ACTIVE.value, 0)
    engine.dispose()


def test_stale_lock_alerts_exactly_once(session_factory, manager, recorder, clock):
    """LOCKED for 20 minutes with a 15 minute timeout raises JOB_LOCK_TIMEOUT."""
    job_id = _create_job(
        session_factory,
        status=JobStatus.LOCKED.value,
        executor_count=1,
        last_run=clock.now - timedelta(minutes=20),
        timeout_seconds=15 * 60,
    )

    with pytest.raises(JobLockedError) as excinfo:
        manager.acquire(job_id)

    assert excinfo.value.stale is True
    assert len(recorder.calls) == 1
    job, alert_type = recorder.calls[0]
    assert alert_type == AlertType.JOB_LOCK_TIMEOUT
    assert job.id == job_id
    row = _load(session_factory, job_id)
    assert (row.status, row.executor_count) == (JobStatus.LOCKED.value, 1)


def test_overlap_within_timeout_is_silent(session_factory, manager, recorder, clock):
    _create_job(
        session_factory,
        status=JobStatus.LOCKED.value,
        executor_count=1,
        last_run=clock.now - timedelta(minutes=5),
    )

    result = manager.run_singleton_job("refresh-prices", lambda job: None)

    assert result.status == JobResultStatus.SKIPPED_LOCKED
    assert result.alert is None
    assert recorder.calls == []


def test_default_timeout_applies_without_job_timeout(session_factory, manager, recorder, clock):
    _create_job(
        session_factory,
        status=JobStatus.LOCKED.value,
        executor_count=1,
        last_run=clock.now - timedelta(minutes=16),
    )

    result = manager.run_singleton_job("refresh-prices", lambda job: None)

    assert result.alert == AlertType.JOB_LOCK_TIMEOUT
    assert len(recorder.calls) == 1


def test_locked_job_that_never_ran_is_not_stale(session_factory, manager, recorder):
    _create_job(session_factory, status=JobStatus.LOCKED.value, executor_count=1, last_run=None)

    with pytest.raises(JobLockedError) as excinfo:
        manager.acquire("refresh-prices")

    assert excinfo.value.stale is False
    assert recorder.calls == []


def test_missing_job_alerts(manager, recorder):
    with pytest.raises(JobNotFoundError):
        manager.acquire("does-not-exist")

    assert recorder.calls == [(None, AlertType.MISSING_JOB_DEFINITION)]


def test_run_singleton_job_missing(manager):
    result = manager.run_singleton_job(404, lambda job: None)

    assert result.status == JobResultStatus.SKIPPED_MISSING
    assert result.alert == AlertType.MISSING_JOB_DEFINITION
    assert not result.ran


def test_run_singleton_job_completes_and_releases(session_factory, manager, clock):
    job_id = _create_job(session_factory, config={"batch": 3})
    seen = []

    def body(job):
        seen.append((job.name, job.status, job.executor_count, job.config))
        return "done"

    result = manager.run_singleton_job(job_id, body)

    assert result.status == JobResultStatus.COMPLETED
    assert result.value == "done"
    assert seen == [("refresh-prices", JobStatus.LOCKED.value, 1, {"batch": 3})]
    row = _load(session_factory, job_id)
    assert (row.status, row.executor_count) == (JobStatus.ACTIVE.value, 0)
    assert row.last_run.replace(tzinfo=None) == clock.now.replace(tzinfo=None)


def test_failed_body_is_caught_and_job_released(session_factory, manager):
    job_id = _create_job(session_factory)

    def body(job):
        raise ValueError("boom")

    result = manager.run_singleton_job(job_id, body)

    assert result.status == JobResultStatus.FAILED
    assert isinstance(result.error, ValueError)
    row = _load(session_factory, job_id)
    assert (row.status, row.executor_count) == (JobStatus.ACTIVE.value, 0)


def test_inactive_job_is_not_acquired(session_factory, manager):
    job_id = _create_job(session_factory, status=JobStatus.INACTIVE.value)

    with pytest.raises(JobLockedError):
        manager.acquire(job_id)

    assert _load(session_factory, job_id).status == JobStatus.INACTIVE.value


def test_release_floors_executor_count(session_factory, manager):
    job_id = _create_job(session_factory)

    snapshot = manager.release(job_id)

    assert snapshot.executor_count == 0
    assert snapshot.status == JobStatus.ACTIVE.value


def test_alert_handler_failure_is_swallowed(session_factory, test_settings, clock):
    failing = AlertRecorder(fail=True)
    manager = JobLockManager(
        session_factory=session_factory, settings=test_settings, clock=clock, on_alert=failing
    )

    result = manager.run_singleton_job("missing", lambda job: None)

    assert result.status == JobResultStatus.SKIPPED_MISSING
    assert len(failing.calls) == 1


def test_per_call_alert_handler_overrides_default(session_factory, manager, recorder):
    local = AlertRecorder()

    manager.run_singleton_job("missing", lambda job: None, on_alert=local)

    assert len(local.calls) == 1
    assert recorder.calls == []


def test_is_stale_boundary(session_factory, manager, clock):
    _create_job(session_factory, last_run=clock.now - timedelta(seconds=900), timeout_seconds=900)
    with session_factory() as session:
        job = snapshot_job(JobRepository(session).get_job("refresh-prices"))

    assert not manager.is_stale(job)
    assert manager.is_stale(job, clock.now + timedelta(seconds=1))


def test_guarded_lock_update_matches_only_an_unheld_job(session_factory, clock):
    job_id = _create_job(session_factory)

    with session_scope(session_factory) as session:
        assert JobRepository(session).mark_locked(job_id, now=clock.now)
    with session_scope(session_factory) as session:
        assert not JobRepository(session).mark_locked(job_id, now=clock.now)

    row = _load(session_factory, job_id)
    assert (row.status, row.executor_count) == (JobStatus.LOCKED.value, 1)
