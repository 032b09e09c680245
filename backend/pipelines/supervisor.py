"""Keep one indexer process running for every market that needs indexing.

The supervisor is pull-based: every planning cycle it reaps exited processes,
reads the desired market set from the database, starts what is missing and
asks what is no longer wanted to stop. Between planning cycles it polls for
exited indexers on a short tick and restarts crashed ones as soon as their
backoff allows. Restarting a crashed indexer is decided here, never by the
dying process itself.
"""

from __future__ import annotations

import multiprocessing
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

from loguru import logger

from app.core.config import Settings, get_settings
from app.db import SessionFactory, SessionLocal, session_scope
from app.models import WorkerLogStatus
from app.repositories import MarketRepository
from app.services.alerts import AlertChannel, AlertSink, SlackAlertSink
from app.services.audit import AuditLog, AuditSink

from .indexer import StopSignal, indexer_process_main, process_name


class ProcessHandle(Protocol):
    @property
    def exitcode(self) -> int | None:
        ...

    def is_alive(self) -> bool:
        ...

    def request_stop(self) -> None:
        ...

    def join(self, timeout: float | None = None) -> None:
        ...

    def terminate(self) -> None:
        ...


class ProcessSpawner(Protocol):
    def spawn(self, market_id: int, name: str) -> ProcessHandle:
        ...


class MultiprocessingHandle:
    """A spawned OS process plus the event it polls at its sleep boundary."""

    def __init__(self, process: Any, stop_event: Any) -> None:
        self._process = process
        self._stop_event = stop_event

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def exitcode(self) -> int | None:
        return self._process.exitcode

    def is_alive(self) -> bool:
        return self._process.is_alive()

    def request_stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        self._process.join(timeout)

    def terminate(self) -> None:
        self._process.terminate()


class MultiprocessingSpawner:
    """Run every indexer in its own OS process (``spawn`` start method)."""

    def __init__(
        self,
        target: Callable[[int, StopSignal], None] = indexer_process_main,
        *,
        start_method: str = "spawn",
    ) -> None:
        self._target = target
        self._context = multiprocessing.get_context(start_method)

    def spawn(self, market_id: int, name: str) -> MultiprocessingHandle:
        stop_event = self._context.Event()
        process = self._context.Process(
            target=self._target,
            args=(market_id, stop_event),
            name=name,
            daemon=False,
        )
        process.start()
        logger.debug("Spawned process {} (pid={})", name, process.pid)
        return MultiprocessingHandle(process, stop_event)


@dataclass(slots=True)
class RunningIndexer:
    market_id: int
    name: str
    handle: ProcessHandle
    started_at: float
    stop_requested: bool = False


@dataclass(slots=True)
class CrashRecord:
    consecutive_crashes: int
    last_exit_code: int | None
    restart_not_before: float


@dataclass(slots=True)
class PlanResult:
    started: list[int] = field(default_factory=list)
    stopped: list[int] = field(default_factory=list)
    restarted: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    deferred: list[int] = field(default_factory=list)


def restart_delay(
    consecutive_crashes: int, schedule: tuple[float, ...], max_delay: float
) -> float:
    """Delay before restarting after the ``n``-th consecutive crash.

    Uses the schedule entries in order, then keeps doubling the last entry.
    """

    if consecutive_crashes < 1:
        return 0.0
    if consecutive_crashes <= len(schedule):
        delay = schedule[consecutive_crashes - 1]
    else:
        delay = schedule[-1] * (2 ** (consecutive_crashes - len(schedule)))
    return min(delay, max_delay)


class Supervisor:
    """Owns the registry ``market_id -> running indexer`` for one host."""

    def __init__(
        self,
        *,
        spawner: ProcessSpawner | None = None,
        session_factory: SessionFactory | None = None,
        settings: Settings | None = None,
        alert_sink: AlertSink | None = None,
        audit: AuditSink | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.kind = self.settings.supervisor_process_kind
        self._spawner = spawner or MultiprocessingSpawner()
        self._session_factory = session_factory or SessionLocal
        self._alerts = alert_sink or SlackAlertSink(self.settings)
        self._audit = audit or AuditLog("supervisor", self._session_factory)
        self._clock = clock
        self._registry: dict[int, RunningIndexer] = {}
        self._crashes: dict[int, CrashRecord] = {}
        self._pending_restarts: set[int] = set()

    # ------------------------------------------------------------------
    # Registry views

    @property
    def registry(self) -> dict[int, RunningIndexer]:
        return dict(self._registry)

    def running_market_ids(self) -> set[int]:
        """Markets with a live indexer that has not been asked to stop."""

        return {
            market_id
            for market_id, entry in self._registry.items()
            if not entry.stop_requested
        }

    def crash_record(self, market_id: int) -> CrashRecord | None:
        return self._crashes.get(market_id)

    # ------------------------------------------------------------------
    # Control

    def start(self, market_id: int) -> bool:
        """Spawn the indexer for ``market_id`` unless one is registered already."""

        if market_id in self._registry:
            return False

        name = process_name(self.kind, market_id)
        try:
            handle = self._spawner.spawn(market_id, name)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Failed to start {}; retrying next cycle", name)
            self._alerts.notify(
                f"*[INDEXER ERROR]*: Error starting process `{name}`: `{exc}`",
                urgent=True,
                channel=AlertChannel.INDEXER,
            )
            self._audit.write_log(
                WorkerLogStatus.ERROR,
                f"Failed to start {name}",
                context={"market_id": market_id},
                error=exc,
            )
            return False

        self._registry[market_id] = RunningIndexer(
            market_id=market_id, name=name, handle=handle, started_at=self._clock()
        )
        self._pending_restarts.discard(market_id)
        logger.info("Started {}", name)
        return True

    def stop(self, market_id: int) -> bool:
        """Ask the indexer to stop at its next sleep boundary."""

        entry = self._registry.get(market_id)
        if entry is None or entry.stop_requested:
            return False
        entry.handle.request_stop()
        entry.stop_requested = True
        logger.info("Requested stop of {}", entry.name)
        return True

    # ------------------------------------------------------------------
    # Planning

    def _desired_market_ids(self) -> set[int]:
        with session_scope(self._session_factory) as session:
            return set(MarketRepository(session).list_markets_to_index())

    def _record_crash(self, entry: RunningIndexer, now: float) -> CrashRecord:
        previous = self._crashes.get(entry.market_id)
        runtime = now - entry.started_at
        if previous is None or runtime >= self.settings.supervisor_healthy_runtime_seconds:
            consecutive = 1
        else:
            consecutive = previous.consecutive_crashes + 1

        delay = restart_delay(
            consecutive,
            self.settings.restart_backoff_schedule,
            self.settings.supervisor_restart_backoff_max_seconds,
        )
        record = CrashRecord(
            consecutive_crashes=consecutive,
            last_exit_code=entry.handle.exitcode,
            restart_not_before=now + delay,
        )
        self._crashes[entry.market_id] = record
        return record

    def _reap(self, now: float) -> None:
        for market_id, entry in list(self._registry.items()):
            if entry.handle.is_alive():
                continue

            del self._registry[market_id]
            if entry.stop_requested:
                self._crashes.pop(market_id, None)
                logger.info("{} stopped (exit code {})", entry.name, entry.handle.exitcode)
                continue

            record = self._record_crash(entry, now)
            self._pending_restarts.add(market_id)
            logger.warning(
                "{} exited unexpectedly (exit code {}, consecutive crashes {}, restart in {:.1f}s)",
                entry.name,
                record.last_exit_code,
                record.consecutive_crashes,
                max(record.restart_not_before - now, 0.0),
            )
            self._audit.write_log(
                WorkerLogStatus.WARNING,
                f"{entry.name} exited unexpectedly",
                context={
                    "market_id": market_id,
                    "exit_code": record.last_exit_code,
                    "consecutive_crashes": record.consecutive_crashes,
                },
            )

    def _log_result(self, label: str, result: PlanResult) -> None:
        if result.started or result.stopped or result.restarted or result.failed:
            logger.info(
                "{}: started={} stopped={} restarted={} failed={} deferred={}",
                label,
                result.started,
                result.stopped,
                result.restarted,
                result.failed,
                result.deferred,
            )

    def handle_exits(self) -> PlanResult:
        """Reap exited indexers and restart crashed ones whose backoff has elapsed.

        Does not read the desired set; the next planning cycle stops a restarted
        market that is no longer wanted. A failed respawn is retried by the
        planning cycle.
        """

        now = self._clock()
        self._reap(now)
        result = PlanResult()
        for market_id in sorted(self._pending_restarts):
            crash = self._crashes.get(market_id)
            if crash is not None and now < crash.restart_not_before:
                result.deferred.append(market_id)
                continue
            self._pending_restarts.discard(market_id)
            if self.start(market_id):
                result.restarted.append(market_id)
            else:
                result.failed.append(market_id)
        self._log_result("Supervisor exit check", result)
        return result

    def plan_cycle(self) -> PlanResult:
        """Converge the registry onto the desired set once."""

        now = self._clock()
        self._reap(now)
        desired = self._desired_market_ids()
        result = PlanResult()

        for market_id in sorted(desired - set(self._registry)):
            crash = self._crashes.get(market_id)
            if crash is not None and now < crash.restart_not_before:
                result.deferred.append(market_id)
                continue
            self._pending_restarts.discard(market_id)
            if not self.start(market_id):
                result.failed.append(market_id)
            elif crash is not None:
                result.restarted.append(market_id)
            else:
                result.started.append(market_id)

        for market_id in sorted(set(self._registry) - desired):
            if self.stop(market_id):
                result.stopped.append(market_id)

        # Markets that left the desired set no longer need a restart.
        for market_id in list(self._crashes):
            if market_id not in desired:
                del self._crashes[market_id]
        self._pending_restarts &= desired

        self._log_result("Supervisor cycle", result)
        return result

    def run_forever(self, stop_event: StopSignal | None = None) -> None:
        stop_event = stop_event or threading.Event()
        interval = self.settings.supervisor_interval_seconds
        tick = min(self.settings.supervisor_exit_poll_seconds, interval)
        logger.info("Supervisor started (interval={}s, kind={})", interval, self.kind)
        next_plan = self._clock()
        try:
            while not stop_event.is_set():
                now = self._clock()
                try:
                    if now >= next_plan:
                        next_plan = now + interval
                        self.plan_cycle()
                    else:
                        self.handle_exits()
                except Exception:  # noqa: BLE001
                    logger.exception("Supervisor cycle failed")
                stop_event.wait(tick)
        finally:
            self.shutdown()

    def shutdown(self, timeout: float | None = None) -> None:
        """Stop every indexer, wait for acknowledgement and terminate stragglers."""

        timeout = self.settings.supervisor_stop_timeout_seconds if timeout is None else timeout
        entries = list(self._registry.values())
        for entry in entries:
            if not entry.stop_requested:
                entry.handle.request_stop()
                entry.stop_requested = True

        deadline = time.monotonic() + timeout
        for entry in entries:
            entry.handle.join(max(deadline - time.monotonic(), 0.0))
            if entry.handle.is_alive():
                logger.warning("{} did not stop within {}s; terminating", entry.name, timeout)
                entry.handle.terminate()
                entry.handle.join(5.0)

        self._registry.clear()
        self._pending_restarts.clear()
        logger.info("Supervisor shut down ({} indexers stopped)", len(entries))


__all__ = [
    "CrashRecord",
    "MultiprocessingHandle",
    "MultiprocessingSpawner",
    "PlanResult",
    "ProcessHandle",
    "ProcessSpawner",
    "RunningIndexer",
    "Supervisor",
    "restart_delay",
]
