"""Append-only worker audit log stored in ``worker_logs``."""

from __future__ import annotations

from typing import Any, Protocol

from loguru import logger

from app.db import SessionFactory, SessionLocal, session_scope
from app.models import WorkerLogStatus
from app.repositories import WorkerLogRepository


class AuditSink(Protocol):
    def write_log(
        self,
        severity: WorkerLogStatus,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        correlation_id: str | None = None,
    ) -> None:
        ...


class AuditLog:
    """Write audit rows in their own short transaction.

    Entries use a separate session so they persist when the caller's
    transaction is rolled back.
    """

    def __init__(self, worker: str, session_factory: SessionFactory | None = None) -> None:
        self.worker = worker
        self._session_factory = session_factory or SessionLocal

    def write_log(
        self,
        severity: WorkerLogStatus,
        message: str,
        context: dict[str, Any] | None = None,
        error: BaseException | None = None,
        correlation_id: str | None = None,
    ) -> None:
        error_text: str | None = None
        if error is not None:
            error_text = f"{type(error).__name__}: {error}"
            message = f"{message} ({error})"
            severity = WorkerLogStatus.ERROR

        try:
            with session_scope(self._session_factory) as session:
                WorkerLogRepository(session).append(
                    status=int(severity),
                    worker=self.worker,
                    message=message,
                    data=_jsonable(context),
                    error=error_text,
                    correlation_id=correlation_id,
                )
        except Exception:  # noqa: BLE001
            logger.exception("{}: failed to write audit log entry: {}", self.worker, message)
            return

        logger.log(
            "ERROR" if severity == WorkerLogStatus.ERROR else "INFO",
            "{}: {}{}",
            self.worker,
            message,
            f" [correlation_id={correlation_id}]" if correlation_id else "",
        )


def _jsonable(context: dict[str, Any] | None) -> dict[str, Any] | None:
    if context is None:
        return None
    result: dict[str, Any] = {}
    for key, value in context.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            result[key] = value
        elif isinstance(value, (list, tuple)):
            result[key] = [item if isinstance(item, (str, int, float, bool)) else str(item) for item in value]
        else:
            result[key] = str(value)
    return result
