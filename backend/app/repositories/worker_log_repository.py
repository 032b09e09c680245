from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import WorkerLog


class WorkerLogRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def append(
        self,
        *,
        status: int,
        worker: str,
        message: str,
        data: dict[str, Any] | None = None,
        error: str | None = None,
        correlation_id: str | None = None,
    ) -> WorkerLog:
        record = WorkerLog(
            status=status,
            worker=worker,
            message=message,
            data=data,
            error=error,
            correlation_id=correlation_id,
        )
        self._session.add(record)
        self._session.flush()
        return record

    def list_recent(self, *, worker: str | None = None, limit: int = 100) -> list[WorkerLog]:
        query = select(WorkerLog).order_by(WorkerLog.id.desc()).limit(limit)
        if worker is not None:
            query = query.where(WorkerLog.worker == worker)
        return list(self._session.execute(query).scalars().all())
