"""Database-backed queue feeding the fan-out workers."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import WorkItem, WorkItemStatus, utcnow


class WorkQueueRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    def enqueue(self, kind: str, entity_id: int) -> WorkItem:
        """Add a pending item unless one with the same key is already waiting."""

        query = select(WorkItem).where(
            WorkItem.kind == kind,
            WorkItem.entity_id == entity_id,
            WorkItem.status == WorkItemStatus.PENDING.value,
        )
        existing = self._session.execute(query).scalars().first()
        if existing is not None:
            return existing

        item = WorkItem(kind=kind, entity_id=entity_id, status=WorkItemStatus.PENDING.value)
        self._session.add(item)
        self._session.flush()
        return item

    def claim_pending(self, kind: str, *, limit: int) -> list[WorkItem]:
        # Rows claimed by a concurrent fan-out run are skipped.
        query = (
            select(WorkItem)
            .where(WorkItem.kind == kind, WorkItem.status == WorkItemStatus.PENDING.value)
            .order_by(WorkItem.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        items = list(self._session.execute(query).scalars().all())
        now = utcnow()
        for item in items:
            item.status = WorkItemStatus.CLAIMED.value
            item.attempts = (item.attempts or 0) + 1
            item.claimed_at = now
        self._session.flush()
        return items

    def release_stale_claims(self, kind: str, *, claimed_before: datetime) -> int:
        """Queue items again whose claiming run never marked them done or failed."""

        query = (
            select(WorkItem)
            .where(
                WorkItem.kind == kind,
                WorkItem.status == WorkItemStatus.CLAIMED.value,
                WorkItem.claimed_at < claimed_before,
            )
            .order_by(WorkItem.id)
            .with_for_update(skip_locked=True)
        )
        items = list(self._session.execute(query).scalars().all())
        for item in items:
            item.status = WorkItemStatus.PENDING.value
            item.claimed_at = None
        self._session.flush()
        return len(items)

    def mark_done(self, item_id: int) -> None:
        item = self._session.get(WorkItem, item_id)
        if item is None:
            return
        item.status = WorkItemStatus.DONE.value
        item.last_error = None
        item.finished_at = utcnow()
        self._session.flush()

    def mark_failed(self, item_id: int, error: str) -> None:
        item = self._session.get(WorkItem, item_id)
        if item is None:
            return
        item.status = WorkItemStatus.FAILED.value
        item.last_error = error
        item.finished_at = utcnow()
        self._session.flush()

    def list_items(self, kind: str | None = None) -> list[WorkItem]:
        query = select(WorkItem).order_by(WorkItem.id)
        if kind is not None:
            query = query.where(WorkItem.kind == kind)
        return list(self._session.execute(query).scalars().all())
