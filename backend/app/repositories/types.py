"""Shared repository result types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(slots=True)
class CursorLag:
    """A chain cursor trailing the chain head."""

    market_id: int
    last_processed_block: int
    chain_head: int
    updated_at: datetime | None

    @property
    def difference(self) -> int:
        return self.chain_head - self.last_processed_block


@dataclass(slots=True, frozen=True)
class JobSnapshot:
    """Detached copy of a job row, safe to read after its transaction closed."""

    id: int
    name: str
    status: str
    executor_count: int
    last_run: datetime | None
    timeout_seconds: int | None
    interval_seconds: int | None
    config: dict | None


__all__ = ["CursorLag", "JobSnapshot"]
