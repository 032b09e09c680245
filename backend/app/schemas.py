from datetime import datetime
from typing import Any

from pydantic import BaseModel, field_validator


class CursorStatus(BaseModel):
    market_id: int
    contract_address: str | None = None
    last_processed_block: int
    window_size: int
    status: str
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class JobStatus(BaseModel):
    id: int
    name: str
    status: str
    executor_count: int
    last_run: datetime | None = None
    timeout_seconds: int | None = None
    interval_seconds: int | None = None

    @field_validator("executor_count", mode="before")
    @classmethod
    def _coerce_count(cls, value: Any) -> int:
        return int(value or 0)

    model_config = {"from_attributes": True}


class IndexerStatus(BaseModel):
    cursors: list[CursorStatus]
    jobs: list[JobStatus]
