from __future__ import annotations

from fastapi import Depends, FastAPI
from sqlalchemy.orm import Session

from . import schemas
from .core.config import settings
from .db import get_db, init_db
from .repositories import JobRepository, MarketRepository

app = FastAPI(title="Market Indexer Ops", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Create tables when the probe boots against a fresh database."""

    init_db()


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


@app.get("/indexer/status", response_model=schemas.IndexerStatus, tags=["system"])
def indexer_status(db: Session = Depends(get_db)) -> schemas.IndexerStatus:
    """Read-only view of chain cursors and job locks."""

    cursors = MarketRepository(db).list_cursors()
    jobs = JobRepository(db).list_jobs()
    return schemas.IndexerStatus(
        cursors=[schemas.CursorStatus.model_validate(cursor) for cursor in cursors],
        jobs=[schemas.JobStatus.model_validate(job) for job in jobs],
    )
