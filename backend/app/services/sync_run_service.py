from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.models import SyncRun


def _now() -> datetime:
    return datetime.now(timezone.utc)


def start_run(db: Session, *, integration_id: str, run_type: str) -> SyncRun:
    run = SyncRun(
        integration_id=integration_id,
        run_type=run_type,
        status="in_progress",
        started_at=_now(),
    )
    db.add(run)
    db.flush()
    return run


def finish_run(
    db: Session,
    run: SyncRun,
    *,
    status: str,
    counts: Optional[dict] = None,
    error: Optional[str] = None,
) -> None:
    run.status = status
    run.counts = counts
    run.error = error
    run.finished_at = _now()
    db.add(run)


def list_runs(db: Session, integration_id: str, limit: int = 10) -> list[SyncRun]:
    return db.execute(
        select(SyncRun)
        .where(SyncRun.integration_id == integration_id)
        .order_by(SyncRun.started_at.desc())
        .limit(limit)
    ).scalars().all()
