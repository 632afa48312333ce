from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.models import RawRecord


def _now() -> datetime:
    return datetime.now(timezone.utc)


def upsert_raw_record(
    db: Session,
    *,
    integration_id: str,
    object_type: str,
    external_id: str,
    payload: dict,
) -> bool:
    """Store the untranslated payload, overwriting any earlier copy. Returns True on insert."""
    existing = db.execute(
        select(RawRecord).where(
            RawRecord.integration_id == integration_id,
            RawRecord.object_type == object_type,
            RawRecord.external_id == external_id,
        )
    ).scalar_one_or_none()
    if existing:
        existing.payload = payload
        existing.received_at = _now()
        return False
    db.add(
        RawRecord(
            integration_id=integration_id,
            object_type=object_type,
            external_id=external_id,
            payload=payload,
            received_at=_now(),
        )
    )
    db.flush()
    return True


def get_raw_record(db: Session, integration_id: str, object_type: str, external_id: str) -> Optional[RawRecord]:
    return db.execute(
        select(RawRecord).where(
            RawRecord.integration_id == integration_id,
            RawRecord.object_type == object_type,
            RawRecord.external_id == external_id,
        )
    ).scalar_one_or_none()
