"""External-ID mapping store.

One row per (integration, object type, external id). Rows are never deleted;
upserts refresh ``internal_id`` and ``last_seen_at``.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.models import ExternalObject


def _now() -> datetime:
    return datetime.now(timezone.utc)


def payload_checksum(payload: Any) -> str:
    encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def lookup(db: Session, integration_id: str, object_type: str, external_id: str) -> Optional[str]:
    return db.execute(
        select(ExternalObject.internal_id).where(
            ExternalObject.integration_id == integration_id,
            ExternalObject.object_type == object_type,
            ExternalObject.external_id == external_id,
        )
    ).scalar_one_or_none()


def upsert(
    db: Session,
    integration_id: str,
    object_type: str,
    external_id: str,
    internal_id: str,
    *,
    checksum: Optional[str] = None,
) -> ExternalObject:
    row = db.execute(
        select(ExternalObject).where(
            ExternalObject.integration_id == integration_id,
            ExternalObject.object_type == object_type,
            ExternalObject.external_id == external_id,
        )
    ).scalar_one_or_none()
    if row:
        row.internal_id = internal_id
        row.last_seen_at = _now()
        if checksum is not None:
            row.checksum = checksum
        return row
    row = ExternalObject(
        integration_id=integration_id,
        object_type=object_type,
        external_id=external_id,
        internal_id=internal_id,
        checksum=checksum,
        last_seen_at=_now(),
    )
    db.add(row)
    db.flush()
    return row


def reverse_lookup(
    db: Session,
    integration_id: str,
    object_type: str,
    internal_ids: Iterable[str],
) -> dict[str, str]:
    ids = sorted({internal_id for internal_id in internal_ids if internal_id})
    if not ids:
        return {}
    rows = db.execute(
        select(ExternalObject.internal_id, ExternalObject.external_id).where(
            ExternalObject.integration_id == integration_id,
            ExternalObject.object_type == object_type,
            ExternalObject.internal_id.in_(ids),
        )
    ).all()
    return {internal_id: external_id for internal_id, external_id in rows}
