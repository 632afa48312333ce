"""One sync cycle: export from a connector into a staging directory, optionally
ingest it, then record the new manifest."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from backend.app.integrations import get_connector, list_connectors as _registry_names, resolve_credentials
from backend.app.integrations.base import (
    ExportManifest,
    IntegrationDisabledError,
    SyncConfigError,
    UnknownConnectorError,
    empty_counts,
)
from backend.app.integrations.utils import default_out_dir, utcnow
from backend.app.services import staging_service


logger = logging.getLogger(__name__)

INBOUND_CURSOR_PREFIX = "inbound:"


@dataclass(frozen=True)
class IngestTarget:
    tenant: str
    workspace: str


@dataclass
class SyncStats:
    connector: str
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    counts: dict[str, int] = field(default_factory=empty_counts)
    cursor_state: Optional[dict[str, str]] = None
    full_sync: bool = True
    error: Optional[str] = None
    ingest: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "connector": self.connector,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat(),
            "durationMs": self.duration_ms,
            "counts": dict(self.counts),
            "cursorState": self.cursor_state,
            "fullSync": self.full_sync,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.ingest is not None:
            payload["ingest"] = self.ingest
        return payload


@dataclass(frozen=True)
class ConnectorStatus:
    name: str
    last_synced_at: Optional[datetime]
    cursor_state: Optional[dict[str, str]]
    ticket_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "lastSyncedAt": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "cursorState": self.cursor_state,
            "ticketCount": self.ticket_count,
        }


def list_connectors() -> list[str]:
    return _registry_names()


def _existing_integration(db, connector_name: str, target: IngestTarget):
    from backend.app.services import integration_service

    workspace = integration_service.find_workspace(db, target.tenant, target.workspace)
    if workspace is None:
        return None
    integration = integration_service.get_integration(db, workspace.id, connector_name)
    if integration is not None and integration.status == "disabled":
        raise IntegrationDisabledError(f"{connector_name} integration is disabled for workspace {target.workspace}")
    return integration


def _stored_cursors(db, integration) -> Optional[dict[str, str]]:
    from backend.app.services import integration_service

    return integration_service.list_cursors(db, integration.id, INBOUND_CURSOR_PREFIX) or None


def _ingest_and_commit(db, connector_name: str, target: IngestTarget, out_dir: Path, manifest: ExportManifest):
    from backend.app.services import ingest_service, integration_service

    stats = ingest_service.ingest_export_dir(
        db,
        tenant=target.tenant,
        workspace=target.workspace,
        provider=connector_name,
        directory=out_dir,
    )
    for key, value in (manifest.cursor_state or {}).items():
        integration_service.set_cursor(db, stats.integration_id, f"{INBOUND_CURSOR_PREFIX}{key}", value)
    db.commit()
    return stats


def _record_failure(db, connector_name: str, target: IngestTarget, message: str) -> None:
    from sqlalchemy.exc import SQLAlchemyError

    from backend.app.services import integration_service, sync_run_service

    try:
        workspace = integration_service.find_workspace(db, target.tenant, target.workspace)
        integration = (
            integration_service.get_integration(db, workspace.id, connector_name) if workspace else None
        )
        if integration is None:
            return
        integration_service.mark_sync_error(integration, message)
        run = sync_run_service.start_run(db, integration_id=integration.id, run_type="ingest")
        sync_run_service.finish_run(db, run, status="error", error=message)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("could not record sync failure for %s", connector_name)


def run_cycle(
    connector_name: str,
    *,
    full_sync: bool = False,
    out_dir: Optional[Path] = None,
    ingest: Optional[IngestTarget] = None,
    db=None,
) -> SyncStats:
    connector = get_connector(connector_name)
    out_dir = Path(out_dir) if out_dir else default_out_dir(connector.name)
    auth = resolve_credentials(connector)
    ingesting = ingest is not None and db is not None
    integration = _existing_integration(db, connector.name, ingest) if ingesting else None

    cursor_state: Optional[dict[str, str]] = None
    if connector.incremental and not full_sync:
        prior = staging_service.load_manifest(out_dir)
        cursor_state = prior.cursor_state if prior else None
        if cursor_state is None and integration is not None:
            cursor_state = _stored_cursors(db, integration)
    is_full = cursor_state is None

    started_at = utcnow()
    start = time.monotonic()
    logger.info(
        "sync cycle start: connector=%s mode=%s out=%s",
        connector.name,
        "full" if is_full else "incremental",
        out_dir,
    )

    try:
        out_dir.mkdir(parents=True, exist_ok=True)
        manifest = connector.export(auth, out_dir, cursor_state)
        ingest_stats = None
        if ingesting:
            ingest_stats = _ingest_and_commit(db, connector.name, ingest, out_dir, manifest)
        staging_service.write_manifest(out_dir, manifest)
    except Exception as exc:  # noqa: BLE001 - execution errors are reported, not raised
        logger.exception("sync cycle failed: connector=%s", connector.name)
        if ingesting:
            db.rollback()
            _record_failure(db, connector.name, ingest, str(exc))
        finished_at = utcnow()
        return SyncStats(
            connector=connector.name,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=int((time.monotonic() - start) * 1000),
            counts=empty_counts(),
            cursor_state=None,
            full_sync=is_full,
            error=str(exc) or exc.__class__.__name__,
        )

    stats = SyncStats(
        connector=connector.name,
        started_at=started_at,
        finished_at=utcnow(),
        duration_ms=int((time.monotonic() - start) * 1000),
        counts={**empty_counts(), **manifest.counts},
        cursor_state=manifest.cursor_state,
        full_sync=is_full,
        ingest=ingest_stats.as_dict() if ingest_stats else None,
    )
    logger.info(
        "sync cycle finished: connector=%s duration_ms=%s counts=%s",
        connector.name,
        stats.duration_ms,
        stats.counts,
    )
    return stats


def supports_ticket_sync(connector_name: str) -> bool:
    try:
        connector = get_connector(connector_name)
    except UnknownConnectorError:
        return False
    return callable(getattr(connector, "fetch_ticket", None))


def sync_ticket(db, connector_name: str, *, tenant: str, workspace: str, ticket_id: str):
    """Fetch one ticket with its comments and references, and ingest it. The caller commits."""
    from backend.app.services import ingest_service

    connector = get_connector(connector_name)
    fetch_ticket = getattr(connector, "fetch_ticket", None)
    if fetch_ticket is None:
        raise SyncConfigError(f"{connector.name} connector cannot sync single tickets")
    auth = resolve_credentials(connector)
    logger.info("single ticket sync: connector=%s ticket=%s", connector.name, ticket_id)
    batch = staging_service.decode_payloads(fetch_ticket(auth, ticket_id))
    return ingest_service.ingest_batch(
        db,
        tenant=tenant,
        workspace=workspace,
        provider=connector.name,
        batch=batch,
    )


def get_sync_status(connector_name: Optional[str] = None) -> list[ConnectorStatus]:
    names = list_connectors()
    if connector_name is not None:
        names = [name for name in names if name == connector_name.strip().lower()]
    statuses = []
    for name in names:
        manifest = staging_service.load_manifest(default_out_dir(name))
        statuses.append(
            ConnectorStatus(
                name=name,
                last_synced_at=manifest.exported_at if manifest else None,
                cursor_state=manifest.cursor_state if manifest else None,
                ticket_count=manifest.counts.get("tickets", 0) if manifest else 0,
            )
        )
    return statuses
