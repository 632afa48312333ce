from __future__ import annotations

import hashlib
import json
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backend.app.db import get_db
from backend.app.integrations.base import ConnectorExportError, SyncConfigError
from backend.app.services import ingest_service, outbound_service, sync_service
from backend.app.services.outbound_service import WorkspaceNotFoundError
from backend.app.services.sync_service import IngestTarget


router = APIRouter(prefix="/api/sync", tags=["sync"])


class ConnectorsOut(BaseModel):
    connectors: list[str]


class ConnectorStatusOut(BaseModel):
    name: str
    last_synced_at: Optional[datetime]
    cursor_state: Optional[dict[str, str]]
    ticket_count: int

    class Config:
        from_attributes = True


class SyncRunIn(BaseModel):
    full: bool = False
    out_dir: Optional[str] = None
    tenant: Optional[str] = None
    workspace: Optional[str] = None


class SyncStatsOut(BaseModel):
    connector: str
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    counts: dict[str, int]
    cursor_state: Optional[dict[str, str]]
    full_sync: bool
    error: Optional[str]
    ingest: Optional[dict[str, Any]]

    class Config:
        from_attributes = True


class OutboundPushIn(BaseModel):
    tenant: str
    workspace: str


class OutboundResultOut(BaseModel):
    updated: int
    skipped: int
    failed: int
    new_cursor: Optional[str]
    error: Optional[str]

    class Config:
        from_attributes = True


class WebhookOut(BaseModel):
    provider: str
    external_id: str
    inserted: bool
    ticket_id: Optional[str] = None
    ingest: Optional[dict[str, Any]] = None


@router.get("/connectors", response_model=ConnectorsOut)
def list_connectors():
    return ConnectorsOut(connectors=sync_service.list_connectors())


@router.get("/status", response_model=list[ConnectorStatusOut])
def sync_status(connector: Optional[str] = None):
    return sync_service.get_sync_status(connector)


@router.post("/{connector}/run", response_model=SyncStatsOut)
def run_sync(connector: str, req: SyncRunIn, db: Session = Depends(get_db)):
    if bool(req.tenant) != bool(req.workspace):
        raise HTTPException(400, "tenant and workspace must be given together")
    ingest = IngestTarget(tenant=req.tenant, workspace=req.workspace) if req.tenant else None
    try:
        return sync_service.run_cycle(
            connector,
            full_sync=req.full,
            out_dir=Path(req.out_dir) if req.out_dir else None,
            ingest=ingest,
            db=db if ingest else None,
        )
    except SyncConfigError as exc:
        raise HTTPException(400, str(exc)) from exc


@router.post("/outbound/{provider}/push", response_model=OutboundResultOut)
def push_outbound(provider: str, req: OutboundPushIn, db: Session = Depends(get_db)):
    try:
        return outbound_service.push_outbound_for(
            db, tenant=req.tenant, workspace=req.workspace, provider=provider
        )
    except WorkspaceNotFoundError as exc:
        raise HTTPException(404, str(exc)) from exc
    except SyncConfigError as exc:
        raise HTTPException(400, str(exc)) from exc


def _webhook_ticket_id(payload: dict) -> Optional[str]:
    """Ticket id carried by a ticket webhook, if any."""
    if payload.get("ticket_id") is not None:
        return str(payload["ticket_id"])
    ticket = payload.get("ticket")
    if isinstance(ticket, dict) and ticket.get("id") is not None:
        return str(ticket["id"])
    detail = payload.get("detail")
    if "ticket" in str(payload.get("type") or "") and isinstance(detail, dict) and detail.get("id") is not None:
        return str(detail["id"])
    return None


@router.post("/webhooks/{provider}", response_model=WebhookOut)
async def receive_webhook(
    provider: str,
    request: Request,
    tenant: str,
    workspace: str,
    db: Session = Depends(get_db),
):
    body = await request.body()
    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(400, "webhook body must be JSON") from exc
    if not isinstance(payload, dict):
        raise HTTPException(400, "webhook body must be a JSON object")
    event_id = payload.get("id")
    external_id = str(event_id) if event_id is not None else hashlib.sha256(body).hexdigest()
    provider_key = provider.strip().lower()
    ticket_id = _webhook_ticket_id(payload)
    ingest = None
    try:
        if ticket_id is not None and sync_service.supports_ticket_sync(provider_key):
            ingest = sync_service.sync_ticket(
                db, provider_key, tenant=tenant, workspace=workspace, ticket_id=ticket_id
            ).as_dict()
        inserted = ingest_service.record_webhook_event(
            db,
            tenant=tenant,
            workspace=workspace,
            provider=provider_key,
            payload=payload,
            external_id=external_id,
        )
    except SyncConfigError as exc:
        raise HTTPException(400, str(exc)) from exc
    except ConnectorExportError as exc:
        raise HTTPException(502, str(exc)) from exc
    db.commit()
    return WebhookOut(
        provider=provider_key,
        external_id=external_id,
        inserted=inserted,
        ticket_id=ticket_id,
        ingest=ingest,
    )
