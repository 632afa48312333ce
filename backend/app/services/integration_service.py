from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backend.app.models import INTEGRATION_STATUSES, Integration, SyncCursor, Tenant, Workspace


def _now() -> datetime:
    return datetime.now(timezone.utc)


# -------------------------
# Tenant / workspace
# -------------------------


def get_or_create_tenant(db: Session, name: str) -> Tenant:
    stmt = select(Tenant).where(Tenant.name == name)
    tenant = db.execute(stmt).scalar_one_or_none()
    if tenant:
        return tenant
    try:
        with db.begin_nested():
            tenant = Tenant(name=name, created_at=_now())
            db.add(tenant)
            db.flush()
    except IntegrityError:
        tenant = db.execute(stmt).scalar_one()
    return tenant


def get_or_create_workspace(db: Session, tenant: Tenant, name: str) -> Workspace:
    stmt = select(Workspace).where(Workspace.tenant_id == tenant.id, Workspace.name == name)
    workspace = db.execute(stmt).scalar_one_or_none()
    if workspace:
        return workspace
    try:
        with db.begin_nested():
            workspace = Workspace(tenant_id=tenant.id, name=name, created_at=_now())
            db.add(workspace)
            db.flush()
    except IntegrityError:
        workspace = db.execute(stmt).scalar_one()
    return workspace


def find_workspace(db: Session, tenant_name: str, workspace_name: str) -> Optional[Workspace]:
    return db.execute(
        select(Workspace)
        .join(Tenant, Tenant.id == Workspace.tenant_id)
        .where(Tenant.name == tenant_name, Workspace.name == workspace_name)
    ).scalar_one_or_none()


# -------------------------
# Integration lifecycle
# -------------------------


def get_integration(db: Session, workspace_id: str, provider: str) -> Optional[Integration]:
    return db.execute(
        select(Integration).where(
            Integration.workspace_id == workspace_id,
            Integration.provider == provider,
        )
    ).scalar_one_or_none()


def get_or_create_integration(db: Session, workspace_id: str, provider: str) -> Integration:
    integration = get_integration(db, workspace_id, provider)
    if integration:
        if integration.status == "planned":
            set_status(integration, "active")
        return integration
    try:
        with db.begin_nested():
            integration = Integration(
                workspace_id=workspace_id,
                provider=provider,
                status="active",
                created_at=_now(),
                updated_at=_now(),
            )
            db.add(integration)
            db.flush()
    except IntegrityError:
        integration = get_integration(db, workspace_id, provider)
    return integration


def set_status(integration: Integration, status: str) -> None:
    if status not in INTEGRATION_STATUSES:
        raise ValueError(f"invalid integration status: {status}")
    integration.status = status
    integration.updated_at = _now()


def mark_sync_success(integration: Integration) -> None:
    integration.last_sync_at = _now()
    integration.last_error = None
    if integration.status == "error":
        set_status(integration, "active")
    else:
        integration.updated_at = _now()


def mark_sync_error(integration: Integration, error: str) -> None:
    integration.last_error = error
    set_status(integration, "error")


# -------------------------
# Cursors
# -------------------------


def get_cursor(db: Session, integration_id: str, object_type: str) -> Optional[str]:
    return db.execute(
        select(SyncCursor.cursor).where(
            SyncCursor.integration_id == integration_id,
            SyncCursor.object_type == object_type,
        )
    ).scalar_one_or_none()


def set_cursor(db: Session, integration_id: str, object_type: str, cursor: str) -> None:
    row = db.execute(
        select(SyncCursor).where(
            SyncCursor.integration_id == integration_id,
            SyncCursor.object_type == object_type,
        )
    ).scalar_one_or_none()
    if row:
        row.cursor = cursor
        row.updated_at = _now()
        return
    db.add(SyncCursor(integration_id=integration_id, object_type=object_type, cursor=cursor, updated_at=_now()))
    db.flush()


def list_cursors(db: Session, integration_id: str, prefix: str = "") -> dict[str, str]:
    rows = db.execute(select(SyncCursor).where(SyncCursor.integration_id == integration_id)).scalars().all()
    return {
        row.object_type[len(prefix):]: row.cursor
        for row in rows
        if row.object_type.startswith(prefix)
    }
