from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.integrations import get_connector, resolve_credentials
from backend.app.integrations.base import OutboundClient, SyncConfigError
from backend.app.integrations.utils import as_utc, parse_datetime
from backend.app.models import Tag, Ticket, TicketTag
from backend.app.services import external_mapping_service, integration_service, sync_run_service


logger = logging.getLogger(__name__)

OUTBOUND_CURSOR = "outbound:ticket_updated_at"


class WorkspaceNotFoundError(LookupError):
    pass


@dataclass(frozen=True)
class OutboundResult:
    updated: int
    skipped: int
    failed: int
    new_cursor: Optional[str]
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def translate(value: Optional[str], vocabulary: Mapping[str, Any], fallback: Any) -> Any:
    if value is None:
        return fallback
    return vocabulary.get(value, fallback)


def _tags_by_ticket(db: Session, ticket_ids: list[str]) -> dict[str, list[str]]:
    if not ticket_ids:
        return {}
    rows = db.execute(
        select(TicketTag.ticket_id, Tag.name)
        .join(Tag, Tag.id == TicketTag.tag_id)
        .where(TicketTag.ticket_id.in_(ticket_ids))
        .order_by(Tag.name)
    ).all()
    tags: dict[str, list[str]] = {}
    for ticket_id, name in rows:
        tags.setdefault(ticket_id, []).append(name)
    return tags


def push_outbound(
    db: Session,
    *,
    workspace_id: str,
    provider: str,
    client: OutboundClient,
) -> OutboundResult:
    """Push tickets changed since the watermark back to the origin system.

    Tickets go out in ascending ``updated_at`` order and the first failed
    update stops the batch, so the stored watermark only ever covers a pushed
    prefix and never moves backwards.
    """
    integration = integration_service.get_integration(db, workspace_id, provider)
    if integration is None:
        raise SyncConfigError(f"no {provider} integration for workspace {workspace_id}")

    prior_raw = integration_service.get_cursor(db, integration.id, OUTBOUND_CURSOR)
    prior = parse_datetime(prior_raw)

    stmt = select(Ticket).where(Ticket.workspace_id == workspace_id)
    if prior is not None:
        stmt = stmt.where(Ticket.updated_at > prior)
    tickets = db.execute(stmt.order_by(Ticket.updated_at.asc(), Ticket.id.asc())).scalars().all()

    ticket_ids = [ticket.id for ticket in tickets]
    external_ids = external_mapping_service.reverse_lookup(db, integration.id, "ticket", ticket_ids)
    assignees = external_mapping_service.reverse_lookup(
        db, integration.id, "user", [ticket.assignee_id for ticket in tickets if ticket.assignee_id]
    )
    tags = _tags_by_ticket(db, ticket_ids)

    run = sync_run_service.start_run(db, integration_id=integration.id, run_type="outbound")
    updated = skipped = failed = 0
    error: Optional[str] = None
    pushed: list[datetime] = []
    failed_at: Optional[datetime] = None

    for ticket in tickets:
        external_id = external_ids.get(ticket.id)
        if not external_id:
            skipped += 1
            continue
        update: dict[str, Any] = {
            "subject": ticket.subject,
            "status": translate(ticket.status, client.status_map, client.status_fallback),
            "priority": translate(ticket.priority, client.priority_map, client.priority_fallback),
            "tags": tags.get(ticket.id, []),
        }
        assignee = assignees.get(ticket.assignee_id) if ticket.assignee_id else None
        if assignee:
            update["assignee_id"] = assignee
        try:
            client.update_ticket(external_id, update)
        except Exception as exc:  # noqa: BLE001 - any origin failure stops the batch
            failed = 1
            error = str(exc)
            failed_at = as_utc(ticket.updated_at)
            logger.warning("outbound %s update for ticket %s failed: %s", provider, external_id, exc)
            break
        updated += 1
        pushed.append(as_utc(ticket.updated_at))

    # Tickets sharing the failed ticket's timestamp must stay above the watermark.
    candidates = [ts for ts in pushed if failed_at is None or ts < failed_at]
    new_cursor = max(candidates, default=None)
    if prior is not None and (new_cursor is None or new_cursor < prior):
        new_cursor = prior
    if new_cursor is not None and new_cursor != prior:
        integration_service.set_cursor(db, integration.id, OUTBOUND_CURSOR, new_cursor.isoformat())

    result = OutboundResult(
        updated=updated,
        skipped=skipped,
        failed=failed,
        new_cursor=new_cursor.isoformat() if new_cursor else None,
        error=error,
    )
    sync_run_service.finish_run(
        db,
        run,
        status="error" if failed else "success",
        counts={"updated": updated, "skipped": skipped, "failed": failed},
        error=error,
    )
    db.commit()
    logger.info(
        "outbound %s push for workspace %s: updated=%s skipped=%s failed=%s",
        provider,
        workspace_id,
        updated,
        skipped,
        failed,
    )
    return result


def push_outbound_for(db: Session, *, tenant: str, workspace: str, provider: str) -> OutboundResult:
    connector = get_connector(provider)
    workspace_row = integration_service.find_workspace(db, tenant, workspace)
    if workspace_row is None:
        raise WorkspaceNotFoundError(f"workspace not found: {tenant}/{workspace}")
    auth = resolve_credentials(connector)
    client = connector.outbound_client(auth)
    if client is None:
        raise SyncConfigError(f"{connector.name} connector does not support outbound push")
    return push_outbound(db, workspace_id=workspace_row.id, provider=connector.name, client=client)
