"""Canonical ingestion of a staged batch.

Entities are applied in a fixed dependency order so that every child can
resolve its parent's internal id from the maps built earlier in the same pass.
Each record is written inside its own savepoint: a failure rolls back that
record only and is counted as skipped.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.app.domain.contracts import (
    AuditEventRecord,
    CsatRatingRecord,
    CustomerRecord,
    IngestBatch,
    MessageRecord,
    TicketRecord,
    TimeEntryRecord,
)
from backend.app.integrations.base import IntegrationDisabledError
from backend.app.integrations.utils import utcnow
from backend.app.models import (
    Attachment,
    AuditEvent,
    Brand,
    Conversation,
    CsatRating,
    Customer,
    CustomField,
    Group,
    Integration,
    KbArticle,
    Message,
    Organization,
    Rule,
    SlaPolicy,
    Tag,
    Tenant,
    Ticket,
    TicketForm,
    TicketTag,
    TimeEntry,
    User,
    View,
    Workspace,
)
from backend.app.services import (
    external_mapping_service,
    integration_service,
    raw_record_service,
    staging_service,
    sync_run_service,
)


logger = logging.getLogger(__name__)

INGEST_ORDER = (
    "groups",
    "organizations",
    "customers",
    "brands",
    "ticket_forms",
    "custom_fields",
    "views",
    "sla_policies",
    "tickets",
    "audit_events",
    "csat_ratings",
    "time_entries",
    "messages",
    "kb_articles",
    "rules",
)

STAFF_ROLES = {"agent", "admin"}


@dataclass
class TypeCounts:
    created: int = 0
    updated: int = 0
    skipped: int = 0


@dataclass
class IngestStats:
    workspace_id: Optional[str] = None
    integration_id: Optional[str] = None
    counts: dict[str, TypeCounts] = field(default_factory=dict)
    discarded: dict[str, int] = field(default_factory=dict)

    def bump(self, object_type: str, outcome: str) -> None:
        entry = self.counts.setdefault(object_type, TypeCounts())
        setattr(entry, outcome, getattr(entry, outcome) + 1)

    def get(self, object_type: str) -> TypeCounts:
        return self.counts.get(object_type, TypeCounts())

    def as_dict(self) -> dict[str, Any]:
        return {
            "counts": {key: asdict(value) for key, value in sorted(self.counts.items())},
            "discarded": dict(self.discarded),
        }


@dataclass
class IngestContext:
    db: Session
    tenant: Tenant
    workspace: Workspace
    integration: Integration
    provider: str
    stats: IngestStats
    staff_external_ids: set[str] = field(default_factory=set)
    group_ids: dict[str, str] = field(default_factory=dict)
    organization_ids: dict[str, str] = field(default_factory=dict)
    customer_ids: dict[str, str] = field(default_factory=dict)
    user_ids: dict[str, str] = field(default_factory=dict)
    brand_ids: dict[str, str] = field(default_factory=dict)
    ticket_form_ids: dict[str, str] = field(default_factory=dict)
    # keyed by every reference a child may use (staging id and external id)
    ticket_ids: dict[str, str] = field(default_factory=dict)
    conversation_ids: dict[str, str] = field(default_factory=dict)
    tag_ids: dict[str, str] = field(default_factory=dict)

    def ref_map(self, object_type: str) -> dict[str, str]:
        return getattr(self, f"{object_type}_ids")

    def resolve(self, object_type: str, external_id: Optional[str]) -> Optional[str]:
        """Optional references fall back to mappings from earlier passes."""
        if not external_id:
            return None
        refs = self.ref_map(object_type)
        if external_id in refs:
            return refs[external_id]
        internal_id = external_mapping_service.lookup(self.db, self.integration.id, object_type, external_id)
        if internal_id:
            refs[external_id] = internal_id
        return internal_id

    def classify_author(self, external_id: Optional[str]) -> tuple[str, Optional[str]]:
        user_id = self.resolve("user", external_id)
        if user_id:
            return "user", user_id
        customer_id = self.resolve("customer", external_id)
        if customer_id:
            return "customer", customer_id
        return "system", None


SKIPPED = object()
ORPHAN = object()


# -------------------------
# Record plumbing
# -------------------------


def _isolated(ctx: IngestContext, object_type: str, external_id: str, fn: Callable[[], Any]) -> Any:
    try:
        with ctx.db.begin_nested():
            result = fn()
            ctx.db.flush()
    except Exception as exc:  # noqa: BLE001 - a failing record is skipped, its siblings continue
        ctx.stats.bump(object_type, "skipped")
        logger.warning("skipped %s %s: %s", object_type, external_id, exc)
        return SKIPPED
    return result


def _upsert(
    ctx: IngestContext,
    object_type: str,
    external_id: str,
    payload: dict,
    model: type,
    values: dict[str, Any],
) -> tuple[Any, bool]:
    db = ctx.db
    integration_id = ctx.integration.id
    raw_record_service.upsert_raw_record(
        db,
        integration_id=integration_id,
        object_type=object_type,
        external_id=external_id,
        payload=payload,
    )
    internal_id = external_mapping_service.lookup(db, integration_id, object_type, external_id)
    row = db.get(model, internal_id) if internal_id else None
    created = row is None
    if created:
        row = model(**values)
        db.add(row)
        db.flush()
    else:
        for key, value in values.items():
            setattr(row, key, value)
    external_mapping_service.upsert(
        db,
        integration_id,
        object_type,
        external_id,
        row.id,
        checksum=external_mapping_service.payload_checksum(payload),
    )
    return row, created


def _simple_step(
    ctx: IngestContext,
    object_type: str,
    records: Iterable[Any],
    model: type,
    to_values: Callable[[Any], dict[str, Any]],
    remember: bool = False,
) -> None:
    for record in records:
        outcome = _isolated(
            ctx,
            object_type,
            record.external_id,
            lambda record=record: _upsert(
                ctx, object_type, record.external_id, record.raw_payload, model, to_values(record)
            ),
        )
        if outcome is SKIPPED:
            continue
        row, created = outcome
        ctx.stats.bump(object_type, "created" if created else "updated")
        if remember:
            ctx.ref_map(object_type)[record.external_id] = row.id


def _staff_external_ids(batch: IngestBatch) -> set[str]:
    staff = {ticket.assignee for ticket in batch.tickets if ticket.assignee}
    staff |= {message.author for message in batch.messages if message.type == "note" and message.author}
    staff |= {entry.agent_id for entry in batch.time_entries if entry.agent_id}
    staff |= {
        customer.external_id
        for customer in batch.customers
        if (customer.role or "").lower() in STAFF_ROLES
    }
    return staff


def _load_tags(db: Session, workspace_id: str) -> dict[str, str]:
    rows = db.execute(select(Tag.name, Tag.id).where(Tag.workspace_id == workspace_id)).all()
    return {name: tag_id for name, tag_id in rows}


# -------------------------
# Steps
# -------------------------


def _ingest_groups(ctx: IngestContext, records) -> None:
    now = utcnow()
    _simple_step(
        ctx,
        "group",
        records,
        Group,
        lambda r: {"workspace_id": ctx.workspace.id, "name": r.name, "updated_at": now},
        remember=True,
    )


def _ingest_organizations(ctx: IngestContext, records) -> None:
    now = utcnow()
    _simple_step(
        ctx,
        "organization",
        records,
        Organization,
        lambda r: {"workspace_id": ctx.workspace.id, "name": r.name, "domains": list(r.domains), "updated_at": now},
        remember=True,
    )


def _ingest_customers(ctx: IngestContext, records: Iterable[CustomerRecord]) -> None:
    now = utcnow()

    def apply(record: CustomerRecord):
        payload = record.raw_payload
        customer, created = _upsert(
            ctx,
            "customer",
            record.external_id,
            payload,
            Customer,
            {
                "workspace_id": ctx.workspace.id,
                "org_id": ctx.resolve("organization", record.org_id),
                "external_ref": record.external_id,
                "name": record.name,
                "email": record.email,
                "phone": record.phone,
                "updated_at": now,
            },
        )
        user = None
        user_created = False
        if record.external_id in ctx.staff_external_ids:
            role = (record.role or "agent").lower()
            user, user_created = _upsert(
                ctx,
                "user",
                record.external_id,
                payload,
                User,
                {
                    "workspace_id": ctx.workspace.id,
                    "name": record.name,
                    "email": record.email,
                    "role": role if role in STAFF_ROLES else "agent",
                    "updated_at": now,
                },
            )
        return customer, created, user, user_created

    for record in records:
        outcome = _isolated(ctx, "customer", record.external_id, lambda record=record: apply(record))
        if outcome is SKIPPED:
            continue
        customer, created, user, user_created = outcome
        ctx.stats.bump("customer", "created" if created else "updated")
        ctx.customer_ids[record.external_id] = customer.id
        if user is not None:
            ctx.stats.bump("user", "created" if user_created else "updated")
            ctx.user_ids[record.external_id] = user.id


def _ingest_brands(ctx: IngestContext, records) -> None:
    now = utcnow()
    _simple_step(
        ctx,
        "brand",
        records,
        Brand,
        lambda r: {"workspace_id": ctx.workspace.id, "name": r.name, "raw": r.raw, "updated_at": now},
        remember=True,
    )


def _ingest_ticket_forms(ctx: IngestContext, records) -> None:
    now = utcnow()
    _simple_step(
        ctx,
        "ticket_form",
        records,
        TicketForm,
        lambda r: {
            "workspace_id": ctx.workspace.id,
            "name": r.name,
            "active": r.active,
            "position": r.position,
            "field_ids": list(r.field_ids),
            "raw": r.raw,
            "updated_at": now,
        },
        remember=True,
    )


def _ingest_custom_fields(ctx: IngestContext, records) -> None:
    _simple_step(
        ctx,
        "custom_field",
        records,
        CustomField,
        lambda r: {
            "workspace_id": ctx.workspace.id,
            "object_type": r.object_type,
            "name": r.name,
            "field_type": r.field_type,
            "options": r.options,
            "required": r.required,
        },
    )


def _ingest_views(ctx: IngestContext, records) -> None:
    _simple_step(
        ctx,
        "view",
        records,
        View,
        lambda r: {"workspace_id": ctx.workspace.id, "name": r.name, "query": r.query or {}, "active": r.active},
    )


def _ingest_sla_policies(ctx: IngestContext, records) -> None:
    _simple_step(
        ctx,
        "sla_policy",
        records,
        SlaPolicy,
        lambda r: {
            "workspace_id": ctx.workspace.id,
            "name": r.name,
            "enabled": r.enabled,
            "targets": r.targets,
            "schedules": r.schedules,
        },
    )


def _ensure_conversation(ctx: IngestContext, ticket: Ticket, record: TicketRecord) -> tuple[Conversation, bool]:
    conversation = ctx.db.execute(
        select(Conversation).where(Conversation.ticket_id == ticket.id)
    ).scalar_one_or_none()
    if conversation:
        conversation.last_activity_at = record.updated_at
        return conversation, False
    conversation = Conversation(
        ticket_id=ticket.id,
        channel_type="email",
        started_at=record.created_at,
        last_activity_at=record.updated_at,
    )
    ctx.db.add(conversation)
    ctx.db.flush()
    return conversation, True


def _attach_tags(ctx: IngestContext, ticket: Ticket, names: Iterable[str]) -> dict[str, str]:
    """Join tags to the ticket, creating missing ones. Returns tags created here."""
    db = ctx.db
    new_tags: dict[str, str] = {}
    for name in sorted({name.strip() for name in names if name and name.strip()}):
        tag_id = ctx.tag_ids.get(name) or new_tags.get(name)
        if tag_id is None:
            tag = Tag(workspace_id=ctx.workspace.id, name=name)
            db.add(tag)
            db.flush()
            tag_id = new_tags[name] = tag.id
        if db.get(TicketTag, (ticket.id, tag_id)) is None:
            db.add(TicketTag(ticket_id=ticket.id, tag_id=tag_id))
    db.flush()
    return new_tags


def _ingest_tickets(ctx: IngestContext, records: Iterable[TicketRecord]) -> None:
    def apply(record: TicketRecord):
        ticket, created = _upsert(
            ctx,
            "ticket",
            record.external_id,
            record.raw_payload,
            Ticket,
            {
                "workspace_id": ctx.workspace.id,
                "requester_id": ctx.resolve("customer", record.requester),
                "assignee_id": ctx.resolve("user", record.assignee),
                "group_id": ctx.resolve("group", record.group_id),
                "brand_id": ctx.resolve("brand", record.brand_id),
                "ticket_form_id": ctx.resolve("ticket_form", record.ticket_form_id),
                "subject": record.subject,
                "status": record.status,
                "priority": record.priority,
                "source": record.source or ctx.provider,
                "custom_fields": record.custom_fields,
                "created_at": record.created_at,
                "updated_at": record.updated_at,
            },
        )
        conversation, conversation_created = _ensure_conversation(ctx, ticket, record)
        new_tags = _attach_tags(ctx, ticket, record.tags)
        return ticket, created, conversation, conversation_created, new_tags

    for record in records:
        outcome = _isolated(ctx, "ticket", record.external_id, lambda record=record: apply(record))
        if outcome is SKIPPED:
            continue
        ticket, created, conversation, conversation_created, new_tags = outcome
        ctx.stats.bump("ticket", "created" if created else "updated")
        ctx.stats.bump("conversation", "created" if conversation_created else "updated")
        for _ in new_tags:
            ctx.stats.bump("tag", "created")
        ctx.tag_ids.update(new_tags)
        for key in record.reference_keys:
            ctx.ticket_ids[key] = ticket.id
            ctx.conversation_ids[key] = conversation.id


def _skip_orphan(ctx: IngestContext, object_type: str, external_id: str, payload: dict, ticket_ref: str) -> object:
    raw_record_service.upsert_raw_record(
        ctx.db,
        integration_id=ctx.integration.id,
        object_type=object_type,
        external_id=external_id,
        payload=payload,
    )
    logger.debug("skipped %s %s: ticket %s not in this batch", object_type, external_id, ticket_ref)
    return ORPHAN


def _ticket_child_step(
    ctx: IngestContext,
    object_type: str,
    records: Iterable[Any],
    model: type,
    to_values: Callable[[Any, str], dict[str, Any]],
) -> None:
    for record in records:

        def apply(record=record):
            ticket_id = ctx.ticket_ids.get(record.ticket_id)
            if ticket_id is None:
                return _skip_orphan(ctx, object_type, record.external_id, record.raw_payload, record.ticket_id)
            return _upsert(ctx, object_type, record.external_id, record.raw_payload, model, to_values(record, ticket_id))

        outcome = _isolated(ctx, object_type, record.external_id, apply)
        if outcome is ORPHAN:
            ctx.stats.bump(object_type, "skipped")
            continue
        if outcome is SKIPPED:
            continue
        _, created = outcome
        ctx.stats.bump(object_type, "created" if created else "updated")


def _ingest_audit_events(ctx: IngestContext, records: Iterable[AuditEventRecord]) -> None:
    def to_values(record: AuditEventRecord, ticket_id: str) -> dict[str, Any]:
        actor_type, actor_id = ctx.classify_author(record.author_id)
        return {
            "workspace_id": ctx.workspace.id,
            "actor_type": actor_type,
            "actor_id": actor_id,
            "action": record.event_type,
            "object_type": "ticket",
            "object_id": ticket_id,
            "diff": record.raw,
            "created_at": record.created_at,
        }

    _ticket_child_step(ctx, "audit_event", records, AuditEvent, to_values)


def _ingest_csat_ratings(ctx: IngestContext, records: Iterable[CsatRatingRecord]) -> None:
    _ticket_child_step(
        ctx,
        "csat_rating",
        records,
        CsatRating,
        lambda r, ticket_id: {
            "ticket_id": ticket_id,
            "rating": r.rating,
            "comment": r.comment,
            "created_at": r.created_at,
        },
    )


def _ingest_time_entries(ctx: IngestContext, records: Iterable[TimeEntryRecord]) -> None:
    _ticket_child_step(
        ctx,
        "time_entry",
        records,
        TimeEntry,
        lambda r, ticket_id: {
            "ticket_id": ticket_id,
            "user_id": ctx.resolve("user", r.agent_id),
            "minutes": r.minutes,
            "note": r.note,
            "created_at": r.created_at,
        },
    )


def _ingest_messages(ctx: IngestContext, records: Iterable[MessageRecord]) -> None:
    def apply(record: MessageRecord):
        conversation_id = ctx.conversation_ids.get(record.ticket_id)
        if conversation_id is None:
            return _skip_orphan(ctx, "message", record.key, record.raw_payload, record.ticket_id)
        author_type, author_id = ctx.classify_author(record.author)
        return _upsert(
            ctx,
            "message",
            record.key,
            record.raw_payload,
            Message,
            {
                "conversation_id": conversation_id,
                "author_type": author_type,
                "author_id": author_id,
                "body": record.body,
                "body_html": record.body_html,
                "visibility": "internal" if record.type == "note" else "public",
                "created_at": record.created_at,
            },
        )

    for record in records:
        outcome = _isolated(ctx, "message", record.key, lambda record=record: apply(record))
        if outcome is ORPHAN:
            ctx.stats.bump("message", "skipped")
            continue
        if outcome is SKIPPED:
            continue
        message, created = outcome
        ctx.stats.bump("message", "created" if created else "updated")
        _ingest_attachments(ctx, message, record)


def _ingest_attachments(ctx: IngestContext, message: Message, record: MessageRecord) -> None:
    for attachment in record.attachments:
        outcome = _isolated(
            ctx,
            "attachment",
            attachment.key,
            lambda attachment=attachment: _upsert(
                ctx,
                "attachment",
                attachment.key,
                attachment.raw_payload,
                Attachment,
                {
                    "message_id": message.id,
                    "filename": attachment.filename,
                    "size": attachment.size,
                    "content_type": attachment.content_type,
                    "storage_key": attachment.content_url,
                    "created_at": record.created_at,
                },
            ),
        )
        if outcome is SKIPPED:
            continue
        ctx.stats.bump("attachment", "created" if outcome[1] else "updated")


def _ingest_kb_articles(ctx: IngestContext, records) -> None:
    now = utcnow()
    _simple_step(
        ctx,
        "kb_article",
        records,
        KbArticle,
        lambda r: {
            "workspace_id": ctx.workspace.id,
            "title": r.title,
            "body": r.body,
            "category_path": list(r.category_path),
            "source": ctx.provider,
            "updated_at": now,
        },
    )


def _ingest_rules(ctx: IngestContext, records) -> None:
    now = utcnow()
    _simple_step(
        ctx,
        "rule",
        records,
        Rule,
        lambda r: {
            "workspace_id": ctx.workspace.id,
            "name": r.title,
            "type": r.type,
            "enabled": r.active,
            "conditions": r.conditions,
            "actions": r.actions,
            "source": ctx.provider,
            "updated_at": now,
        },
    )


_STEPS: dict[str, Callable[[IngestContext, Any], None]] = {
    "groups": _ingest_groups,
    "organizations": _ingest_organizations,
    "customers": _ingest_customers,
    "brands": _ingest_brands,
    "ticket_forms": _ingest_ticket_forms,
    "custom_fields": _ingest_custom_fields,
    "views": _ingest_views,
    "sla_policies": _ingest_sla_policies,
    "tickets": _ingest_tickets,
    "audit_events": _ingest_audit_events,
    "csat_ratings": _ingest_csat_ratings,
    "time_entries": _ingest_time_entries,
    "messages": _ingest_messages,
    "kb_articles": _ingest_kb_articles,
    "rules": _ingest_rules,
}


# -------------------------
# Entry points
# -------------------------


def resolve_context(db: Session, *, tenant: str, workspace: str, provider: str) -> tuple[Tenant, Workspace, Integration]:
    tenant_row = integration_service.get_or_create_tenant(db, tenant)
    workspace_row = integration_service.get_or_create_workspace(db, tenant_row, workspace)
    integration = integration_service.get_or_create_integration(db, workspace_row.id, provider)
    if integration.status == "disabled":
        raise IntegrationDisabledError(f"{provider} integration is disabled for workspace {workspace}")
    return tenant_row, workspace_row, integration


def ingest_batch(
    db: Session,
    *,
    tenant: str,
    workspace: str,
    provider: str,
    batch: IngestBatch,
) -> IngestStats:
    """Apply one batch to the canonical store. The caller commits."""
    tenant_row, workspace_row, integration = resolve_context(
        db, tenant=tenant, workspace=workspace, provider=provider
    )
    stats = IngestStats(workspace_id=workspace_row.id, integration_id=integration.id)
    stats.discarded.update(batch.discarded)
    ctx = IngestContext(
        db=db,
        tenant=tenant_row,
        workspace=workspace_row,
        integration=integration,
        provider=provider,
        stats=stats,
        staff_external_ids=_staff_external_ids(batch),
        tag_ids=_load_tags(db, workspace_row.id),
    )

    run = sync_run_service.start_run(db, integration_id=integration.id, run_type="ingest")
    for entity in INGEST_ORDER:
        _STEPS[entity](ctx, getattr(batch, entity))

    integration_service.mark_sync_success(integration)
    sync_run_service.finish_run(db, run, status="success", counts=stats.as_dict())
    db.flush()

    logger.info(
        "ingested %s batch into %s/%s: %s",
        provider,
        tenant,
        workspace,
        {key: asdict(value) for key, value in sorted(stats.counts.items())},
    )
    return stats


def ingest_export_dir(
    db: Session,
    *,
    tenant: str,
    workspace: str,
    provider: str,
    directory: Path,
) -> IngestStats:
    batch = staging_service.read_staged_batch(Path(directory))
    return ingest_batch(db, tenant=tenant, workspace=workspace, provider=provider, batch=batch)


def record_webhook_event(
    db: Session,
    *,
    tenant: str,
    workspace: str,
    provider: str,
    payload: dict,
    external_id: str,
) -> bool:
    """Keep an inbound webhook payload as a raw record. Returns True on first sight."""
    _, _, integration = resolve_context(db, tenant=tenant, workspace=workspace, provider=provider)
    return raw_record_service.upsert_raw_record(
        db,
        integration_id=integration.id,
        object_type="webhook_event",
        external_id=external_id,
        payload=payload,
    )
