from __future__ import annotations

import os
from pathlib import Path
import sys

import pytest
from sqlalchemy import func, select

sys.path.append(str(Path(__file__).resolve().parents[2]))
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_ingest_service.db")

from backend.app.domain.contracts import IngestBatch
from backend.app.models import (
    Attachment,
    AuditEvent,
    Conversation,
    CsatRating,
    Customer,
    ExternalObject,
    Integration,
    Message,
    RawRecord,
    SyncRun,
    Tag,
    Ticket,
    TicketTag,
    TimeEntry,
    User,
)
from backend.app.services import ingest_service


def _count(db, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _ticket(external_id: str, **extra):
    payload = {
        "externalId": external_id,
        "subject": f"Ticket {external_id}",
        "status": "open",
        "priority": "normal",
        "tags": [],
        "createdAt": "2024-01-01T10:00:00Z",
        "updatedAt": "2024-01-02T10:00:00Z",
    }
    payload.update(extra)
    return payload


def _message(message_id: str, ticket_id: str, **extra):
    payload = {
        "id": message_id,
        "ticketId": ticket_id,
        "body": f"body {message_id}",
        "type": "reply",
        "createdAt": "2024-01-01T11:00:00Z",
    }
    payload.update(extra)
    return payload


def _ingest(db, payloads, *, provider="zendesk"):
    stats = ingest_service.ingest_batch(
        db,
        tenant="acme",
        workspace="support",
        provider=provider,
        batch=IngestBatch.from_payloads(payloads),
    )
    db.commit()
    return stats


def _mapping(db, object_type: str, external_id: str) -> ExternalObject:
    return db.execute(
        select(ExternalObject).where(
            ExternalObject.object_type == object_type,
            ExternalObject.external_id == external_id,
        )
    ).scalar_one()


def test_customer_and_ticket_pass_is_idempotent(sqlite_session):
    payloads = {
        "customers": [{"externalId": "cust-1", "name": "Ada", "email": "ada@example.com"}],
        "tickets": [_ticket("tk-1", requester="cust-1")],
    }

    first = _ingest(sqlite_session, payloads)
    assert first.get("customer").created == 1
    assert first.get("ticket").created == 1

    ticket = sqlite_session.execute(select(Ticket)).scalar_one()
    customer = sqlite_session.execute(select(Customer)).scalar_one()
    conversation = sqlite_session.execute(select(Conversation)).scalar_one()
    assert ticket.requester_id == customer.id
    assert conversation.ticket_id == ticket.id
    assert conversation.channel_type == "email"

    customer_seen = _mapping(sqlite_session, "customer", "cust-1").last_seen_at
    ticket_seen = _mapping(sqlite_session, "ticket", "tk-1").last_seen_at

    second = _ingest(sqlite_session, payloads)
    assert second.get("customer").updated == 1
    assert second.get("ticket").updated == 1
    assert second.get("ticket").created == 0

    sqlite_session.expire_all()
    assert _count(sqlite_session, Customer) == 1
    assert _count(sqlite_session, Ticket) == 1
    assert _count(sqlite_session, Conversation) == 1
    assert _count(sqlite_session, ExternalObject) == 2
    assert _count(sqlite_session, RawRecord) == 2
    assert _mapping(sqlite_session, "customer", "cust-1").last_seen_at > customer_seen
    assert _mapping(sqlite_session, "ticket", "tk-1").last_seen_at > ticket_seen


def test_reingest_overwrites_fields_and_raw_payload(sqlite_session):
    _ingest(sqlite_session, {"tickets": [_ticket("tk-1", subject="Printer on fire")]})
    _ingest(sqlite_session, {"tickets": [_ticket("tk-1", subject="Printer fixed", status="solved")]})

    ticket = sqlite_session.execute(select(Ticket)).scalar_one()
    assert ticket.subject == "Printer fixed"
    assert ticket.status == "solved"
    raw = sqlite_session.execute(select(RawRecord).where(RawRecord.object_type == "ticket")).scalar_one()
    assert raw.payload["subject"] == "Printer fixed"


def test_tags_are_trimmed_deduplicated_and_joined_once(sqlite_session):
    payloads = {
        "tickets": [
            _ticket("tk-1", tags=[" billing ", "vip", "", "   ", "billing"]),
            _ticket("tk-2", tags=["vip"]),
        ]
    }
    stats = _ingest(sqlite_session, payloads)
    _ingest(sqlite_session, payloads)

    names = sorted(sqlite_session.execute(select(Tag.name)).scalars().all())
    assert names == ["billing", "vip"]
    assert _count(sqlite_session, TicketTag) == 3
    assert stats.get("tag").created == 2


def test_message_for_ticket_outside_batch_is_skipped(sqlite_session):
    stats = _ingest(
        sqlite_session,
        {
            "tickets": [_ticket("tk-1")],
            "messages": [_message("m-1", "tk-1"), _message("m-2", "tk-404")],
        },
    )

    assert stats.get("message").created == 1
    assert stats.get("message").skipped == 1
    assert _count(sqlite_session, Message) == 1
    assert _count(sqlite_session, Conversation) == 1


def test_message_skipped_when_ticket_only_known_from_earlier_pass(sqlite_session):
    _ingest(sqlite_session, {"tickets": [_ticket("tk-1")]})
    stats = _ingest(sqlite_session, {"messages": [_message("m-1", "tk-1")]})

    assert stats.get("message").skipped == 1
    assert _count(sqlite_session, Message) == 0


def test_children_resolve_parent_by_staging_id(sqlite_session):
    stats = _ingest(
        sqlite_session,
        {
            "tickets": [_ticket("123", id="zd-123")],
            "messages": [_message("zd-msg-1", "zd-123")],
            "csat_ratings": [
                {"externalId": "cs-1", "ticketId": "zd-123", "rating": 5, "createdAt": "2024-01-03T00:00:00Z"}
            ],
        },
    )

    assert stats.get("message").created == 1
    assert stats.get("csat_rating").created == 1
    ticket = sqlite_session.execute(select(Ticket)).scalar_one()
    assert _mapping(sqlite_session, "ticket", "123").internal_id == ticket.id


def test_staff_become_users_and_authors_are_classified(sqlite_session):
    payloads = {
        "customers": [
            {"externalId": "agent-1", "name": "Grace", "email": "grace@example.com"},
            {"externalId": "cust-1", "name": "Ada"},
        ],
        "tickets": [_ticket("tk-1", requester="cust-1", assignee="agent-1")],
        "messages": [
            _message("m-1", "tk-1", author="cust-1"),
            _message("m-2", "tk-1", author="agent-1", type="note"),
            _message("m-3", "tk-1", author="ghost"),
        ],
    }
    _ingest(sqlite_session, payloads)

    user = sqlite_session.execute(select(User)).scalar_one()
    assert user.name == "Grace"
    ticket = sqlite_session.execute(select(Ticket)).scalar_one()
    assert ticket.assignee_id == user.id

    messages = {
        row.body: row for row in sqlite_session.execute(select(Message)).scalars().all()
    }
    assert messages["body m-1"].author_type == "customer"
    assert messages["body m-1"].visibility == "public"
    assert messages["body m-2"].author_type == "user"
    assert messages["body m-2"].author_id == user.id
    assert messages["body m-2"].visibility == "internal"
    assert messages["body m-3"].author_type == "system"
    assert messages["body m-3"].author_id is None


def test_nested_attachments_are_upserted(sqlite_session):
    payloads = {
        "tickets": [_ticket("tk-1")],
        "messages": [
            _message(
                "m-1",
                "tk-1",
                attachments=[{"externalId": "att-1", "filename": "log.txt", "size": 42, "contentType": "text/plain"}],
            )
        ],
    }
    _ingest(sqlite_session, payloads)
    _ingest(sqlite_session, payloads)

    attachment = sqlite_session.execute(select(Attachment)).scalar_one()
    message = sqlite_session.execute(select(Message)).scalar_one()
    assert attachment.message_id == message.id
    assert attachment.size == 42


def test_ticket_satellites_need_ticket_in_batch(sqlite_session):
    stats = _ingest(
        sqlite_session,
        {
            "customers": [{"externalId": "agent-1", "name": "Grace", "role": "agent"}],
            "tickets": [_ticket("tk-1")],
            "audit_events": [
                {"externalId": "ev-1", "ticketId": "tk-1", "authorId": "agent-1", "eventType": "status_change",
                 "createdAt": "2024-01-02T00:00:00Z"},
                {"externalId": "ev-2", "ticketId": "tk-9", "eventType": "status_change",
                 "createdAt": "2024-01-02T00:00:00Z"},
            ],
            "time_entries": [
                {"externalId": "te-1", "ticketId": "tk-1", "agentId": "agent-1", "minutes": 15,
                 "createdAt": "2024-01-02T00:00:00Z"},
            ],
            "csat_ratings": [
                {"externalId": "cs-1", "ticketId": "tk-9", "rating": 4, "createdAt": "2024-01-02T00:00:00Z"},
            ],
        },
    )

    assert stats.get("audit_event").created == 1
    assert stats.get("audit_event").skipped == 1
    assert stats.get("csat_rating").skipped == 1
    assert _count(sqlite_session, CsatRating) == 0

    event = sqlite_session.execute(select(AuditEvent)).scalar_one()
    user = sqlite_session.execute(select(User)).scalar_one()
    assert event.actor_type == "user"
    assert event.actor_id == user.id
    entry = sqlite_session.execute(select(TimeEntry)).scalar_one()
    assert entry.user_id == user.id
    assert entry.minutes == 15


def test_failing_record_rolls_back_only_itself(sqlite_session, monkeypatch):
    original = ingest_service._ensure_conversation

    def flaky(ctx, ticket, record):
        if record.external_id == "tk-bad":
            raise ValueError("boom")
        return original(ctx, ticket, record)

    monkeypatch.setattr(ingest_service, "_ensure_conversation", flaky)

    stats = _ingest(
        sqlite_session,
        {
            "tickets": [_ticket("tk-good"), _ticket("tk-bad"), _ticket("tk-after")],
            "messages": [_message("m-1", "tk-bad")],
        },
    )

    assert stats.get("ticket").created == 2
    assert stats.get("ticket").skipped == 1
    assert stats.get("message").skipped == 1
    assert _count(sqlite_session, Ticket) == 2
    assert _count(sqlite_session, Conversation) == 2
    mapped = sqlite_session.execute(
        select(ExternalObject.external_id).where(ExternalObject.object_type == "ticket")
    ).scalars().all()
    assert sorted(mapped) == ["tk-after", "tk-good"]


def test_unstorable_value_skips_record_and_keeps_siblings(sqlite_session):
    stats = _ingest(
        sqlite_session,
        {
            "tickets": [_ticket("tk-1"), _ticket("tk-2")],
            "messages": [
                _message(
                    "m-1",
                    "tk-1",
                    attachments=[{"externalId": "att-huge", "filename": "big.bin", "size": 2**70}],
                ),
                _message("m-2", "tk-2"),
            ],
        },
    )

    assert stats.get("ticket").created == 2
    assert stats.get("message").created == 2
    assert stats.get("attachment").skipped == 1
    assert _count(sqlite_session, Message) == 2
    assert _count(sqlite_session, Attachment) == 0
    run = sqlite_session.execute(select(SyncRun)).scalar_one()
    assert run.status == "success"


def test_ingest_records_run_and_activates_integration(sqlite_session):
    stats = _ingest(sqlite_session, {"kb_articles": [{"externalId": "kb-1", "title": "Reset password"}]})

    integration = sqlite_session.execute(select(Integration)).scalar_one()
    assert integration.status == "active"
    assert integration.last_sync_at is not None
    run = sqlite_session.execute(select(SyncRun)).scalar_one()
    assert run.run_type == "ingest"
    assert run.status == "success"
    assert run.counts["counts"]["kb_article"]["created"] == 1
    assert stats.integration_id == integration.id


def test_rules_map_title_and_active(sqlite_session):
    from backend.app.models import Rule

    _ingest(
        sqlite_session,
        {
            "rules": [
                {"externalId": "r-1", "type": "macro", "title": "Close politely", "active": False,
                 "conditions": {"all": []}, "actions": [{"field": "status", "value": "solved"}]},
            ]
        },
    )
    rule = sqlite_session.execute(select(Rule)).scalar_one()
    assert rule.name == "Close politely"
    assert rule.enabled is False
    assert rule.source == "zendesk"


def test_disabled_integration_refuses_ingest(sqlite_session):
    from backend.app.integrations.base import IntegrationDisabledError

    _ingest(sqlite_session, {"tickets": [_ticket("tk-1")]})
    integration = sqlite_session.execute(select(Integration)).scalar_one()
    integration.status = "disabled"
    sqlite_session.commit()

    with pytest.raises(IntegrationDisabledError):
        _ingest(sqlite_session, {"tickets": [_ticket("tk-2")]})


def test_ingest_export_dir_counts_discarded_lines(sqlite_session, tmp_path, write_staged):
    write_staged(
        tmp_path,
        "tickets.jsonl",
        [_ticket("tk-1"), "{not json", {"subject": "missing ids"}],
    )
    write_staged(tmp_path, "messages.jsonl", [_message("m-1", "tk-1")])

    stats = ingest_service.ingest_export_dir(
        sqlite_session, tenant="acme", workspace="support", provider="local", directory=tmp_path
    )
    sqlite_session.commit()

    assert stats.discarded == {"tickets": 2}
    assert stats.get("ticket").created == 1
    assert stats.get("message").created == 1


def test_webhook_event_kept_as_raw_record(sqlite_session):
    first = ingest_service.record_webhook_event(
        sqlite_session, tenant="acme", workspace="support", provider="zendesk",
        payload={"id": "evt-1", "type": "ticket.updated"}, external_id="evt-1",
    )
    again = ingest_service.record_webhook_event(
        sqlite_session, tenant="acme", workspace="support", provider="zendesk",
        payload={"id": "evt-1", "type": "ticket.updated", "retry": True}, external_id="evt-1",
    )
    sqlite_session.commit()

    assert first is True
    assert again is False
    raw = sqlite_session.execute(select(RawRecord)).scalar_one()
    assert raw.object_type == "webhook_event"
    assert raw.payload["retry"] is True
