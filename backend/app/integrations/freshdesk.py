from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from backend.app.domain.contracts import STAGED_FILES
from backend.app.integrations.base import ConnectorExportError, ExportManifest, OutboundPushError
from backend.app.integrations.utils import _build_httpx_client, str_or_none, utcnow, write_jsonl


logger = logging.getLogger(__name__)

PAGE_SIZE = 100

# Freshdesk numeric codes -> canonical values
INBOUND_STATUS = {2: "open", 3: "pending", 4: "solved", 5: "closed"}
INBOUND_PRIORITY = {1: "low", 2: "normal", 3: "high", 4: "urgent"}

OUTBOUND_STATUS = {"open": 2, "pending": 3, "on_hold": 3, "solved": 4, "closed": 5}
OUTBOUND_PRIORITY = {"low": 1, "normal": 2, "high": 3, "urgent": 4}


def freshdesk_base_url(domain: str) -> str:
    domain = domain.strip().rstrip("/")
    if domain.startswith("http://") or domain.startswith("https://"):
        return domain
    if "." not in domain:
        domain = f"{domain}.freshdesk.com"
    return f"https://{domain}"


class FreshdeskClient:
    def __init__(self, *, domain: str, api_key: str, client: Optional[Any] = None):
        self.base_url = freshdesk_base_url(domain)
        self._client = client or _build_httpx_client(self.base_url, auth=(api_key, "X"))

    @classmethod
    def from_auth(cls, auth: dict[str, str]) -> "FreshdeskClient":
        return cls(domain=auth["domain"], api_key=auth["api_key"])

    def get(self, path: str, params: Optional[dict] = None) -> Any:
        import httpx

        try:
            response = self._client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ConnectorExportError(f"freshdesk GET {path} failed: {exc}") from exc
        return response.json()

    def put(self, path: str, payload: dict) -> None:
        import httpx

        try:
            response = self._client.put(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise OutboundPushError(f"freshdesk PUT {path} failed: {exc}") from exc

    def paged(self, path: str, params: Optional[dict] = None) -> list[dict]:
        items: list[dict] = []
        page = 1
        while True:
            batch = self.get(path, {**(params or {}), "page": page, "per_page": PAGE_SIZE}) or []
            items.extend(batch)
            if len(batch) < PAGE_SIZE:
                return items
            page += 1


def _ticket_record(ticket: dict) -> dict:
    return {
        "id": f"fd-{ticket['id']}",
        "externalId": str(ticket["id"]),
        "source": "freshdesk",
        "subject": ticket.get("subject") or "",
        "status": INBOUND_STATUS.get(ticket.get("status"), "open"),
        "priority": INBOUND_PRIORITY.get(ticket.get("priority"), "normal"),
        "requester": str_or_none(ticket.get("requester_id")),
        "assignee": str_or_none(ticket.get("responder_id")),
        "groupId": str_or_none(ticket.get("group_id")),
        "tags": list(ticket.get("tags") or []),
        "createdAt": ticket.get("created_at"),
        "updatedAt": ticket.get("updated_at") or ticket.get("created_at"),
        "customFields": ticket.get("custom_fields") or None,
    }


def _conversation_record(ticket_id: Any, entry: dict) -> dict:
    return {
        "id": f"fd-msg-{entry['id']}",
        "externalId": str(entry["id"]),
        "ticketId": f"fd-{ticket_id}",
        "author": str_or_none(entry.get("user_id")),
        "body": entry.get("body_text") or "",
        "bodyHtml": entry.get("body"),
        "type": "note" if entry.get("private") else "reply",
        "createdAt": entry.get("created_at"),
        "attachments": [
            {
                "externalId": str(attachment["id"]),
                "filename": attachment.get("name") or "attachment",
                "size": attachment.get("size") or 0,
                "contentType": attachment.get("content_type"),
                "contentUrl": attachment.get("attachment_url"),
            }
            for attachment in entry.get("attachments") or []
        ],
    }


def _contact_record(contact: dict) -> dict:
    return {
        "externalId": str(contact["id"]),
        "name": contact.get("name") or "",
        "email": contact.get("email"),
        "phone": contact.get("phone") or contact.get("mobile"),
        "orgId": str_or_none(contact.get("company_id")),
    }


def _agent_record(agent: dict) -> dict:
    contact = agent.get("contact") or {}
    return {
        "externalId": str(agent["id"]),
        "name": contact.get("name") or "",
        "email": contact.get("email"),
        "phone": contact.get("phone") or contact.get("mobile"),
        "role": "agent",
    }


class FreshdeskOutboundClient:
    provider = "freshdesk"
    status_map = OUTBOUND_STATUS
    status_fallback = 2
    priority_map = OUTBOUND_PRIORITY
    priority_fallback = 2

    def __init__(self, client: FreshdeskClient):
        self.client = client

    def update_ticket(self, external_id: str, update: dict[str, Any]) -> None:
        payload: dict[str, Any] = {
            "status": update["status"],
            "priority": update["priority"],
            "tags": update.get("tags") or [],
        }
        if update.get("subject"):
            payload["subject"] = update["subject"]
        assignee = update.get("assignee_id")
        if assignee is not None and str(assignee).isdigit():
            payload["responder_id"] = int(assignee)
        self.client.put(f"/api/v2/tickets/{external_id}", payload)


class FreshdeskConnector:
    name = "freshdesk"
    env_vars = {
        "domain": "FRESHDESK_DOMAIN",
        "api_key": "FRESHDESK_API_KEY",
    }
    incremental = False

    def export(
        self,
        auth: dict[str, str],
        out_dir: Path,
        cursor_state: Optional[dict[str, str]],
    ) -> ExportManifest:
        _ = cursor_state
        client = FreshdeskClient.from_auth(auth)

        # The list endpoint only returns the last 30 days unless updated_since is set.
        tickets = client.paged("/api/v2/tickets", {"updated_since": "1970-01-01T00:00:00Z"})
        contacts = client.paged("/api/v2/contacts")
        agents = client.paged("/api/v2/agents")
        companies = client.paged("/api/v2/companies")
        groups = client.paged("/api/v2/groups")

        messages: list[dict] = []
        for ticket in tickets:
            entries = client.paged(f"/api/v2/tickets/{ticket['id']}/conversations")
            messages.extend(_conversation_record(ticket["id"], entry) for entry in entries)

        files = {
            "tickets": [_ticket_record(ticket) for ticket in tickets],
            "messages": messages,
            "customers": [_contact_record(contact) for contact in contacts]
            + [_agent_record(agent) for agent in agents],
            "organizations": [
                {
                    "externalId": str(company["id"]),
                    "name": company.get("name") or str(company["id"]),
                    "domains": list(company.get("domains") or []),
                }
                for company in companies
            ],
            "groups": [{"externalId": str(group["id"]), "name": group.get("name") or str(group["id"])} for group in groups],
        }
        written = {entity: write_jsonl(out_dir / STAGED_FILES[entity][0], rows) for entity, rows in files.items()}
        logger.info("freshdesk export wrote %s to %s", written, out_dir)

        return ExportManifest(
            exported_at=utcnow(),
            counts={
                "tickets": written["tickets"],
                "messages": written["messages"],
                "customers": written["customers"],
                "organizations": written["organizations"],
                "kbArticles": 0,
                "rules": 0,
            },
        )

    def outbound_client(self, auth: dict[str, str]) -> FreshdeskOutboundClient:
        return FreshdeskOutboundClient(FreshdeskClient.from_auth(auth))
