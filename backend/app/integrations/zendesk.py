from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from backend.app.domain.contracts import STAGED_FILES
from backend.app.integrations.base import ConnectorExportError, ExportManifest, OutboundPushError
from backend.app.integrations.utils import _build_httpx_client, str_or_none, utcnow, write_jsonl


logger = logging.getLogger(__name__)

# Zendesk -> canonical ticket status
INBOUND_STATUS = {
    "new": "open",
    "open": "open",
    "pending": "pending",
    "hold": "on_hold",
    "solved": "solved",
    "closed": "closed",
}

OUTBOUND_STATUS = {
    "open": "open",
    "pending": "pending",
    "on_hold": "hold",
    "solved": "solved",
    "closed": "closed",
}

OUTBOUND_PRIORITY = {
    "low": "low",
    "normal": "normal",
    "high": "high",
    "urgent": "urgent",
}


def zendesk_base_url(subdomain: str) -> str:
    return f"https://{subdomain}.zendesk.com"


class ZendeskClient:
    def __init__(self, *, subdomain: str, email: str, token: str, client: Optional[Any] = None):
        self.base_url = zendesk_base_url(subdomain)
        self._client = client or _build_httpx_client(self.base_url, auth=(f"{email}/token", token))

    @classmethod
    def from_auth(cls, auth: dict[str, str]) -> "ZendeskClient":
        return cls(subdomain=auth["subdomain"], email=auth["email"], token=auth["token"])

    def get(self, path: str, params: Optional[dict] = None, *, retry_once: bool = True) -> dict:
        import httpx

        for attempt in range(2 if retry_once else 1):
            try:
                response = self._client.get(path, params=params)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPError as exc:
                if attempt == 0 and retry_once:
                    logger.warning("zendesk GET %s failed, retrying: %s", path, exc)
                    continue
                raise ConnectorExportError(f"zendesk GET {path} failed: {exc}") from exc
        raise ConnectorExportError(f"zendesk GET {path} failed")

    def put(self, path: str, payload: dict) -> dict:
        import httpx

        try:
            response = self._client.put(path, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise OutboundPushError(f"zendesk PUT {path} failed: {exc}") from exc
        return response.json() if response.content else {}

    def incremental_cursor(self, resource: str, cursor: Optional[str]) -> tuple[list[dict], Optional[str]]:
        """Walk a cursor-based incremental export until end_of_stream."""
        path = f"/api/v2/incremental/{resource}/cursor.json"
        params: dict[str, Any] = {"cursor": cursor} if cursor else {"start_time": 0}
        items: list[dict] = []
        next_cursor = cursor
        while True:
            data = self.get(path, params)
            items.extend(data.get(resource) or [])
            next_cursor = data.get("after_cursor") or next_cursor
            if data.get("end_of_stream") or not data.get("after_cursor"):
                break
            params = {"cursor": data["after_cursor"]}
        return items, next_cursor

    def incremental_time(self, resource: str, start_time: Optional[str]) -> tuple[list[dict], Optional[str]]:
        path = f"/api/v2/incremental/{resource}.json"
        params: dict[str, Any] = {"start_time": int(start_time) if start_time else 0}
        items: list[dict] = []
        end_time = start_time
        while True:
            data = self.get(path, params)
            items.extend(data.get(resource) or [])
            if data.get("end_time") is not None:
                end_time = str(data["end_time"])
            if data.get("end_of_stream") or data.get("end_time") is None:
                break
            params = {"start_time": data["end_time"]}
        return items, end_time

    def paged(self, path: str, key: str) -> list[dict]:
        """Follow offset (next_page) or cursor (links.next + meta.has_more) pagination."""
        items: list[dict] = []
        next_path: Optional[str] = path
        while next_path:
            data = self.get(next_path)
            items.extend(data.get(key) or [])
            next_path = data.get("next_page")
            if next_path is None and (data.get("meta") or {}).get("has_more"):
                next_path = (data.get("links") or {}).get("next")
        return items

    def optional_paged(self, path: str, key: str) -> list[dict]:
        # plan- or role-gated endpoints (help center, SLAs, time tracking) export nothing
        try:
            return self.paged(path, key)
        except ConnectorExportError as exc:
            logger.warning("zendesk %s not exported: %s", key, exc)
            return []

    def get_one(self, path: str, key: str) -> Optional[dict]:
        try:
            return self.get(path, retry_once=False).get(key)
        except ConnectorExportError as exc:
            logger.warning("zendesk %s lookup failed: %s", key, exc)
            return None


def _ticket_record(ticket: dict) -> dict:
    custom_fields = {
        str(field["id"]): field.get("value")
        for field in ticket.get("custom_fields") or []
        if field.get("value") is not None
    }
    return {
        "id": f"zd-{ticket['id']}",
        "externalId": str(ticket["id"]),
        "source": "zendesk",
        "subject": ticket.get("subject") or "",
        "status": INBOUND_STATUS.get(ticket.get("status") or "", "open"),
        "priority": ticket.get("priority") or "normal",
        "requester": str_or_none(ticket.get("requester_id")),
        "assignee": str_or_none(ticket.get("assignee_id")),
        "groupId": str_or_none(ticket.get("group_id")),
        "brandId": str_or_none(ticket.get("brand_id")),
        "ticketFormId": str_or_none(ticket.get("ticket_form_id")),
        "tags": list(ticket.get("tags") or []),
        "createdAt": ticket.get("created_at"),
        "updatedAt": ticket.get("updated_at") or ticket.get("created_at"),
        "customFields": custom_fields or None,
    }


def _comment_record(ticket_id: Any, comment: dict) -> dict:
    return {
        "id": f"zd-msg-{comment['id']}",
        "externalId": str(comment["id"]),
        "ticketId": f"zd-{ticket_id}",
        "author": str_or_none(comment.get("author_id")),
        "body": comment.get("plain_body") or comment.get("body") or "",
        "bodyHtml": comment.get("html_body"),
        "type": "reply" if comment.get("public", True) else "note",
        "createdAt": comment.get("created_at"),
        "attachments": [
            {
                "externalId": str(attachment["id"]),
                "filename": attachment.get("file_name") or "attachment",
                "size": attachment.get("size") or 0,
                "contentType": attachment.get("content_type"),
                "contentUrl": attachment.get("content_url"),
            }
            for attachment in comment.get("attachments") or []
        ],
    }


def _user_record(user: dict) -> dict:
    return {
        "externalId": str(user["id"]),
        "name": user.get("name") or "",
        "email": user.get("email"),
        "phone": user.get("phone"),
        "orgId": str_or_none(user.get("organization_id")),
        "role": user.get("role"),
    }


def _organization_record(org: dict) -> dict:
    return {
        "externalId": str(org["id"]),
        "name": org.get("name") or str(org["id"]),
        "domains": list(org.get("domain_names") or []),
    }


def _group_record(group: dict) -> dict:
    return {"externalId": str(group["id"]), "name": group.get("name") or str(group["id"])}


def _brand_record(brand: dict) -> dict:
    return {"externalId": str(brand["id"]), "name": brand.get("name") or str(brand["id"]), "raw": brand}


def _form_record(form: dict) -> dict:
    return {
        "externalId": str(form["id"]),
        "name": form.get("name") or str(form["id"]),
        "active": bool(form.get("active", True)),
        "position": form.get("position"),
        "fieldIds": list(form.get("ticket_field_ids") or []),
        "raw": form,
    }


def _field_record(ticket_field: dict) -> dict:
    options = ticket_field.get("custom_field_options")
    return {
        "externalId": str(ticket_field["id"]),
        "objectType": "ticket",
        "name": ticket_field.get("title") or str(ticket_field["id"]),
        "fieldType": ticket_field.get("type") or "text",
        "required": bool(ticket_field.get("required")),
        "options": [{"value": option.get("value"), "label": option.get("name")} for option in options]
        if options
        else None,
    }


def _view_record(view: dict) -> dict:
    query = view.get("conditions")
    if query is None:
        query = view.get("execution")
    return {
        "externalId": str(view["id"]),
        "name": view.get("title") or str(view["id"]),
        "query": query or {},
        "active": bool(view.get("active", True)),
    }


def _audit_record(audit: dict) -> dict:
    events = audit.get("events") or []
    return {
        "externalId": str(audit["id"]),
        "ticketId": f"zd-{audit['ticket_id']}",
        "authorId": str_or_none(audit.get("author_id")),
        "eventType": (events[0].get("type") if events else None) or "audit",
        "createdAt": audit.get("created_at"),
        "raw": audit,
    }


CSAT_SCORES = {"good": 1, "bad": -1}


def _csat_record(rating: dict) -> dict:
    return {
        "externalId": str(rating["id"]),
        "ticketId": f"zd-{rating['ticket_id']}",
        "rating": CSAT_SCORES.get(rating.get("score") or "", 0),
        "comment": rating.get("comment"),
        "createdAt": rating.get("created_at"),
    }


def _time_entry_record(entry: dict) -> dict:
    # time_spent is seconds
    return {
        "externalId": str(entry["id"]),
        "ticketId": f"zd-{entry['ticket_id']}",
        "agentId": str_or_none(entry.get("user_id")),
        "minutes": int((entry.get("time_spent") or 0) / 60 + 0.5),
        "createdAt": entry.get("created_at"),
    }


def _article_record(article: dict) -> dict:
    section = article.get("section_id")
    return {
        "externalId": str(article["id"]),
        "title": article.get("title") or "",
        "body": article.get("body") or "",
        "categoryPath": [str(section)] if section is not None else [],
    }


def _rule_record(rule_type: str, rule: dict, conditions_key: str, actions_key: str) -> dict:
    # macros, triggers, automations and SLAs have separate id spaces
    return {
        "externalId": f"{rule_type}-{rule['id']}",
        "type": rule_type,
        "title": rule.get("title") or str(rule["id"]),
        "conditions": rule.get(conditions_key),
        "actions": rule.get(actions_key),
        "active": bool(rule.get("active", True)),
    }


def _sla_policy_record(policy: dict) -> dict:
    return {
        "externalId": str(policy["id"]),
        "name": policy.get("title") or str(policy["id"]),
        "enabled": True,
        "targets": policy.get("policy_metrics"),
        "schedules": policy.get("filter"),
    }


class ZendeskOutboundClient:
    provider = "zendesk"
    status_map = OUTBOUND_STATUS
    status_fallback = "open"
    priority_map = OUTBOUND_PRIORITY
    priority_fallback = "normal"

    def __init__(self, client: ZendeskClient):
        self.client = client

    def update_ticket(self, external_id: str, update: dict[str, Any]) -> None:
        ticket: dict[str, Any] = {
            "subject": update.get("subject"),
            "status": update["status"],
            "priority": update["priority"],
            "tags": update.get("tags") or [],
        }
        assignee = update.get("assignee_id")
        if assignee is not None:
            ticket["assignee_id"] = int(assignee) if str(assignee).isdigit() else assignee
        self.client.put(f"/api/v2/tickets/{external_id}.json", {"ticket": ticket})


class ZendeskConnector:
    name = "zendesk"
    env_vars = {
        "subdomain": "ZENDESK_SUBDOMAIN",
        "email": "ZENDESK_EMAIL",
        "token": "ZENDESK_TOKEN",
    }
    incremental = True

    def export(
        self,
        auth: dict[str, str],
        out_dir: Path,
        cursor_state: Optional[dict[str, str]],
    ) -> ExportManifest:
        cursors = cursor_state or {}
        client = ZendeskClient.from_auth(auth)

        tickets, tickets_cursor = client.incremental_cursor("tickets", cursors.get("tickets"))
        users, users_cursor = client.incremental_cursor("users", cursors.get("users"))
        organizations, orgs_cursor = client.incremental_time("organizations", cursors.get("organizations"))

        live_tickets = [ticket for ticket in tickets if ticket.get("status") != "deleted"]
        messages: list[dict] = []
        for ticket in live_tickets:
            comments = client.paged(f"/api/v2/tickets/{ticket['id']}/comments.json", "comments")
            messages.extend(_comment_record(ticket["id"], comment) for comment in comments)

        sla_policies = client.optional_paged("/api/v2/slas/policies.json", "sla_policies")
        rules = [
            *(
                _rule_record("macro", macro, "restriction", "actions")
                for macro in client.optional_paged("/api/v2/macros.json", "macros")
            ),
            *(
                _rule_record("trigger", trigger, "conditions", "actions")
                for trigger in client.optional_paged("/api/v2/triggers.json", "triggers")
            ),
            *(
                _rule_record("automation", automation, "conditions", "actions")
                for automation in client.optional_paged("/api/v2/automations.json", "automations")
            ),
            *(_rule_record("sla", policy, "filter", "policy_metrics") for policy in sla_policies),
        ]

        files = {
            "tickets": [_ticket_record(ticket) for ticket in live_tickets],
            "messages": messages,
            "customers": [_user_record(user) for user in users if user.get("active", True)],
            "organizations": [_organization_record(org) for org in organizations],
            "groups": [
                _group_record(group)
                for group in client.paged("/api/v2/groups.json", "groups")
                if not group.get("deleted")
            ],
            "brands": [_brand_record(brand) for brand in client.paged("/api/v2/brands.json", "brands")],
            "ticket_forms": [_form_record(form) for form in client.paged("/api/v2/ticket_forms.json", "ticket_forms")],
            "custom_fields": [
                _field_record(ticket_field)
                for ticket_field in client.optional_paged("/api/v2/ticket_fields.json", "ticket_fields")
            ],
            "views": [_view_record(view) for view in client.optional_paged("/api/v2/views.json", "views")],
            "sla_policies": [_sla_policy_record(policy) for policy in sla_policies],
            "audit_events": [
                _audit_record(audit) for audit in client.optional_paged("/api/v2/ticket_audits.json", "audits")
            ],
            "csat_ratings": [
                _csat_record(rating)
                for rating in client.optional_paged("/api/v2/satisfaction_ratings.json", "satisfaction_ratings")
            ],
            "time_entries": [
                _time_entry_record(entry)
                for entry in client.optional_paged("/api/v2/time_entries.json", "time_entries")
            ],
            "kb_articles": [
                _article_record(article)
                for article in client.optional_paged("/api/v2/help_center/articles.json", "articles")
            ],
            "rules": rules,
        }
        written = {entity: write_jsonl(out_dir / STAGED_FILES[entity][0], rows) for entity, rows in files.items()}
        logger.info("zendesk export wrote %s to %s", written, out_dir)

        next_state = {
            key: value
            for key, value in (
                ("tickets", tickets_cursor),
                ("users", users_cursor),
                ("organizations", orgs_cursor),
            )
            if value
        }
        return ExportManifest(
            exported_at=utcnow(),
            counts={
                "tickets": written["tickets"],
                "messages": written["messages"],
                "customers": written["customers"],
                "organizations": written["organizations"],
                "kbArticles": written["kb_articles"],
                "rules": written["rules"],
            },
            cursor_state=next_state or None,
        )

    def fetch_ticket(self, auth: dict[str, str], ticket_id: str) -> dict[str, list[dict]]:
        """Staged payloads for one ticket, its comments and the records it references."""
        client = ZendeskClient.from_auth(auth)
        ticket = client.get(f"/api/v2/tickets/{ticket_id}.json").get("ticket")
        if not ticket:
            raise ConnectorExportError(f"zendesk ticket {ticket_id} not found")
        comments = client.paged(f"/api/v2/tickets/{ticket['id']}/comments.json", "comments")

        user_ids = [ticket.get("requester_id"), ticket.get("assignee_id")]
        user_ids.extend(comment.get("author_id") for comment in comments)
        users = [
            user
            for user in (
                client.get_one(f"/api/v2/users/{user_id}.json", "user")
                for user_id in dict.fromkeys(uid for uid in user_ids if uid is not None)
            )
            if user
        ]
        org_ids = dict.fromkeys(user["organization_id"] for user in users if user.get("organization_id"))
        organizations = [client.get_one(f"/api/v2/organizations/{org_id}.json", "organization") for org_id in org_ids]

        return {
            "tickets": [_ticket_record(ticket)],
            "messages": [_comment_record(ticket["id"], comment) for comment in comments],
            "customers": [_user_record(user) for user in users],
            "organizations": [_organization_record(org) for org in organizations if org],
            "groups": _linked(client, ticket.get("group_id"), "groups", "group", _group_record),
            "brands": _linked(client, ticket.get("brand_id"), "brands", "brand", _brand_record),
            "ticket_forms": _linked(
                client, ticket.get("ticket_form_id"), "ticket_forms", "ticket_form", _form_record
            ),
        }

    def outbound_client(self, auth: dict[str, str]) -> ZendeskOutboundClient:
        return ZendeskOutboundClient(ZendeskClient.from_auth(auth))


def _linked(client: ZendeskClient, linked_id: Any, resource: str, key: str, to_record) -> list[dict]:
    if linked_id is None:
        return []
    item = client.get_one(f"/api/v2/{resource}/{linked_id}.json", key)
    return [to_record(item)] if item else []
