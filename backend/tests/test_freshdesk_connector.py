import json

import pytest

pytest.importorskip("httpx")

import httpx

from backend.app.integrations import freshdesk
from backend.app.integrations.base import ConnectorExportError, OutboundPushError


AUTH = {"domain": "acme", "api_key": "key-123"}


def _ticket(ticket_id: int, **extra):
    payload = {
        "id": ticket_id,
        "subject": f"Ticket {ticket_id}",
        "status": 2,
        "priority": 1,
        "requester_id": 500,
        "responder_id": 600,
        "tags": [],
        "created_at": "2024-01-01T09:00:00Z",
        "updated_at": "2024-01-02T09:00:00Z",
    }
    payload.update(extra)
    return payload


def _handler(seen):
    tickets = [_ticket(1), _ticket(2, status=4, priority=4), _ticket(3, status=99)]

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.path, dict(request.url.params)))
        path = request.url.path
        page = int(request.url.params.get("page", "1"))
        if path == "/api/v2/tickets":
            return httpx.Response(200, json=tickets[(page - 1) * 2 : page * 2])
        if path == "/api/v2/contacts":
            return httpx.Response(200, json=[{"id": 500, "name": "Ada", "email": "ada@example.com", "company_id": 70}])
        if path == "/api/v2/agents":
            return httpx.Response(200, json=[{"id": 600, "contact": {"name": "Grace", "email": "grace@acme.test"}}])
        if path == "/api/v2/companies":
            return httpx.Response(200, json=[{"id": 70, "name": "Example Inc", "domains": ["example.com"]}])
        if path == "/api/v2/groups":
            return httpx.Response(200, json=[{"id": 80, "name": "Billing"}])
        if path == "/api/v2/tickets/1/conversations":
            return httpx.Response(
                200,
                json=[
                    {
                        "id": 11,
                        "user_id": 600,
                        "body": "<p>Looking</p>",
                        "body_text": "Looking",
                        "private": True,
                        "created_at": "2024-01-01T10:00:00Z",
                        "attachments": [{"id": 5, "name": "shot.png", "size": 99, "content_type": "image/png"}],
                    }
                ],
            )
        if path.startswith("/api/v2/tickets/") and path.endswith("/conversations"):
            return httpx.Response(200, json=[])
        return httpx.Response(404)

    return handler


@pytest.fixture()
def mock_freshdesk(monkeypatch):
    seen = []
    transport = httpx.MockTransport(_handler(seen))

    def _client(base_url, *, auth=None):
        return httpx.Client(base_url=base_url, auth=auth, transport=transport)

    monkeypatch.setattr(freshdesk, "_build_httpx_client", _client)
    monkeypatch.setattr(freshdesk, "PAGE_SIZE", 2)
    return seen


def _read(path):
    return [json.loads(line) for line in path.read_text().splitlines() if line.strip()]


def test_export_pages_and_maps_numeric_codes(mock_freshdesk, tmp_path):
    manifest = freshdesk.FreshdeskConnector().export(AUTH, tmp_path, None)

    tickets = _read(tmp_path / "tickets.jsonl")
    assert [ticket["id"] for ticket in tickets] == ["fd-1", "fd-2", "fd-3"]
    assert [ticket["status"] for ticket in tickets] == ["open", "solved", "open"]
    assert [ticket["priority"] for ticket in tickets] == ["low", "urgent", "low"]
    assert tickets[0]["assignee"] == "600"

    ticket_pages = [params for path, params in mock_freshdesk if path == "/api/v2/tickets"]
    assert [params["page"] for params in ticket_pages] == ["1", "2"]
    assert ticket_pages[0]["updated_since"] == "1970-01-01T00:00:00Z"

    messages = _read(tmp_path / "messages.jsonl")
    assert messages[0]["ticketId"] == "fd-1"
    assert messages[0]["type"] == "note"
    assert messages[0]["attachments"][0]["filename"] == "shot.png"

    customers = _read(tmp_path / "customers.jsonl")
    assert [(customer["externalId"], customer.get("role")) for customer in customers] == [
        ("500", None),
        ("600", "agent"),
    ]
    assert customers[0]["orgId"] == "70"

    assert manifest.cursor_state is None
    assert manifest.counts["tickets"] == 3
    assert manifest.counts["customers"] == 2


def test_export_error_is_connector_error(monkeypatch, tmp_path):
    def _client(base_url, *, auth=None):
        return httpx.Client(base_url=base_url, transport=httpx.MockTransport(lambda request: httpx.Response(401)))

    monkeypatch.setattr(freshdesk, "_build_httpx_client", _client)

    with pytest.raises(ConnectorExportError):
        freshdesk.FreshdeskConnector().export(AUTH, tmp_path, None)


def test_outbound_update_uses_numeric_codes(monkeypatch):
    captured = []

    def handler(request):
        captured.append((request.method, str(request.url), json.loads(request.content)))
        if request.url.path.endswith("/404"):
            return httpx.Response(404)
        return httpx.Response(200, json={})

    def _client(base_url, *, auth=None):
        return httpx.Client(base_url=base_url, auth=auth, transport=httpx.MockTransport(handler))

    monkeypatch.setattr(freshdesk, "_build_httpx_client", _client)
    outbound = freshdesk.FreshdeskConnector().outbound_client(AUTH)

    assert outbound.status_map["on_hold"] == 3
    outbound.update_ticket(
        "1", {"subject": "Refund", "status": 4, "priority": 2, "tags": ["refund"], "assignee_id": "600"}
    )
    method, url, body = captured[0]
    assert method == "PUT"
    assert url == "https://acme.freshdesk.com/api/v2/tickets/1"
    assert body == {"status": 4, "priority": 2, "tags": ["refund"], "subject": "Refund", "responder_id": 600}

    with pytest.raises(OutboundPushError):
        outbound.update_ticket("404", {"status": 2, "priority": 2, "tags": []})


@pytest.mark.parametrize(
    "domain,expected",
    [
        ("acme", "https://acme.freshdesk.com"),
        ("support.acme.com", "https://support.acme.com"),
        ("https://acme.freshdesk.com/", "https://acme.freshdesk.com"),
    ],
)
def test_base_url_forms(domain, expected):
    assert freshdesk.freshdesk_base_url(domain) == expected
