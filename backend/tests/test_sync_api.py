import hashlib
import json

from sqlalchemy import select

from backend.app.models import Integration
from backend.app.services import raw_record_service


def test_health(api_client):
    assert api_client.get("/health").json() == {"ok": True}


def test_list_connectors(api_client):
    resp = api_client.get("/api/sync/connectors")
    assert resp.status_code == 200
    assert resp.json() == {"connectors": ["zendesk", "freshdesk", "local"]}


def test_status_lists_connectors_without_manifests(api_client, export_root):
    resp = api_client.get("/api/sync/status")
    assert resp.status_code == 200
    body = resp.json()
    assert [row["name"] for row in body] == ["zendesk", "freshdesk", "local"]
    assert body[0] == {"name": "zendesk", "last_synced_at": None, "cursor_state": None, "ticket_count": 0}

    assert api_client.get("/api/sync/status", params={"connector": "nope"}).json() == []


def test_run_rejects_unknown_connector_and_half_target(api_client, export_root):
    resp = api_client.post("/api/sync/helpscout/run", json={})
    assert resp.status_code == 400
    assert "unknown connector" in resp.json()["detail"]

    resp = api_client.post("/api/sync/zendesk/run", json={"tenant": "acme"})
    assert resp.status_code == 400


def test_run_reports_missing_credentials(api_client, export_root, monkeypatch):
    monkeypatch.delenv("FRESHDESK_DOMAIN", raising=False)
    monkeypatch.delenv("FRESHDESK_API_KEY", raising=False)

    resp = api_client.post("/api/sync/freshdesk/run", json={})

    assert resp.status_code == 400
    assert "FRESHDESK_DOMAIN" in resp.json()["detail"]


def test_run_and_ingest(api_client, fake_connector, export_root):
    resp = api_client.post("/api/sync/fake/run", json={"tenant": "acme", "workspace": "support"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["error"] is None
    assert body["full_sync"] is True
    assert body["counts"]["tickets"] == 1
    assert body["cursor_state"] == {"tickets": "c-1"}
    assert body["ingest"]["counts"]["ticket"]["created"] == 1

    status = api_client.get("/api/sync/status", params={"connector": "fake"}).json()
    assert status[0]["ticket_count"] == 1
    assert status[0]["cursor_state"] == {"tickets": "c-1"}


def test_run_export_failure_is_reported_in_body(api_client, fake_connector, export_root):
    fake_connector.fail = RuntimeError("boom")

    resp = api_client.post("/api/sync/fake/run", json={})

    assert resp.status_code == 200
    assert resp.json()["error"] == "boom"


def test_push_unknown_workspace_is_404(api_client):
    resp = api_client.post("/api/sync/outbound/zendesk/push", json={"tenant": "acme", "workspace": "none"})
    assert resp.status_code == 404


def test_push_without_outbound_support_is_400(api_client, sqlite_session, monkeypatch, tmp_path):
    monkeypatch.setenv("SYNC_LOCAL_SOURCE_DIR", str(tmp_path))
    api_client.post("/api/sync/webhooks/local", params={"tenant": "acme", "workspace": "support"}, json={"id": "e-1"})

    resp = api_client.post("/api/sync/outbound/local/push", json={"tenant": "acme", "workspace": "support"})

    assert resp.status_code == 400
    assert "outbound" in resp.json()["detail"]


def test_webhook_is_recorded_once(api_client, sqlite_session):
    params = {"tenant": "acme", "workspace": "support"}

    first = api_client.post("/api/sync/webhooks/Zendesk", params=params, json={"id": 42, "type": "ticket.updated"})
    again = api_client.post("/api/sync/webhooks/zendesk", params=params, json={"id": 42, "type": "ticket.updated"})

    assert first.status_code == 200
    assert first.json() == {
        "provider": "zendesk",
        "external_id": "42",
        "inserted": True,
        "ticket_id": None,
        "ingest": None,
    }
    assert again.json()["inserted"] is False
    integration = sqlite_session.execute(select(Integration)).scalar_one()
    raw = raw_record_service.get_raw_record(sqlite_session, integration.id, "webhook_event", "42")
    assert raw.payload["type"] == "ticket.updated"


def test_webhook_without_id_is_keyed_by_body_hash(api_client):
    body = json.dumps({"type": "ping"}).encode()

    resp = api_client.post(
        "/api/sync/webhooks/freshdesk",
        params={"tenant": "acme", "workspace": "support"},
        content=body,
        headers={"content-type": "application/json"},
    )

    assert resp.json()["external_id"] == hashlib.sha256(body).hexdigest()


def test_webhook_rejects_non_object_body(api_client):
    resp = api_client.post(
        "/api/sync/webhooks/zendesk",
        params={"tenant": "acme", "workspace": "support"},
        content=b"[1, 2]",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400


def test_webhook_id_zero_is_used_as_key(api_client):
    resp = api_client.post(
        "/api/sync/webhooks/freshdesk",
        params={"tenant": "acme", "workspace": "support"},
        json={"id": 0, "type": "ticket.created"},
    )

    assert resp.status_code == 200
    assert resp.json()["external_id"] == "0"
