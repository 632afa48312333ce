import json
from datetime import datetime, timezone

from backend.app.integrations.base import ExportManifest
from backend.app.services import staging_service


def test_manifest_round_trip_keeps_cursor_state(tmp_path):
    manifest = ExportManifest(
        exported_at=datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc),
        counts={"tickets": 3, "messages": 7},
        cursor_state={"tickets": "abc", "organizations": "1700000000"},
    )

    staging_service.write_manifest(tmp_path, manifest)
    payload = json.loads((tmp_path / "manifest.json").read_text())
    loaded = staging_service.load_manifest(tmp_path)

    assert payload["exportedAt"] == "2024-03-01T12:00:00+00:00"
    assert payload["counts"]["kbArticles"] == 0
    assert loaded.cursor_state == {"tickets": "abc", "organizations": "1700000000"}
    assert loaded.counts["messages"] == 7


def test_manifest_without_cursor_omits_key(tmp_path):
    manifest = ExportManifest(exported_at=datetime(2024, 3, 1, tzinfo=timezone.utc))
    staging_service.write_manifest(tmp_path, manifest)

    payload = json.loads((tmp_path / "manifest.json").read_text())
    assert "cursorState" not in payload
    assert staging_service.load_manifest(tmp_path).cursor_state is None


def test_missing_or_corrupt_manifest_reads_as_none(tmp_path):
    assert staging_service.load_manifest(tmp_path) is None

    (tmp_path / "manifest.json").write_text("{truncated", encoding="utf-8")
    assert staging_service.load_manifest(tmp_path) is None

    (tmp_path / "manifest.json").write_text(json.dumps({"counts": {}}), encoding="utf-8")
    assert staging_service.load_manifest(tmp_path) is None


def test_read_jsonl_skips_blank_and_discards_malformed(tmp_path, write_staged):
    path = write_staged(tmp_path, "customers.jsonl", [{"externalId": "c-1"}, "", "not json", "[1, 2]"])

    items, discarded = staging_service.read_jsonl(path)

    assert items == [{"externalId": "c-1"}]
    assert discarded == 2


def test_undecodable_line_is_discarded_not_fatal(tmp_path):
    good = [
        {"externalId": "t-1", "createdAt": "2024-01-01T00:00:00Z", "updatedAt": "2024-01-01T00:00:00Z"},
        {"externalId": "t-2", "createdAt": "2024-01-01T00:00:00Z", "updatedAt": "2024-01-01T00:00:00Z"},
    ]
    (tmp_path / "tickets.jsonl").write_bytes(
        json.dumps(good[0]).encode() + b"\n" + b'{"externalId": "\xff\xfe"}\n' + json.dumps(good[1]).encode() + b"\n"
    )

    batch = staging_service.read_staged_batch(tmp_path)

    assert [ticket.external_id for ticket in batch.tickets] == ["t-1", "t-2"]
    assert batch.discarded == {"tickets": 1}


def test_read_staged_batch_validates_against_contracts(tmp_path, write_staged):
    write_staged(
        tmp_path,
        "messages.jsonl",
        [
            {"id": "m-1", "ticketId": "t-1", "createdAt": "2024-01-01T00:00:00Z"},
            {"ticketId": "t-1", "createdAt": "2024-01-01T00:00:00Z"},
            {"id": "m-3", "ticketId": "t-1", "type": "tweet", "createdAt": "2024-01-01T00:00:00Z"},
        ],
    )
    write_staged(tmp_path, "rules.jsonl", [{"externalId": 42, "type": "macro", "title": "Close"}])

    batch = staging_service.read_staged_batch(tmp_path)

    assert [message.key for message in batch.messages] == ["m-1"]
    assert batch.discarded == {"messages": 2}
    assert batch.rules[0].external_id == "42"
    assert batch.tickets == []


def test_record_keeps_original_payload(tmp_path, write_staged):
    write_staged(
        tmp_path,
        "tickets.jsonl",
        [
            {
                "externalId": "t-1",
                "subject": "Hi",
                "createdAt": "2024-01-01T00:00:00Z",
                "updatedAt": "2024-01-01T00:00:00Z",
                "vendorOnly": {"sla": "gold"},
            }
        ],
    )

    ticket = staging_service.read_staged_batch(tmp_path).tickets[0]

    assert ticket.raw_payload["vendorOnly"] == {"sla": "gold"}
    assert ticket.updated_at.tzinfo is not None
