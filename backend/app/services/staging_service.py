"""Staging directory I/O: manifest.json plus one JSONL file per entity type."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError

from backend.app.domain.contracts import STAGED_FILES, IngestBatch
from backend.app.integrations.base import ExportManifest


logger = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"


def load_manifest(directory: Path) -> Optional[ExportManifest]:
    path = Path(directory) / MANIFEST_FILE
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        return ExportManifest.from_json(payload)
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        logger.warning("ignoring unreadable manifest %s: %s", path, exc)
        return None


def write_manifest(directory: Path, manifest: ExportManifest) -> Path:
    path = Path(directory) / MANIFEST_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(manifest.dumps(), encoding="utf-8")
    return path


def read_jsonl(path: Path) -> tuple[list[dict[str, Any]], int]:
    """Decode a JSONL file. Returns (objects, discarded line count)."""
    if not path.is_file():
        return [], 0
    items: list[dict[str, Any]] = []
    discarded = 0
    with path.open("rb") as handle:
        for lineno, raw in enumerate(handle, start=1):
            if not raw.strip():
                continue
            try:
                value = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.debug("discarding malformed line %s:%s", path.name, lineno)
                discarded += 1
                continue
            if not isinstance(value, dict):
                discarded += 1
                continue
            items.append(value)
    return items, discarded


def _decode_into(batch: IngestBatch, entity: str, payloads: list[dict[str, Any]]) -> int:
    _, contract = STAGED_FILES[entity]
    records = getattr(batch, entity)
    discarded = 0
    for payload in payloads:
        try:
            records.append(contract.from_payload(payload))
        except ValidationError as exc:
            logger.debug("discarding invalid %s record: %s", entity, exc.errors()[:1])
            discarded += 1
    return discarded


def read_staged_batch(directory: Path) -> IngestBatch:
    batch = IngestBatch()
    directory = Path(directory)
    for entity, (filename, _) in STAGED_FILES.items():
        payloads, discarded = read_jsonl(directory / filename)
        discarded += _decode_into(batch, entity, payloads)
        if discarded:
            logger.warning("discarded %s malformed line(s) from %s", discarded, filename)
            batch.discarded[entity] = discarded
    return batch


def decode_payloads(payloads: dict[str, list[dict[str, Any]]]) -> IngestBatch:
    """Like read_staged_batch, for staged payloads already in memory."""
    batch = IngestBatch()
    for entity, items in payloads.items():
        discarded = _decode_into(batch, entity, items)
        if discarded:
            batch.discarded[entity] = discarded
    return batch
