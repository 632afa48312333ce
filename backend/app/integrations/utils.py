from __future__ import annotations

import json
import os
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional


DEFAULT_EXPORT_ROOT = "./exports"
DEFAULT_HTTP_TIMEOUT = 30.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands timestamps back naive; they were written as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    try:
        return as_utc(datetime.fromisoformat(text.replace("Z", "+00:00")))
    except ValueError:
        return None


def export_root() -> Path:
    return Path(os.getenv("SYNC_EXPORT_ROOT") or DEFAULT_EXPORT_ROOT)


def default_out_dir(connector_name: str) -> Path:
    return export_root() / connector_name


def http_timeout() -> float:
    raw = os.getenv("SYNC_HTTP_TIMEOUT")
    if not raw:
        return DEFAULT_HTTP_TIMEOUT
    try:
        return float(raw)
    except ValueError:
        return DEFAULT_HTTP_TIMEOUT


def _build_httpx_client(base_url: str, *, auth: Optional[tuple[str, str]] = None):
    import httpx  # local import to avoid hard dependency at import time

    return httpx.Client(base_url=base_url, auth=auth, timeout=http_timeout())


def write_jsonl(path: Path, records: Iterable[dict[str, Any]]) -> int:
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8") as handle:
        for record in records:
            handle.write(json.dumps(record, default=str))
            handle.write("\n")
            count += 1
    return count


def str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)
