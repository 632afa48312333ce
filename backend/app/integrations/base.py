from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping, Optional, Protocol


ConnectorName = str

MANIFEST_COUNT_KEYS = ("tickets", "messages", "customers", "organizations", "kbArticles", "rules")


class SyncConfigError(ValueError):
    pass


class UnknownConnectorError(SyncConfigError):
    def __init__(self, name: str, supported: list[str]):
        self.name = name
        self.supported = supported
        super().__init__(f"unknown connector: {name} (supported: {', '.join(supported)})")


class MissingCredentialsError(SyncConfigError):
    def __init__(self, connector: str, missing: list[str]):
        self.connector = connector
        self.missing = missing
        super().__init__(f"{connector} connector is missing credentials: {', '.join(missing)}")


class IntegrationDisabledError(SyncConfigError):
    pass


class ConnectorExportError(RuntimeError):
    pass


class OutboundPushError(RuntimeError):
    pass


def empty_counts() -> dict[str, int]:
    return {key: 0 for key in MANIFEST_COUNT_KEYS}


@dataclass(frozen=True)
class ExportManifest:
    """What a connector export produced, persisted as manifest.json."""

    exported_at: datetime
    counts: dict[str, int] = field(default_factory=empty_counts)
    cursor_state: Optional[dict[str, str]] = None

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "exportedAt": self.exported_at.isoformat(),
            "counts": {**empty_counts(), **self.counts},
        }
        if self.cursor_state is not None:
            payload["cursorState"] = dict(self.cursor_state)
        return payload

    @classmethod
    def from_json(cls, payload: Mapping[str, Any]) -> "ExportManifest":
        exported_at = datetime.fromisoformat(str(payload["exportedAt"]).replace("Z", "+00:00"))
        raw_counts = payload.get("counts") or {}
        counts = {key: int(raw_counts.get(key) or 0) for key in MANIFEST_COUNT_KEYS}
        cursor_state = payload.get("cursorState")
        if cursor_state is not None:
            cursor_state = {str(key): str(value) for key, value in dict(cursor_state).items()}
        return cls(exported_at=exported_at, counts=counts, cursor_state=cursor_state)

    def dumps(self) -> str:
        return json.dumps(self.to_json(), indent=2)


class OutboundClient(Protocol):
    provider: ConnectorName
    status_map: Mapping[str, Any]
    status_fallback: Any
    priority_map: Mapping[str, Any]
    priority_fallback: Any

    def update_ticket(self, external_id: str, update: dict[str, Any]) -> None:
        ...


class Connector(Protocol):
    name: ConnectorName
    env_vars: Mapping[str, str]
    incremental: bool

    def export(
        self,
        auth: dict[str, str],
        out_dir: Path,
        cursor_state: Optional[dict[str, str]],
    ) -> ExportManifest:
        ...

    def outbound_client(self, auth: dict[str, str]) -> Optional[OutboundClient]:
        ...
