from __future__ import annotations

import os

from backend.app.integrations.base import (
    Connector,
    ConnectorName,
    ExportManifest,
    MissingCredentialsError,
    OutboundClient,
    UnknownConnectorError,
)
from backend.app.integrations.freshdesk import FreshdeskConnector
from backend.app.integrations.local_export import LocalExportConnector
from backend.app.integrations.zendesk import ZendeskConnector


CONNECTORS: dict[str, Connector] = {
    "zendesk": ZendeskConnector(),
    "freshdesk": FreshdeskConnector(),
    "local": LocalExportConnector(),
}


def list_connectors() -> list[str]:
    return list(CONNECTORS)


def get_connector(name: ConnectorName) -> Connector:
    key = (name or "").strip().lower()
    connector = CONNECTORS.get(key)
    if connector is None:
        raise UnknownConnectorError(name, list_connectors())
    return connector


def resolve_credentials(connector: Connector) -> dict[str, str]:
    missing = [env for env in connector.env_vars.values() if not os.getenv(env)]
    if missing:
        raise MissingCredentialsError(connector.name, missing)
    return {key: os.environ[env] for key, env in connector.env_vars.items()}


__all__ = [
    "CONNECTORS",
    "Connector",
    "ConnectorName",
    "ExportManifest",
    "OutboundClient",
    "get_connector",
    "list_connectors",
    "resolve_credentials",
]
