import json
import os
import pathlib
import sys
import tempfile

import pytest


REPO_ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.append(str(REPO_ROOT))


def pytest_configure():
    if os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URL"):
        return
    temp_dir = tempfile.mkdtemp(prefix="helpdesk-sync-tests-")
    db_path = pathlib.Path(temp_dir) / "pytest.db"
    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"


@pytest.fixture()
def sqlite_engine():
    from backend.app.db import Base, engine
    import backend.app.models  # noqa: F401

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def sqlite_session(sqlite_engine):
    from backend.app.db import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def api_client(sqlite_engine, sqlite_session):
    from backend.app.db import get_db
    from backend.app.main import app
    from fastapi.testclient import TestClient

    def _get_test_db():
        yield sqlite_session

    app.dependency_overrides[get_db] = _get_test_db
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def export_root(tmp_path, monkeypatch):
    root = tmp_path / "exports"
    monkeypatch.setenv("SYNC_EXPORT_ROOT", str(root))
    return root


@pytest.fixture()
def write_staged():
    """Write staged JSONL: dict items are serialized, str items are written verbatim."""

    def _write(directory: pathlib.Path, filename: str, items) -> pathlib.Path:
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / filename
        lines = [item if isinstance(item, str) else json.dumps(item) for item in items]
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path

    return _write


STAGED_TICKET = {
    "externalId": "t-1",
    "subject": "Cannot log in",
    "createdAt": "2024-01-01T00:00:00Z",
    "updatedAt": "2024-01-01T00:00:00Z",
}


class FakeConnector:
    """Incremental connector that stages a fixed ticket list and records the cursors it was given."""

    name = "fake"
    env_vars: dict = {}
    incremental = True

    def __init__(self, *, tickets=(STAGED_TICKET,), next_cursor="c-1", fail=None):
        self.tickets = list(tickets)
        self.next_cursor = next_cursor
        self.fail = fail
        self.seen_cursors = []

    def export(self, auth, out_dir, cursor_state):
        from datetime import datetime, timezone

        from backend.app.integrations.base import ExportManifest
        from backend.app.integrations.utils import write_jsonl

        self.seen_cursors.append(cursor_state)
        if self.fail is not None:
            raise self.fail
        count = write_jsonl(out_dir / "tickets.jsonl", self.tickets)
        return ExportManifest(
            exported_at=datetime(2024, 2, 1, tzinfo=timezone.utc),
            counts={"tickets": count},
            cursor_state={"tickets": self.next_cursor} if self.next_cursor else None,
        )

    def outbound_client(self, auth):
        return None


@pytest.fixture()
def fake_connector(monkeypatch, export_root):
    from backend.app.integrations import CONNECTORS

    connector = FakeConnector()
    monkeypatch.setitem(CONNECTORS, "fake", connector)
    return connector
