import threading

import pytest

from backend.app.integrations.base import ConnectorExportError, MissingCredentialsError
from backend.app.services.sync_worker import SyncWorker


@pytest.fixture()
def fake(fake_connector):
    return fake_connector


def test_worker_reports_each_cycle_until_stopped(fake):
    cycles = []
    done = threading.Event()

    def on_cycle(stats):
        cycles.append(stats)
        if len(cycles) == 2:
            done.set()

    worker = SyncWorker("fake", interval_seconds=0.01, on_cycle=on_cycle).start()
    try:
        assert done.wait(5)
    finally:
        worker.stop(timeout=5)

    assert not worker.is_running()
    assert worker.cycles >= 2
    assert cycles[0].full_sync is True
    assert cycles[1].cursor_state == {"tickets": "c-1"}


def test_failed_cycle_goes_to_on_error_and_worker_keeps_going(fake):
    fake.fail = ConnectorExportError("vendor down")
    errors = []
    done = threading.Event()

    def on_error(stats):
        errors.append(stats)
        if len(errors) == 2:
            done.set()

    worker = SyncWorker("fake", interval_seconds=0.01, on_error=on_error).start()
    try:
        assert done.wait(5)
    finally:
        worker.stop(timeout=5)

    assert errors[0].error == "vendor down"


def test_configuration_error_stops_worker(monkeypatch, export_root):
    for env in ("FRESHDESK_DOMAIN", "FRESHDESK_API_KEY"):
        monkeypatch.delenv(env, raising=False)
    errors = []

    worker = SyncWorker("freshdesk", interval_seconds=60, on_error=errors.append).start()
    worker.join(timeout=5)

    assert not worker.is_running()
    assert worker.cycles == 0
    assert isinstance(errors[0], MissingCredentialsError)


def test_run_once_outside_thread(fake):
    stats = SyncWorker("fake", interval_seconds=1).run_once()
    assert stats.counts["tickets"] == 1


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        SyncWorker("fake", interval_seconds=0)
