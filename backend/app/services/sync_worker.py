from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from backend.app.integrations.base import SyncConfigError
from backend.app.services import sync_service
from backend.app.services.sync_service import IngestTarget, SyncStats


logger = logging.getLogger(__name__)


class SyncWorker:
    """Runs sync cycles for one connector on a fixed interval in a background thread.

    ``on_cycle`` receives every successful ``SyncStats``; ``on_error`` receives
    stats whose ``error`` is set, or the configuration error that stopped the
    worker. ``stop()`` is cooperative: the current cycle finishes and nothing
    further is scheduled.
    """

    def __init__(
        self,
        connector: str,
        *,
        interval_seconds: float = 300.0,
        full_sync: bool = False,
        out_dir=None,
        ingest: Optional[IngestTarget] = None,
        session_factory: Optional[Callable[[], Any]] = None,
        on_cycle: Optional[Callable[[SyncStats], None]] = None,
        on_error: Optional[Callable[[Any], None]] = None,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.connector = connector
        self.interval_seconds = interval_seconds
        self.full_sync = full_sync
        self.out_dir = out_dir
        self.ingest = ingest
        self.session_factory = session_factory
        self.on_cycle = on_cycle
        self.on_error = on_error
        self.cycles = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> "SyncWorker":
        if self.is_running():
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"sync-{self.connector}", daemon=True)
        self._thread.start()
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> SyncStats:
        if self.ingest is None or self.session_factory is None:
            return sync_service.run_cycle(self.connector, full_sync=self.full_sync, out_dir=self.out_dir)
        db = self.session_factory()
        try:
            return sync_service.run_cycle(
                self.connector,
                full_sync=self.full_sync,
                out_dir=self.out_dir,
                ingest=self.ingest,
                db=db,
            )
        finally:
            db.close()

    def _loop(self) -> None:
        logger.info("sync worker started: connector=%s interval=%ss", self.connector, self.interval_seconds)
        while not self._stop.is_set():
            try:
                stats = self.run_once()
            except SyncConfigError as exc:
                logger.error("sync worker stopping on configuration error: %s", exc)
                if self.on_error:
                    self.on_error(exc)
                self._stop.set()
                break
            self.cycles += 1
            if stats.error:
                if self.on_error:
                    self.on_error(stats)
            elif self.on_cycle:
                self.on_cycle(stats)
            self._stop.wait(self.interval_seconds)
        logger.info("sync worker stopped: connector=%s cycles=%s", self.connector, self.cycles)
