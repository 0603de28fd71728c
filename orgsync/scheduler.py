from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from orgsync.config_manager import ConfigManager
from orgsync.models import ConfigurationError, SyncResult
from orgsync.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

FALLBACK_INTERVAL_SECONDS = 300


class SyncScheduler:
    """Runs the engine on a background thread: once at startup, then every
    ``sync.interval_seconds`` or as soon as :meth:`trigger_manual` is called."""

    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.last_result: Optional[SyncResult] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="orgsync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._wake_event.set()

    def status(self) -> dict[str, Any]:
        return {
            "running": self.is_running,
            "interval_seconds": self._interval_seconds(),
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }

    def _interval_seconds(self) -> int:
        try:
            config = self.config_manager.load()
        except ConfigurationError as exc:
            logger.warning("Using %ss sync interval: %s", FALLBACK_INTERVAL_SECONDS, exc)
            return FALLBACK_INTERVAL_SECONDS
        return max(30, int(config.sync.interval_seconds))

    def _run(self, trigger: str) -> None:
        result = self.sync_engine.run_once(trigger=trigger)
        self.last_result = result
        if result.status != "success":
            logger.warning("Scheduled sync (%s) ended with %s: %s", trigger, result.status, result.message)

    def _loop(self) -> None:
        self._run("startup")
        while not self._stop_event.is_set():
            woken = self._wake_event.wait(timeout=self._interval_seconds())
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            self._run("manual" if woken else "scheduled")
