from __future__ import annotations

import logging
import threading
from typing import Optional

from plannersync.config_manager import AccountConfigStore
from plannersync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: AccountConfigStore) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._pending_trigger = "scheduled"
        self._trigger_lock = threading.Lock()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="plannersync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def _wake(self, trigger: str) -> None:
        with self._trigger_lock:
            self._pending_trigger = trigger
        self._wake_event.set()

    def trigger_manual(self) -> None:
        self._wake("manual")

    def notify_focus(self) -> None:
        self._wake("focus")

    def _take_trigger(self, woke: bool) -> str:
        with self._trigger_lock:
            trigger = self._pending_trigger if woke else "scheduled"
            self._pending_trigger = "scheduled"
        return trigger

    def _loop(self) -> None:
        # Run one sync at startup so the local store catches up quickly.
        self.sync_engine.smart_sync(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            woke = self._wake_event.wait(timeout=interval_seconds)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            trigger = self._take_trigger(woke)
            result = self.sync_engine.smart_sync(trigger=trigger, force=trigger == "manual")
            logger.debug("Scheduler trigger %s -> %s (%s)", trigger, result.status, result.message)
