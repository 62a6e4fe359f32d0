"""
Outbound write-back queue

The league publishes what the database should learn (a saved matchday, a
new champion, ...) as events; a background task drains them into the
persistence layer. Events sharing a key replace each other while pending,
so a burst of edits to the same matchday is written once.

Failures are logged and counted, never raised: the in-memory league stays
authoritative until the next successful write.
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Hashable, List, Optional, Tuple

_log = logging.getLogger("hyenescores.sync")

AUTOSAVE_DEBOUNCE_SECONDS = int(os.getenv("AUTOSAVE_DEBOUNCE_MS", "800")) / 1000


@dataclass(frozen=True)
class SyncEvent:
    operation: str
    args: Tuple
    published_at: float


@dataclass
class SyncReport:
    sent: int = 0
    failed: int = 0


class SyncQueue:
    def __init__(self, backend, debounce_seconds: float = AUTOSAVE_DEBOUNCE_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.backend = backend
        self.debounce_seconds = debounce_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._pending: Dict[Hashable, SyncEvent] = {}
        self._counter = 0

    def publish(self, operation: str, *args, key: Optional[Hashable] = None):
        """Queue ``backend.<operation>(*args)``; a pending event with the same key is replaced."""
        with self._lock:
            if key is None:
                self._counter += 1
                key = ("_unique", self._counter)
            else:
                key = (operation, key)
            # Re-insert so the dict keeps publication order
            self._pending.pop(key, None)
            self._pending[key] = SyncEvent(operation, args, self._clock())

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def _take_due(self, force: bool) -> List[SyncEvent]:
        now = self._clock()
        with self._lock:
            due_keys = [
                key for key, event in self._pending.items()
                if force or now - event.published_at >= self.debounce_seconds
            ]
            return [self._pending.pop(key) for key in due_keys]

    def drain(self, force: bool = False) -> SyncReport:
        report = SyncReport()
        for event in self._take_due(force):
            try:
                getattr(self.backend, event.operation)(*event.args)
                report.sent += 1
            except Exception as e:
                report.failed += 1
                _log.warning(f"Write-back {event.operation} failed: {e}")
        if report.sent or report.failed:
            _log.debug(f"Write-back drained: {report.sent} sent, {report.failed} failed")
        return report

    def flush_later(self) -> SyncReport:
        """Wait out the debounce delay, then send what is due."""
        time.sleep(self.debounce_seconds)
        return self.drain()
