"""Device-local copy of the upstream API-key statistics.

Writes are debounced: bursts of updates collapse into a single write after a
quiet period, and ``flush()`` forces the pending payload out immediately.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

from roadster.core.config import DEFAULT_CONFIG, StorageConfig
from roadster.core.exceptions import StorageError
from roadster.core.models import StoreResult
from roadster.storage.kv import ADMIN_STATS, KeyValueStore

logger = logging.getLogger("roadster.storage.admin_stats")

_NOTHING = object()


class DebouncedWriter:
    """Coalesces writes; only the most recent payload is written.

    Usage::

        writer = DebouncedWriter(save, delay_seconds=2.0)
        writer.schedule(payload)   # restarts the quiet period
        writer.flush()             # writes now, if anything is pending
    """

    def __init__(self, write: Callable[[Any], StoreResult], delay_seconds: float):
        self._write = write
        self.delay_seconds = delay_seconds
        self._pending: Any = _NOTHING
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    @property
    def has_pending(self) -> bool:
        return self._pending is not _NOTHING

    def peek(self, default: Any = None) -> Any:
        """The payload waiting to be written, or ``default``."""
        with self._lock:
            return default if self._pending is _NOTHING else self._pending

    def schedule(self, payload: Any) -> None:
        with self._lock:
            self._pending = payload
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay_seconds, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _take(self) -> Any:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            payload, self._pending = self._pending, _NOTHING
            return payload

    def _fire(self) -> None:
        payload = self._take()
        if payload is _NOTHING:
            return
        result = self._write(payload)
        if not result.ok:
            logger.warning("Debounced write failed: %s", result.message)

    def flush(self) -> StoreResult:
        payload = self._take()
        if payload is _NOTHING:
            return StoreResult(ok=True)
        return self._write(payload)

    def cancel(self) -> None:
        """Drop the pending payload without writing it."""
        self._take()


class AdminStatsStore:
    """Snapshot ``{stats, cache, updatedAt}`` persisted through a debounced writer."""

    def __init__(self, kv: KeyValueStore, config: StorageConfig = DEFAULT_CONFIG.storage):
        self.kv = kv
        self.writer = DebouncedWriter(self._write_now, config.stats_write_debounce_seconds)

    def read(self) -> Optional[dict]:
        payload = self.kv.read_json(ADMIN_STATS)
        return payload if isinstance(payload, dict) else None

    def _write_now(self, payload: Optional[dict]) -> StoreResult:
        try:
            if payload is None:
                self.kv.remove_name(ADMIN_STATS)
            else:
                self.kv.write_json(ADMIN_STATS, payload)
        except StorageError as exc:
            return StoreResult(ok=False, message=f"Could not save admin stats: {exc}")
        return StoreResult(ok=True)

    def write(self, payload: Optional[dict]) -> StoreResult:
        """Schedule ``payload`` (``None`` clears the entry) for writing."""
        self.writer.schedule(payload)
        return StoreResult(ok=True)

    def update(self, updater: Callable[[Optional[dict]], Optional[dict]]) -> StoreResult:
        """Apply ``updater`` to the newest snapshot, pending writes included."""
        current = self.writer.peek(_NOTHING)
        if current is _NOTHING:
            current = self.read()
        return self.write(updater(current))

    def flush(self) -> StoreResult:
        return self.writer.flush()
