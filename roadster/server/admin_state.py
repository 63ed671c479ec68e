"""Server-side API-key validation state.

Keeps the last validation result (TTL cache entry) and the invalid-key
counter in process memory, and mirrors them to a small JSON file so the
statistics survive restarts and can be synced elsewhere.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from roadster.core.config import DEFAULT_CONFIG
from roadster.core.utils import read_object, read_string, to_finite_number

logger = logging.getLogger("roadster.server.admin_state")


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ValidationCacheEntry:
    key: str
    ok: bool
    expires_at: float
    info: Any = None

    def to_dict(self) -> dict:
        return {"key": self.key, "ok": self.ok, "expiresAt": self.expires_at, "info": self.info}


@dataclass
class ValidationStats:
    invalid_count: int = 0
    last_invalid_at: Optional[float] = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"invalidCount": self.invalid_count}
        if self.last_invalid_at:
            data["lastInvalidAt"] = self.last_invalid_at
        return data


def parse_stats(value: Any) -> Optional[ValidationStats]:
    if not isinstance(value, dict):
        return None
    count = to_finite_number(value.get("invalidCount"))
    return ValidationStats(
        invalid_count=int(max(0.0, count if count is not None else 0.0)),
        last_invalid_at=to_finite_number(value.get("lastInvalidAt")) or None,
    )


def parse_cache(value: Any) -> Optional[ValidationCacheEntry]:
    source = read_object(value)
    key = read_string(source.get("key"))
    expires_at = to_finite_number(source.get("expiresAt"))
    ok = source.get("ok")
    if not key or expires_at is None or not isinstance(ok, bool):
        return None
    return ValidationCacheEntry(key=key, ok=ok, expires_at=expires_at, info=source.get("info"))


class AdminState:
    """In-memory validation cache + invalid counter, persisted to ``stats_file``.

    Usage::

        state = AdminState(Path(".data/roboflow-admin-stats.json"))
        state.load()
        state.record_invalid()
        state.persist()
    """

    def __init__(self, stats_file: Path = DEFAULT_CONFIG.server.stats_file):
        self.stats_file = Path(stats_file)
        self._stats = ValidationStats()
        self._cache: Optional[ValidationCacheEntry] = None
        self._lock = threading.Lock()

    # ── In-memory state ─────────────────────────────────────────────

    @property
    def stats(self) -> ValidationStats:
        return self._stats

    @property
    def cache(self) -> Optional[ValidationCacheEntry]:
        return self._cache

    def set_cache(self, entry: ValidationCacheEntry) -> None:
        with self._lock:
            self._cache = entry

    def record_invalid(self, at: Optional[float] = None) -> ValidationStats:
        with self._lock:
            self._stats.invalid_count += 1
            self._stats.last_invalid_at = at if at is not None else now_ms()
            return self._stats

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "stats": self._stats.to_dict(),
                "cache": self._cache.to_dict() if self._cache else None,
                "updatedAt": now_ms(),
            }

    def merge(self, payload: Any) -> dict:
        """Adopt whichever of ``stats`` / ``cache`` in ``payload`` are well-formed."""
        source = read_object(payload)
        stats = parse_stats(source.get("stats"))
        cache = parse_cache(source.get("cache"))
        with self._lock:
            if stats is not None:
                self._stats = stats
            if cache is not None:
                self._cache = cache
        return self.snapshot()

    # ── Persistence ─────────────────────────────────────────────────

    def read_persisted(self) -> Optional[dict]:
        """Read the stats file; ``None`` when missing or unreadable."""
        try:
            parsed = json.loads(self.stats_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable admin stats file %s: %s", self.stats_file, exc)
            return None
        if not isinstance(parsed, dict):
            return None

        stats = parse_stats(parsed.get("stats")) or ValidationStats()
        cache = parse_cache(parsed.get("cache"))
        return {
            "stats": stats.to_dict(),
            "cache": cache.to_dict() if cache else None,
            "updatedAt": to_finite_number(parsed.get("updatedAt")) or now_ms(),
        }

    def load(self) -> bool:
        """Seed memory from the stats file; ``True`` if anything was loaded."""
        persisted = self.read_persisted()
        if persisted is None:
            return False
        self.merge(persisted)
        logger.info("Loaded admin stats from %s", self.stats_file)
        return True

    def persist(self, payload: Any = None) -> dict:
        """Merge ``payload`` (if any) and write the snapshot to disk."""
        snapshot = self.merge(payload or {})
        self.stats_file.parent.mkdir(parents=True, exist_ok=True)
        self.stats_file.write_text(json.dumps(snapshot, indent=2), encoding="utf-8")
        return snapshot

    def persist_best_effort(self) -> None:
        try:
            self.persist()
        except OSError as exc:
            logger.warning("Could not persist admin stats: %s", exc)
