"""SQLite-backed key-value blob store.

Holds the device-local state (detection history, GIS settings, layer caches,
admin session, admin stats) as JSON text under versioned keys::

    roadster:<name>:v1        canonical
    road-detect:<name>:v1     legacy, migrated on first read
"""

from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Optional

from roadster.core.config import DEFAULT_CONFIG, StorageConfig
from roadster.core.exceptions import StorageError, StorageQuotaError

logger = logging.getLogger("roadster.storage.kv")

ADMIN_SESSION = "admin-session"
DETECTION_HISTORY = "detection-history"
GIS_SETTINGS = "gismap-settings"
GIS_BOUNDARY_CACHE = "gismap-boundary"
GIS_WFS_CACHE = "gismap-wfs"
ADMIN_STATS = "roboflow-admin-stats"

SCHEMA = """\
CREATE TABLE IF NOT EXISTS kv_store (
    key         TEXT PRIMARY KEY,
    value       TEXT NOT NULL,
    updated_at  TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""


def make_key(name: str, config: StorageConfig = DEFAULT_CONFIG.storage) -> str:
    return f"{config.key_prefix}:{name}:{config.key_version}"


def legacy_key(name: str, config: StorageConfig = DEFAULT_CONFIG.storage) -> str:
    return f"{config.legacy_key_prefix}:{name}:{config.key_version}"


class KeyValueStore:
    """String values by key, with a per-value size quota."""

    def __init__(self, db_path: Path, config: StorageConfig = DEFAULT_CONFIG.storage):
        self.db_path = Path(db_path)
        self.config = config
        self._conn: Optional[sqlite3.Connection] = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
        return self._conn

    def key(self, name: str) -> str:
        return make_key(name, self.config)

    def legacy_key(self, name: str) -> str:
        return legacy_key(name, self.config)

    # ── Raw access ──────────────────────────────────────────────────

    def get(self, key: str) -> Optional[str]:
        row = self.conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set(self, key: str, value: str) -> None:
        """Store ``value``; raises :class:`StorageQuotaError` when it cannot fit."""
        size = len(value.encode("utf-8"))
        if size > self.config.max_value_bytes:
            raise StorageQuotaError(
                f"Value for {key} is {size} bytes (limit {self.config.max_value_bytes})"
            )
        try:
            self.conn.execute(
                """INSERT INTO kv_store (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET
                       value = excluded.value,
                       updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')""",
                (key, value),
            )
            self.conn.commit()
        except sqlite3.OperationalError as exc:
            if "full" in str(exc).lower():
                raise StorageQuotaError(str(exc)) from exc
            raise StorageError(str(exc)) from exc
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc

    def remove(self, *keys: str) -> None:
        if not keys:
            return
        self.conn.executemany("DELETE FROM kv_store WHERE key = ?", [(k,) for k in keys])
        self.conn.commit()

    def keys(self) -> list[str]:
        return [row[0] for row in self.conn.execute("SELECT key FROM kv_store ORDER BY key")]

    def read_with_legacy(self, key: str, legacy_keys: Iterable[str]) -> Optional[str]:
        """Read ``key``, migrating the first populated legacy key into it.

        The legacy value is copied byte-for-byte and the legacy key removed.
        Nothing happens when the canonical key already holds a value.
        """
        current = self.get(key)
        if current is not None:
            return current

        for old in legacy_keys:
            value = self.get(old)
            if value is None:
                continue
            try:
                self.set(key, value)
            except StorageError as exc:
                logger.warning("Could not migrate %s to %s: %s", old, key, exc)
                return value
            self.remove(old)
            logger.info("Migrated legacy storage key %s → %s", old, key)
            return value
        return None

    # ── JSON helpers ────────────────────────────────────────────────

    def read_json(self, name: str, default: Any = None, migrate: bool = True) -> Any:
        """Parse the value stored under ``name``; malformed JSON yields ``default``."""
        key = self.key(name)
        raw = self.read_with_legacy(key, [self.legacy_key(name)]) if migrate else self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding malformed JSON under %s", key)
            return default

    def write_json(self, name: str, value: Any) -> None:
        self.set(self.key(name), json.dumps(value, ensure_ascii=False))

    def remove_name(self, name: str) -> None:
        """Remove both the canonical and the legacy key for ``name``."""
        self.remove(self.key(name), self.legacy_key(name))

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
