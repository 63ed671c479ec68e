"""Unit tests for server-side API-key validation state."""

import json

import pytest

from roadster.server.admin_state import AdminState, ValidationCacheEntry, parse_cache, parse_stats


@pytest.fixture
def state(tmp_dir):
    return AdminState(tmp_dir / ".data" / "roboflow-admin-stats.json")


class TestParsers:
    def test_parse_stats(self):
        stats = parse_stats({"invalidCount": "3", "lastInvalidAt": 1700000000000})
        assert stats.invalid_count == 3
        assert stats.last_invalid_at == 1700000000000

    def test_parse_stats_clamps(self):
        assert parse_stats({"invalidCount": -2}).invalid_count == 0
        assert parse_stats("nope") is None

    def test_parse_cache(self):
        entry = parse_cache({"key": "abc", "ok": True, "expiresAt": 10, "info": {"status": 200}})
        assert entry == ValidationCacheEntry("abc", True, 10, {"status": 200})

    def test_parse_cache_rejects_partial(self):
        assert parse_cache({"key": "abc", "ok": "yes", "expiresAt": 10}) is None
        assert parse_cache({"ok": True, "expiresAt": 10}) is None


class TestAdminState:
    def test_record_invalid(self, state):
        state.record_invalid(at=1234)
        state.record_invalid(at=5678)
        assert state.stats.invalid_count == 2
        assert state.snapshot()["stats"] == {"invalidCount": 2, "lastInvalidAt": 5678}

    def test_snapshot_without_invalids(self, state):
        snapshot = state.snapshot()
        assert snapshot["stats"] == {"invalidCount": 0}
        assert snapshot["cache"] is None
        assert snapshot["updatedAt"] > 0

    def test_merge_keeps_well_formed_parts(self, state):
        state.merge({"stats": {"invalidCount": 4}, "cache": {"key": "k"}})
        assert state.stats.invalid_count == 4
        assert state.cache is None

    def test_persist_and_load(self, state):
        state.set_cache(ValidationCacheEntry("fp", False, 99, {"status": 401}))
        state.record_invalid(at=1000)
        state.persist()

        on_disk = json.loads(state.stats_file.read_text())
        assert on_disk["stats"]["invalidCount"] == 1
        assert on_disk["cache"]["key"] == "fp"

        fresh = AdminState(state.stats_file)
        assert fresh.load()
        assert fresh.stats.invalid_count == 1
        assert fresh.cache.ok is False

    def test_persist_merges_payload(self, state):
        snapshot = state.persist({"stats": {"invalidCount": 7, "lastInvalidAt": 42}})
        assert snapshot["stats"] == {"invalidCount": 7, "lastInvalidAt": 42}

    def test_load_missing_file(self, state):
        assert state.load() is False

    def test_load_garbage_file(self, state):
        state.stats_file.parent.mkdir(parents=True)
        state.stats_file.write_text("{broken")
        assert state.read_persisted() is None
        assert state.load() is False

    def test_read_persisted_normalizes(self, state):
        state.stats_file.parent.mkdir(parents=True)
        state.stats_file.write_text(json.dumps({"stats": "bad", "cache": None}))
        persisted = state.read_persisted()
        assert persisted["stats"] == {"invalidCount": 0}
        assert persisted["cache"] is None
