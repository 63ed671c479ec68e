"""Tests for the Roadster CLI."""

import json

import httpx
import pytest
from click.testing import CliRunner

from roadster.cli import cli
from roadster.core.models import GpsFix
from roadster.storage.history import DetectionStore, create_record
from roadster.storage.kv import KeyValueStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def db_path(tmp_dir):
    return tmp_dir / "cli.db"


def _seed(db_path, count=2):
    kv = KeyValueStore(db_path)
    store = DetectionStore(kv)
    for index in range(count):
        record = create_record(None, "ws/model", str(index + 1))
        record.location = GpsFix(latitude=-6.2 + index, longitude=106.8)
        record.spatial = None
        store.append(record)
    kv.close()


class TestCLI:
    def test_help(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "Roadster" in result.output

    def test_version(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "version" in result.output.lower()

    def test_no_subcommand_shows_help(self, runner):
        result = runner.invoke(cli, [])
        assert result.exit_code == 0
        assert "detect" in result.output

    def test_detect_help(self, runner):
        result = runner.invoke(cli, ["detect", "--help"])
        assert result.exit_code == 0
        assert "--model-id" in result.output

    def test_serve_help(self, runner):
        result = runner.invoke(cli, ["serve", "--help"])
        assert result.exit_code == 0


class TestHistoryCommands:
    def test_empty_history(self, runner, db_path):
        result = runner.invoke(cli, ["--db", str(db_path), "history"])
        assert result.exit_code == 0
        assert "No detections stored." in result.output

    def test_lists_history(self, runner, db_path):
        _seed(db_path)
        result = runner.invoke(cli, ["--db", str(db_path), "history", "--limit", "1"])
        assert result.exit_code == 0
        lines = [line for line in result.output.splitlines() if line.strip()]
        assert len(lines) == 1
        assert "-5.20000,106.80000" in lines[0]

    def test_export_geojson(self, runner, db_path, tmp_dir):
        _seed(db_path)
        output = tmp_dir / "detections.geojson"
        result = runner.invoke(cli, ["--db", str(db_path), "export-geojson", str(output)])
        assert result.exit_code == 0
        collection = json.loads(output.read_text())
        assert collection["type"] == "FeatureCollection"
        assert len(collection["features"]) == 2

    def test_clear_history(self, runner, db_path):
        _seed(db_path)
        result = runner.invoke(cli, ["--db", str(db_path), "clear-history", "--yes"])
        assert result.exit_code == 0
        assert "No detections stored." in runner.invoke(cli, ["--db", str(db_path), "history"]).output


class TestSessionCommand:
    def test_no_session(self, runner, db_path):
        result = runner.invoke(cli, ["--db", str(db_path), "session"])
        assert result.exit_code == 0
        assert "No admin session." in result.output

    def test_sign_in_show_and_clear(self, runner, db_path):
        result = runner.invoke(cli, ["--db", str(db_path), "session", "--user", " Ops "])
        assert result.exit_code == 0
        assert "Signed in as ops" in result.output

        shown = runner.invoke(cli, ["--db", str(db_path), "session"])
        assert shown.output.startswith("ops (since ")

        runner.invoke(cli, ["--db", str(db_path), "session", "--clear"])
        assert "No admin session." in runner.invoke(cli, ["--db", str(db_path), "session"]).output

    def test_blank_user(self, runner, db_path):
        result = runner.invoke(cli, ["--db", str(db_path), "session", "--user", "  "])
        assert result.exit_code == 1


class TestDetectCommand:
    def test_missing_api_key(self, runner, db_path, tmp_dir):
        image = tmp_dir / "frame.jpg"
        image.write_bytes(b"\xff\xd8\xff\xe0fakejpeg")
        result = runner.invoke(
            cli, ["--db", str(db_path), "detect", str(image), "--model-id", "ws/m", "--model-version", "1"]
        )
        assert result.exit_code == 1
        assert "ROBOFLOW_API_KEY" in result.output


class TestSyncStats:
    def _stats_file(self, tmp_dir):
        path = tmp_dir / "stats.json"
        path.write_text(json.dumps({"stats": {"invalidCount": 2}, "cache": None}))
        return path

    def test_missing_file(self, runner, tmp_dir):
        result = runner.invoke(cli, ["sync-stats", "--stats-file", str(tmp_dir / "none.json")])
        assert result.exit_code == 0
        assert "nothing to sync" in result.output

    def test_no_endpoint(self, runner, tmp_dir):
        result = runner.invoke(cli, ["sync-stats", "--stats-file", str(self._stats_file(tmp_dir))])
        assert result.exit_code == 0
        assert "No SYNC_ROBOFLOW_ENDPOINT" in result.output

    def test_dry_run(self, runner, tmp_dir, monkeypatch):
        monkeypatch.setenv("SYNC_ROBOFLOW_ENDPOINT", "https://admin.example/api/admin/roboflow-stats")
        result = runner.invoke(
            cli, ["sync-stats", "--dry-run", "--stats-file", str(self._stats_file(tmp_dir))]
        )
        assert result.exit_code == 0
        assert "Dry run" in result.output

    def test_posts_with_secret(self, runner, tmp_dir, monkeypatch):
        sent = {}

        def fake_post(url, json=None, headers=None, timeout=None):
            sent.update(url=url, json=json, headers=headers)
            return httpx.Response(200, text='{"ok": true}')

        monkeypatch.setenv("SYNC_ROBOFLOW_ENDPOINT", "https://admin.example/sync")
        monkeypatch.setenv("ROBOFLOW_ENDPOINT_SECRET", "s3cret")
        monkeypatch.setattr(httpx, "post", fake_post)
        result = runner.invoke(cli, ["sync-stats", "--stats-file", str(self._stats_file(tmp_dir))])

        assert result.exit_code == 0
        assert "Sync successful" in result.output
        assert sent["json"]["stats"]["invalidCount"] == 2
        assert sent["headers"] == {"x-roboflow-endpoint-secret": "s3cret"}

    def test_http_failure_exit_code(self, runner, tmp_dir, monkeypatch):
        monkeypatch.setenv("SYNC_ROBOFLOW_ENDPOINT", "https://admin.example/sync")
        monkeypatch.setattr(httpx, "post", lambda *a, **k: httpx.Response(500, text="boom"))
        result = runner.invoke(cli, ["sync-stats", "--stats-file", str(self._stats_file(tmp_dir))])
        assert result.exit_code == 3

    def test_transport_failure_exit_code(self, runner, tmp_dir, monkeypatch):
        def offline(*args, **kwargs):
            raise httpx.ConnectError("offline")

        monkeypatch.setenv("SYNC_ROBOFLOW_ENDPOINT", "https://admin.example/sync")
        monkeypatch.setattr(httpx, "post", offline)
        result = runner.invoke(cli, ["sync-stats", "--stats-file", str(self._stats_file(tmp_dir))])
        assert result.exit_code == 1
