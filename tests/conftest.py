"""Shared test fixtures for the Roadster test suite."""

import tempfile
from pathlib import Path

import pytest

from roadster.core.config import DEFAULT_CONFIG
from roadster.storage.kv import KeyValueStore

_ENV_VARS = (
    "ROBOFLOW_API_KEY",
    "ROBOFLOW_MODEL_ID",
    "ROBOFLOW_MODEL_VERSION",
    "ROBOFLOW_INFERENCE_ENDPOINT",
    "ROBOFLOW_ENDPOINT_SECRET",
    "SYNC_ROBOFLOW_SECRET",
    "SYNC_ROBOFLOW_ENDPOINT",
    "ROBOFLOW_ALLOWED_ORIGINS",
    "ROBOFLOW_VALIDATE_API_KEY",
    "ROBOFLOW_STATS_ALLOW_TRUSTED_CLIENT",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's environment out of the tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def tmp_dir():
    """Create a temporary directory, cleaned up after test."""
    with tempfile.TemporaryDirectory(prefix="roadster_test_") as d:
        yield Path(d)


@pytest.fixture
def config():
    return DEFAULT_CONFIG


@pytest.fixture
def kv(tmp_dir):
    store = KeyValueStore(tmp_dir / "local.db")
    yield store
    store.close()


@pytest.fixture
def sample_predictions():
    """Upstream predictions for a 1000x1000 frame."""
    return [
        {"class": "Pothole", "x": 100, "y": 100, "width": 100, "height": 100, "confidence": 0.9},
        {"class": "crack", "x": 500, "y": 500, "width": 100, "height": 50, "confidence": 0.7},
        {"class": "pothole", "x": 700, "y": 700, "width": 300, "height": 200, "confidence": 0.8},
    ]


@pytest.fixture
def upstream_body(sample_predictions):
    return {
        "time": 0.12,
        "image": {"width": 1000, "height": 1000},
        "predictions": sample_predictions,
    }
