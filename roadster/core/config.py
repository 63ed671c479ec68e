"""Roadster configuration: rate limits, upstream, storage and GIS settings."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class RateLimitConfig:
    """Per-client admission control for the inference endpoint."""

    window_ms: int = 60_000
    max_requests: int = 30
    min_interval_ms: int = 1_500
    max_records: int = 1_000


@dataclass(frozen=True)
class UpstreamConfig:
    """Inference upstream settings."""

    legacy_detect_host: str = "https://detect.roboflow.com"
    workflow_host: str = "serverless.roboflow.com"
    api_validation_url: str = "https://api.roboflow.com/"
    timeout_seconds: float = 30.0
    max_image_base64_length: int = 1_500_000
    max_echoed_body_chars: int = 2_000


@dataclass(frozen=True)
class StorageConfig:
    """Device-local key-value storage settings."""

    db_path: Path = Path("roadster_local.db")
    key_prefix: str = "roadster"
    legacy_key_prefix: str = "road-detect"
    key_version: str = "v1"
    max_value_bytes: int = 5_000_000
    history_max_items: int = 120
    stats_write_debounce_seconds: float = 2.0


@dataclass(frozen=True)
class GisConfig:
    """Map layer defaults."""

    default_crs: str = "EPSG:3857"
    boundary_geojson_url: str = "/geo/indonesia-simplified.geojson"
    wms_format: str = "image/png"
    fetch_timeout_seconds: float = 15.0


@dataclass(frozen=True)
class ServerConfig:
    """HTTP surface settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    stats_file: Path = Path(".data") / "roboflow-admin-stats.json"
    api_key_validation_ttl_ms: int = 60_000


@dataclass(frozen=True)
class RoadsterConfig:
    """Top-level Roadster configuration."""

    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    gis: GisConfig = field(default_factory=GisConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


DEFAULT_CONFIG = RoadsterConfig()


# ── Environment ─────────────────────────────────────────────────────────


def env_str(name: str, default: str = "") -> str:
    """Read a trimmed environment variable."""
    return (os.getenv(name) or default).strip()


def env_flag(name: str) -> bool:
    return env_str(name).lower() in {"1", "true", "yes", "on"}


def env_int(name: str, default: int) -> int:
    raw = env_str(name)
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default
