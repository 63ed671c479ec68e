"""GIS aggregation pipeline.

Turns the detection history into a map-ready FeatureCollection and loads the
auxiliary layers (country boundary, operator WFS) with a three-step
degradation path:

  live fetch → last good cached snapshot → static default (boundary only)

A newer load for the same layer supersedes any load still in flight; the
superseded result is discarded without touching the cache.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from roadster.core.config import DEFAULT_CONFIG, GisConfig
from roadster.core.exceptions import LayerFetchError
from roadster.core.models import GeoJsonCacheEntry, StoredDetectionRecord
from roadster.core.utils import utc_now_iso
from roadster.geo.spatial import feature_properties, is_valid_lat_lon
from roadster.storage.geojson_cache import GeoJsonCache

logger = logging.getLogger("roadster.geo.pipeline")

GEOJSON_TYPES = frozenset(
    {"FeatureCollection", "Feature", "Polygon", "MultiPolygon", "GeometryCollection"}
)

BOUNDARY_FALLBACK_GEOJSON: dict = {
    "type": "FeatureCollection",
    "features": [
        {
            "type": "Feature",
            "properties": {"name": "Indonesia (Fallback Boundary)"},
            "geometry": {
                "type": "Polygon",
                "coordinates": [
                    [
                        [95.0, -11.5],
                        [141.5, -11.5],
                        [141.5, 6.5],
                        [95.0, 6.5],
                        [95.0, -11.5],
                    ]
                ],
            },
        }
    ],
}


# ── Detection Layer ─────────────────────────────────────────────────────


def _pick_coordinates(record: StoredDetectionRecord) -> Optional[list[float]]:
    if record.spatial is not None:
        lat, lon = record.spatial.latitude, record.spatial.longitude
        if is_valid_lat_lon(lat, lon):
            return [lon, lat]

    if record.location is not None:
        lat, lon = record.location.latitude, record.location.longitude
        if is_valid_lat_lon(lat, lon):
            return [lon, lat]
    return None


def build_feature_collection(records: Iterable[StoredDetectionRecord]) -> dict:
    """One Point feature per record with usable coordinates."""
    features = []
    for record in records:
        coordinates = _pick_coordinates(record)
        if coordinates is None:
            continue

        properties = feature_properties(
            record.id,
            record.detected_at,
            record.created_at,
            record.severity,
            record.damage_percent,
            record.dominant_class,
            record.model_id,
            record.model_version,
        )
        properties["totalDetections"] = record.total_detections
        features.append(
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": coordinates},
                "properties": properties,
            }
        )

    return {"type": "FeatureCollection", "features": features}


# ── GeoJSON Helpers ─────────────────────────────────────────────────────


def is_geojson_like(value: Any) -> bool:
    return isinstance(value, dict) and value.get("type") in GEOJSON_TYPES


def count_geojson_features(value: Any) -> int:
    if not is_geojson_like(value):
        return 0
    if value["type"] == "FeatureCollection" and isinstance(value.get("features"), list):
        return len(value["features"])
    if value["type"] == "Feature":
        return 1
    return 0


def build_wfs_request_url(raw_url: str) -> str:
    """Add the GetFeature query parameters a WFS endpoint needs, keeping any set."""
    text = raw_url.strip()
    if not text:
        return ""

    parts = urlsplit(text)
    if not parts.scheme or not parts.netloc:
        return text

    query = parse_qsl(parts.query, keep_blank_values=True)
    present = {name for name, _ in query}
    for name, value in (
        ("service", "WFS"),
        ("request", "GetFeature"),
        ("outputFormat", "application/json"),
        ("srsName", "EPSG:4326"),
    ):
        if name not in present:
            query.append((name, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


# ── Layer Loader ────────────────────────────────────────────────────────


class LayerKind(Enum):
    BOUNDARY = "boundary"
    WFS = "wfs"


class LayerStatus(Enum):
    LIVE = "live"
    CACHED = "cached"
    FALLBACK = "fallback"
    FAILED = "failed"
    SUPERSEDED = "superseded"


@dataclass
class LayerResult:
    """Outcome of one layer load."""

    status: LayerStatus
    data: Any = None
    source: str = ""
    fetched_at: Optional[str] = None
    error: str = ""

    @property
    def feature_count(self) -> int:
        return count_geojson_features(self.data)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "source": self.source,
            "fetchedAt": self.fetched_at,
            "featureCount": self.feature_count,
            "error": self.error or None,
            "data": self.data,
        }


class LayerLoader:
    """Loads auxiliary GIS layers with cache and fallback.

    Usage::

        loader = LayerLoader(cache)
        result = await loader.load(LayerKind.BOUNDARY, url)
    """

    def __init__(
        self,
        cache: GeoJsonCache,
        config: GisConfig = DEFAULT_CONFIG.gis,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        base_url: str = "",
    ):
        self.cache = cache
        self.config = config
        self._transport = transport
        self._base_url = base_url
        self._generations: dict[LayerKind, int] = {kind: 0 for kind in LayerKind}
        self._lock = threading.Lock()

    def _begin(self, layer: LayerKind) -> int:
        with self._lock:
            self._generations[layer] += 1
            return self._generations[layer]

    def is_current(self, layer: LayerKind, token: int) -> bool:
        with self._lock:
            return self._generations[layer] == token

    async def fetch(self, url: str) -> Any:
        """Fetch and validate one GeoJSON document."""
        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=httpx.Timeout(self.config.fetch_timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers={"Cache-Control": "no-store"})
        except httpx.HTTPError as exc:
            raise LayerFetchError(f"Cannot reach {url}: {type(exc).__name__}") from exc

        if not response.is_success:
            raise LayerFetchError(f"HTTP {response.status_code} from {url}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise LayerFetchError(f"{url} did not return JSON") from exc
        if not is_geojson_like(payload):
            raise LayerFetchError(f"{url} did not return GeoJSON")
        return payload

    async def load(self, layer: LayerKind, url: str) -> LayerResult:
        token = self._begin(layer)
        source_url = url.strip()
        if layer is LayerKind.WFS:
            source_url = build_wfs_request_url(source_url)
        elif not source_url:
            source_url = self.config.boundary_geojson_url

        error = ""
        try:
            if not source_url:
                raise LayerFetchError("No source URL configured")
            payload = await self.fetch(source_url)
        except LayerFetchError as exc:
            error = str(exc)
            payload = None

        if not self.is_current(layer, token):
            logger.debug("Discarding superseded %s load of %s", layer.value, source_url)
            return LayerResult(LayerStatus.SUPERSEDED, source=source_url)

        if payload is not None:
            fetched_at = utc_now_iso()
            result = self.cache.write(layer.value, GeoJsonCacheEntry(source_url, fetched_at, payload))
            if not result.ok:
                logger.warning("Could not cache %s layer: %s", layer.value, result.message)
            logger.info(
                "Loaded %s layer from %s (%d features)",
                layer.value,
                source_url,
                count_geojson_features(payload),
            )
            return LayerResult(LayerStatus.LIVE, payload, source_url, fetched_at)

        logger.warning("Live %s layer unavailable: %s", layer.value, error)
        cached = self.cache.read(layer.value)
        if cached is not None and is_geojson_like(cached.data):
            return LayerResult(
                LayerStatus.CACHED, cached.data, cached.source_url, cached.fetched_at, error
            )

        if layer is LayerKind.BOUNDARY:
            return LayerResult(LayerStatus.FALLBACK, BOUNDARY_FALLBACK_GEOJSON, "fallback", error=error)
        return LayerResult(LayerStatus.FAILED, source=source_url, error=error)
