"""Core data models for the Roadster pipeline.

Defines the data structures that flow through the system:
  Upstream payload → BoundingBoxPrediction → DamageReport
  → StoredDetectionRecord (+ SpatialRecord) → GeoJSON layers

Every model exposes ``to_dict()`` returning the camelCase JSON shape used on
the wire and in local storage.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

SRID_WGS84 = 4326
SOURCE_CRS = "EPSG:4326"

# ── Enums ───────────────────────────────────────────────────────────────


class Severity(Enum):
    """Severity of a single box or of a whole report, by area percent."""

    LIGHT = "light"
    MEDIUM = "medium"
    HEAVY = "heavy"
    NONE = "none"   # nothing detected

    @classmethod
    def coerce(cls, value: Any) -> "Severity":
        """Map any stored value to a member, defaulting to ``NONE``."""
        if isinstance(value, Severity):
            return value
        if isinstance(value, str):
            for member in cls:
                if member.value == value.strip().lower():
                    return member
        return cls.NONE


SEVERITY_LEVELS = (Severity.LIGHT, Severity.MEDIUM, Severity.HEAVY)


class DamageBucket(Enum):
    """Damage-type bucket derived from the model's class label."""

    POTHOLE = "pothole"
    CRACK = "crack"
    RUTTING = "rutting"
    OTHER = "other"


class EndpointVariant(Enum):
    """Upstream request contract."""

    WORKFLOW = "workflow"
    DETECT = "detect"


# ── Predictions ─────────────────────────────────────────────────────────


@dataclass
class BoundingBoxPrediction:
    """One box in source-frame pixel coordinates (x/y are the box centre)."""

    label: str
    width: float
    height: float
    x: float = 0.0
    y: float = 0.0
    confidence: Optional[float] = None

    @property
    def area_px(self) -> float:
        return self.width * self.height


# ── Location ────────────────────────────────────────────────────────────


@dataclass
class GpsFix:
    """A single validated geolocation sample."""

    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    altitude: Optional[float] = None
    heading: Optional[float] = None
    speed: Optional[float] = None
    timestamp: Optional[str] = None
    source: str = "gps"

    def to_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "altitude": self.altitude,
            "heading": self.heading,
            "speed": self.speed,
            "timestamp": self.timestamp,
            "source": self.source,
        }

    def to_record_dict(self) -> dict:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "accuracy": self.accuracy,
            "timestamp": self.timestamp,
            "source": self.source,
        }


# ── Report ──────────────────────────────────────────────────────────────


@dataclass
class Resolution:
    width: Optional[float] = None
    height: Optional[float] = None

    def to_dict(self) -> dict:
        return {"width": self.width, "height": self.height}


@dataclass
class Evidence:
    """Capture metadata for the frame a report was computed from."""

    mime: str = "image/jpeg"
    quality: Optional[float] = None
    capture: Resolution = field(default_factory=Resolution)
    source: Resolution = field(default_factory=Resolution)

    @property
    def is_full_hd_source(self) -> Optional[bool]:
        width, height = self.source.width, self.source.height
        if width is None or height is None:
            return None
        return max(width, height) >= 1920 and min(width, height) >= 1080

    def to_dict(self) -> dict:
        return {
            "mime": self.mime,
            "quality": self.quality,
            "captureResolution": self.capture.to_dict(),
            "sourceResolution": self.source.to_dict(),
            "isFullHdSource": self.is_full_hd_source,
        }

    def to_record_dict(self) -> dict:
        """Flat form kept in the detection history."""
        return {
            "mime": self.mime,
            "quality": self.quality,
            "captureWidth": self.capture.width,
            "captureHeight": self.capture.height,
            "sourceWidth": self.source.width,
            "sourceHeight": self.source.height,
            "isFullHdSource": self.is_full_hd_source,
        }


@dataclass
class AreaSummary:
    total_percent: float = 0.0
    total_box_area_px: float = 0.0
    frame_area_px: float = 0.0

    def to_dict(self) -> dict:
        return {
            "totalPercent": self.total_percent,
            "totalBoxAreaPx": self.total_box_area_px,
            "frameAreaPx": self.frame_area_px,
        }


@dataclass
class SeveritySummary:
    dominant: Severity = Severity.NONE
    counts: dict[Severity, int] = field(
        default_factory=lambda: {level: 0 for level in SEVERITY_LEVELS}
    )
    distribution_percent: dict[Severity, float] = field(
        default_factory=lambda: {level: 0.0 for level in SEVERITY_LEVELS}
    )

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict:
        counts = {level.value: self.counts.get(level, 0) for level in SEVERITY_LEVELS}
        counts["total"] = self.total
        return {
            "dominant": self.dominant.value,
            "counts": counts,
            "distributionPercent": {
                level.value: self.distribution_percent.get(level, 0.0)
                for level in SEVERITY_LEVELS
            },
        }


@dataclass
class ClassSummaryRow:
    label: str
    count: int
    count_share_percent: float
    total_area_percent: float
    dominant_severity: Severity

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "count": self.count,
            "countSharePercent": self.count_share_percent,
            "totalAreaPercent": self.total_area_percent,
            "dominantSeverity": self.dominant_severity.value,
        }


@dataclass
class ClassBreakdown:
    counts: dict[DamageBucket, int] = field(
        default_factory=lambda: {bucket: 0 for bucket in DamageBucket}
    )
    distribution_percent: dict[DamageBucket, float] = field(
        default_factory=lambda: {bucket: 0.0 for bucket in DamageBucket}
    )
    dominant_class: Optional[str] = None
    per_class: list[ClassSummaryRow] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    def to_dict(self) -> dict:
        counts = {bucket.value: self.counts.get(bucket, 0) for bucket in DamageBucket}
        counts["total"] = self.total
        return {
            "counts": counts,
            "distributionPercent": {
                bucket.value: self.distribution_percent.get(bucket, 0.0)
                for bucket in DamageBucket
            },
            "dominantClass": self.dominant_class,
            "perClass": [row.to_dict() for row in self.per_class],
        }


@dataclass
class DamageReport:
    """Canonical output of one inference cycle."""

    area: AreaSummary
    severity: SeveritySummary
    class_breakdown: ClassBreakdown
    detected_at: str
    location: Optional[GpsFix] = None
    evidence: Evidence = field(default_factory=Evidence)

    def to_dict(self) -> dict:
        return {
            "areaSummary": self.area.to_dict(),
            "severity": self.severity.to_dict(),
            "classBreakdown": self.class_breakdown.to_dict(),
            "location": self.location.to_dict() if self.location else None,
            "detectedAt": self.detected_at,
            "evidence": self.evidence.to_dict(),
        }


# ── Spatial ─────────────────────────────────────────────────────────────


@dataclass
class SpatialRecord:
    """PostGIS-ready point geometry plus a self-describing GeoJSON Feature."""

    latitude: float
    longitude: float
    wkt: str
    ewkt: str
    properties: dict[str, Any] = field(default_factory=dict)
    srid: int = SRID_WGS84

    @property
    def coordinates(self) -> list[float]:
        return [self.longitude, self.latitude]

    def geometry(self) -> dict:
        return {"type": "Point", "coordinates": self.coordinates}

    def to_dict(self) -> dict:
        return {
            "sourceCrs": SOURCE_CRS,
            "postgis": {
                "srid": self.srid,
                "wkt": self.wkt,
                "ewkt": self.ewkt,
                "geojson": self.geometry(),
            },
            "feature": {
                "type": "Feature",
                "geometry": self.geometry(),
                "properties": dict(self.properties),
            },
        }


# ── Stored Record ───────────────────────────────────────────────────────


@dataclass
class StoredDetectionRecord:
    """One entry of the device-local detection history."""

    id: str
    created_at: str
    model_id: str
    model_version: str
    detected_at: str
    api_message: str = ""
    api_duration_ms: Optional[float] = None
    damage_percent: float = 0.0
    severity: Severity = Severity.NONE
    total_detections: float = 0
    dominant_class: Optional[str] = None
    class_counts: dict[str, float] = field(default_factory=dict)
    class_distribution: dict[str, float] = field(default_factory=dict)
    location: Optional[GpsFix] = None
    evidence: Evidence = field(default_factory=Evidence)
    spatial: Optional[SpatialRecord] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "createdAt": self.created_at,
            "modelId": self.model_id,
            "modelVersion": self.model_version,
            "apiMessage": self.api_message,
            "apiDurationMs": self.api_duration_ms,
            "damagePercent": self.damage_percent,
            "severity": self.severity.value,
            "totalDetections": self.total_detections,
            "dominantClass": self.dominant_class,
            "classCounts": dict(self.class_counts),
            "classDistribution": dict(self.class_distribution),
            "location": self.location.to_record_dict() if self.location else None,
            "detectedAt": self.detected_at,
            "evidence": self.evidence.to_record_dict(),
            "spatial": self.spatial.to_dict() if self.spatial else None,
        }


# ── Settings & Caches ───────────────────────────────────────────────────


@dataclass
class GisMapSettings:
    """Operator-editable map configuration."""

    crs: str = "EPSG:3857"
    show_detection_points: bool = True
    show_boundary: bool = True
    boundary_geojson_url: str = "/geo/indonesia-simplified.geojson"
    wms_enabled: bool = False
    wms_url: str = ""
    wms_layers: str = ""
    wms_format: str = "image/png"
    wms_transparent: bool = True
    wfs_enabled: bool = False
    wfs_url: str = ""

    def to_dict(self) -> dict:
        return {
            "crs": self.crs,
            "showDetectionPoints": self.show_detection_points,
            "showBoundary": self.show_boundary,
            "boundaryGeoJsonUrl": self.boundary_geojson_url,
            "wmsEnabled": self.wms_enabled,
            "wmsUrl": self.wms_url,
            "wmsLayers": self.wms_layers,
            "wmsFormat": self.wms_format,
            "wmsTransparent": self.wms_transparent,
            "wfsEnabled": self.wfs_enabled,
            "wfsUrl": self.wfs_url,
        }


@dataclass
class GeoJsonCacheEntry:
    """Last good snapshot of an auxiliary layer."""

    source_url: str
    fetched_at: str
    data: Any = None

    def to_dict(self) -> dict:
        return {
            "sourceUrl": self.source_url,
            "fetchedAt": self.fetched_at,
            "data": self.data,
        }


@dataclass
class AdminSession:
    username: str
    logged_in_at: str

    def to_dict(self) -> dict:
        return {"username": self.username, "loggedInAt": self.logged_in_at}


@dataclass
class StoreResult:
    """Outcome of a store write; failures carry a user-facing message."""

    ok: bool
    total: Optional[int] = None
    message: str = ""
