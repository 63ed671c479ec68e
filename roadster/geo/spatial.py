"""Spatial encoding of detection locations.

Produces one canonical WGS84 point in three equivalent encodings:

  WKT      POINT(<lon> <lat>)
  EWKT     SRID=4326;POINT(<lon> <lat>)
  GeoJSON  {"type": "Point", "coordinates": [lon, lat]}

Coordinates in the text encodings carry exactly 8 decimal places.
"""

from __future__ import annotations

import math
from typing import Any, Optional

from shapely import wkt as shapely_wkt
from shapely.errors import ShapelyError
from shapely.geometry import Point

from roadster.core.models import SOURCE_CRS, SRID_WGS84, GpsFix, Severity, SpatialRecord
from roadster.core.utils import read_object, to_finite_number

COORDINATE_DECIMALS = 8
EWKT_PREFIX = f"SRID={SRID_WGS84};"


def is_valid_lat_lon(latitude: Any, longitude: Any) -> bool:
    if not isinstance(latitude, (int, float)) or not isinstance(longitude, (int, float)):
        return False
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        return False
    return -90 <= latitude <= 90 and -180 <= longitude <= 180


def format_coordinate(value: float) -> str:
    return f"{value:.{COORDINATE_DECIMALS}f}"


def point_wkt(latitude: float, longitude: float) -> str:
    return f"POINT({format_coordinate(longitude)} {format_coordinate(latitude)})"


def encode_point(
    latitude: Any,
    longitude: Any,
    properties: Optional[dict[str, Any]] = None,
) -> Optional[SpatialRecord]:
    """Encode a fix as a :class:`SpatialRecord`; ``None`` for invalid input."""
    lat = to_finite_number(latitude)
    lon = to_finite_number(longitude)
    if lat is None or lon is None or not is_valid_lat_lon(lat, lon):
        return None

    wkt = point_wkt(lat, lon)
    return SpatialRecord(
        latitude=lat,
        longitude=lon,
        wkt=wkt,
        ewkt=EWKT_PREFIX + wkt,
        properties=dict(properties or {}),
    )


def feature_properties(
    record_id: str,
    detected_at: str,
    created_at: str,
    severity: Severity,
    damage_percent: float,
    dominant_class: Optional[str],
    model_id: str,
    model_version: str,
) -> dict[str, Any]:
    """Report metadata embedded in each map Feature."""
    return {
        "id": record_id,
        "detectedAt": detected_at,
        "createdAt": created_at,
        "severity": severity.value,
        "damagePercent": damage_percent,
        "dominantClass": dominant_class,
        "modelId": model_id,
        "modelVersion": model_version,
    }


def create_spatial_record(
    location: Optional[GpsFix],
    record_id: str,
    detected_at: str,
    created_at: str,
    severity: Severity,
    damage_percent: float,
    dominant_class: Optional[str],
    model_id: str,
    model_version: str,
) -> Optional[SpatialRecord]:
    if location is None:
        return None
    return encode_point(
        location.latitude,
        location.longitude,
        feature_properties(
            record_id,
            detected_at,
            created_at,
            severity,
            damage_percent,
            dominant_class,
            model_id,
            model_version,
        ),
    )


def parse_ewkt(text: str) -> Optional[tuple[float, float]]:
    """Parse an (E)WKT point back into ``(latitude, longitude)``."""
    if not isinstance(text, str):
        return None
    body = text.strip()
    if body.upper().startswith("SRID="):
        srid, _, body = body.partition(";")
        if srid.strip().upper() != EWKT_PREFIX.rstrip(";").upper():
            return None
    try:
        geometry = shapely_wkt.loads(body)
    except (ShapelyError, ValueError):
        return None
    if not isinstance(geometry, Point) or geometry.is_empty:
        return None
    return geometry.y, geometry.x


def _point_coordinates(geometry: Any) -> Optional[tuple[float, float]]:
    geometry = read_object(geometry)
    coordinates = geometry.get("coordinates")
    if geometry.get("type") != "Point" or not isinstance(coordinates, list):
        return None
    if len(coordinates) != 2:
        return None
    lon, lat = coordinates
    if isinstance(lon, bool) or isinstance(lat, bool) or not is_valid_lat_lon(lat, lon):
        return None
    return float(lat), float(lon)


def is_spatial_record(value: Any) -> bool:
    """Structural check for a persisted spatial record."""
    source = read_object(value)
    if source.get("sourceCrs") != SOURCE_CRS:
        return False
    postgis = read_object(source.get("postgis"))
    if postgis.get("srid") != SRID_WGS84:
        return False
    coordinates = _point_coordinates(postgis.get("geojson"))
    if coordinates is None:
        return False
    ewkt = postgis.get("ewkt")
    if not isinstance(ewkt, str) or not ewkt.startswith(EWKT_PREFIX):
        return False
    parsed = parse_ewkt(ewkt)
    if parsed is None:
        return False
    # EWKT and GeoJSON must describe the same point at stored precision.
    return all(
        format_coordinate(a) == format_coordinate(b) for a, b in zip(parsed, coordinates)
    )


def spatial_record_from_dict(value: Any) -> Optional[SpatialRecord]:
    """Rebuild a persisted spatial record, or ``None`` if it is malformed."""
    if not is_spatial_record(value):
        return None
    postgis = value["postgis"]
    lat, lon = _point_coordinates(postgis["geojson"])
    feature = read_object(value.get("feature"))
    wkt = postgis.get("wkt")
    return SpatialRecord(
        latitude=lat,
        longitude=lon,
        wkt=wkt if isinstance(wkt, str) and wkt.strip() else point_wkt(lat, lon),
        ewkt=postgis["ewkt"],
        properties=dict(read_object(feature.get("properties"))),
    )
