"""Report assembly: request metadata + damage summary → :class:`DamageReport`.

Also re-parses report dicts coming back from the wire or from older clients,
coercing every field so downstream consumers never see malformed values.
"""

from __future__ import annotations

from typing import Any, Optional

from roadster.core.models import (
    SEVERITY_LEVELS,
    AreaSummary,
    ClassBreakdown,
    ClassSummaryRow,
    DamageBucket,
    DamageReport,
    Evidence,
    GpsFix,
    Resolution,
    Severity,
    SeveritySummary,
)
from roadster.core.utils import (
    extract_mime_from_data_url,
    non_negative,
    parse_detected_at,
    parse_timestamp,
    read_object,
    read_string,
    to_finite_number,
)
from roadster.geo.spatial import is_valid_lat_lon
from roadster.report.aggregator import DamageSummary

DEFAULT_MIME = "image/jpeg"
DEFAULT_LOCATION_SOURCE = "gps"


def _first_present(source: dict, *names: str) -> Any:
    for name in names:
        if source.get(name) is not None:
            return source[name]
    return None


def parse_location(value: Any) -> Optional[GpsFix]:
    """Read a GPS fix, accepting ``lat``/``lng``/``lon``/``provider`` aliases.

    Out-of-range or non-finite coordinates make the whole fix absent.
    """
    if not isinstance(value, dict):
        return None

    latitude = to_finite_number(_first_present(value, "latitude", "lat"))
    longitude = to_finite_number(_first_present(value, "longitude", "lng", "lon"))
    if latitude is None or longitude is None or not is_valid_lat_lon(latitude, longitude):
        return None

    return GpsFix(
        latitude=latitude,
        longitude=longitude,
        accuracy=to_finite_number(value.get("accuracy")),
        altitude=to_finite_number(value.get("altitude")),
        heading=to_finite_number(value.get("heading")),
        speed=to_finite_number(value.get("speed")),
        timestamp=parse_timestamp(value.get("timestamp")),
        source=read_string(_first_present(value, "source", "provider"), DEFAULT_LOCATION_SOURCE),
    )


def parse_evidence(
    value: Any,
    raw_image: str = "",
    fallback_width: Optional[float] = None,
    fallback_height: Optional[float] = None,
) -> Evidence:
    """Capture metadata; missing source dimensions fall back to capture ones."""
    source = read_object(value)

    capture_width = to_finite_number(_first_present(source, "captureWidth", "frameWidth"))
    capture_height = to_finite_number(_first_present(source, "captureHeight", "frameHeight"))
    if capture_width is None:
        capture_width = fallback_width
    if capture_height is None:
        capture_height = fallback_height

    source_width = to_finite_number(source.get("sourceWidth"))
    source_height = to_finite_number(source.get("sourceHeight"))

    return Evidence(
        mime=read_string(source.get("mime")) or extract_mime_from_data_url(raw_image) or DEFAULT_MIME,
        quality=to_finite_number(source.get("quality")),
        capture=Resolution(capture_width, capture_height),
        source=Resolution(
            source_width if source_width is not None else capture_width,
            source_height if source_height is not None else capture_height,
        ),
    )


def build_report(
    summary: DamageSummary,
    detected_at: Any = None,
    location: Optional[GpsFix] = None,
    evidence: Optional[Evidence] = None,
) -> DamageReport:
    return DamageReport(
        area=summary.area,
        severity=summary.severity,
        class_breakdown=summary.class_breakdown,
        detected_at=parse_detected_at(detected_at),
        location=location,
        evidence=evidence or Evidence(),
    )


# ── Re-parsing ──────────────────────────────────────────────────────────


def _parse_severity(value: Any) -> SeveritySummary:
    source = read_object(value)
    counts = read_object(source.get("counts"))
    distribution = read_object(source.get("distributionPercent"))
    return SeveritySummary(
        dominant=Severity.coerce(source.get("dominant")),
        counts={level: int(non_negative(counts.get(level.value))) for level in SEVERITY_LEVELS},
        distribution_percent={
            level: non_negative(distribution.get(level.value)) for level in SEVERITY_LEVELS
        },
    )


def _parse_class_row(value: Any) -> ClassSummaryRow:
    row = read_object(value)
    label = row.get("label")
    return ClassSummaryRow(
        label=label if isinstance(label, str) else "",
        count=int(non_negative(row.get("count"))),
        count_share_percent=non_negative(row.get("countSharePercent")),
        total_area_percent=non_negative(row.get("totalAreaPercent")),
        dominant_severity=Severity.coerce(row.get("dominantSeverity")),
    )


def _parse_class_breakdown(value: Any) -> ClassBreakdown:
    source = read_object(value)
    counts = read_object(source.get("counts"))
    distribution = read_object(source.get("distributionPercent"))
    rows = source.get("perClass")
    dominant_class = source.get("dominantClass")
    return ClassBreakdown(
        counts={bucket: int(non_negative(counts.get(bucket.value))) for bucket in DamageBucket},
        distribution_percent={
            bucket: non_negative(distribution.get(bucket.value)) for bucket in DamageBucket
        },
        dominant_class=dominant_class if isinstance(dominant_class, str) else None,
        per_class=[_parse_class_row(row) for row in rows] if isinstance(rows, list) else [],
    )


def _parse_stored_evidence(value: dict) -> Evidence:
    capture = read_object(value.get("captureResolution"))
    source = read_object(value.get("sourceResolution"))
    mime = value.get("mime")
    return Evidence(
        mime=mime if isinstance(mime, str) and mime else DEFAULT_MIME,
        quality=to_finite_number(value.get("quality")),
        capture=Resolution(to_finite_number(capture.get("width")), to_finite_number(capture.get("height"))),
        source=Resolution(to_finite_number(source.get("width")), to_finite_number(source.get("height"))),
    )


def parse_report(value: Any) -> Optional[DamageReport]:
    """Rebuild a report from its dict form.

    Returns ``None`` unless the area, severity and evidence sections are all
    present; every number is clamped to ``>= 0`` and unknown severities
    become ``none``.
    """
    if not isinstance(value, dict):
        return None

    area = read_object(value.get("areaSummary"))
    severity = read_object(value.get("severity"))
    evidence = read_object(value.get("evidence"))
    if not area or not severity or not evidence:
        return None

    return DamageReport(
        area=AreaSummary(
            total_percent=non_negative(area.get("totalPercent")),
            total_box_area_px=non_negative(area.get("totalBoxAreaPx")),
            frame_area_px=non_negative(area.get("frameAreaPx")),
        ),
        severity=_parse_severity(severity),
        class_breakdown=_parse_class_breakdown(value.get("classBreakdown")),
        detected_at=parse_detected_at(value.get("detectedAt")),
        location=parse_location(value.get("location")),
        evidence=_parse_stored_evidence(evidence),
    )
