"""Damage aggregation: bounding boxes to severity and damage-type summary.

Each box is scored by the share of the frame it covers:

  area% < 1.5   → light
  area% < 4.0   → medium
  otherwise     → heavy

The dominant severity compares *summed area per severity*, not box counts,
so one large pothole outweighs many hairline cracks. The total damage
percent is a plain sum of box areas and therefore double-counts overlapping
boxes; severity badges downstream rely on that number as-is.
"""

from __future__ import annotations

import logging
import math
import sys
from dataclasses import dataclass, field
from typing import Optional

from roadster.core.models import (
    SEVERITY_LEVELS,
    AreaSummary,
    BoundingBoxPrediction,
    ClassBreakdown,
    ClassSummaryRow,
    DamageBucket,
    Severity,
    SeveritySummary,
)
from roadster.inference.payload import PLACEHOLDER_LABEL

logger = logging.getLogger("roadster.report.aggregator")

LIGHT_SEVERITY_MAX_PERCENT = 1.5
MEDIUM_SEVERITY_MAX_PERCENT = 4.0
DISTRIBUTION_EPSILON = 0.0001

_BUCKET_PRIORITY = (DamageBucket.POTHOLE, DamageBucket.CRACK, DamageBucket.RUTTING)


def classify_severity(area_percent: float) -> Severity:
    if area_percent < LIGHT_SEVERITY_MAX_PERCENT:
        return Severity.LIGHT
    if area_percent < MEDIUM_SEVERITY_MAX_PERCENT:
        return Severity.MEDIUM
    return Severity.HEAVY


def classify_bucket(label: str) -> DamageBucket:
    normalized = label.lower()
    for bucket in _BUCKET_PRIORITY:
        if bucket.value in normalized:
            return bucket
    return DamageBucket.OTHER


def _area_winner(area: dict[Severity, float]) -> Severity:
    light, medium, heavy = area[Severity.LIGHT], area[Severity.MEDIUM], area[Severity.HEAVY]
    if heavy >= medium and heavy >= light:
        return Severity.HEAVY
    if medium >= light:
        return Severity.MEDIUM
    return Severity.LIGHT


def dominant_severity_from_area(area: dict[Severity, float]) -> Severity:
    """Area-based winner; ``NONE`` when there is no area at all."""
    if sum(area.values()) <= 0:
        return Severity.NONE
    return _area_winner(area)


def box_area_percent(prediction: BoundingBoxPrediction, frame_area_px: float) -> float:
    if frame_area_px <= 0:
        return 0.0
    percent = prediction.area_px * 100 / frame_area_px
    return percent if math.isfinite(percent) else 100.0


@dataclass
class _ClassAccumulator:
    label: str
    count: int = 0
    total_area_percent: float = 0.0
    severity_area: dict[Severity, float] = field(
        default_factory=lambda: {level: 0.0 for level in SEVERITY_LEVELS}
    )


@dataclass
class DamageSummary:
    """Area, severity and damage-type figures of one inference cycle."""

    area: AreaSummary
    severity: SeveritySummary
    class_breakdown: ClassBreakdown


def _frame_area(frame_width: Optional[float], frame_height: Optional[float]) -> float:
    if frame_width is None or frame_height is None:
        return 0.0
    if frame_width <= 0 or frame_height <= 0:
        return 0.0
    area = frame_width * frame_height
    return area if math.isfinite(area) else 0.0


def summarize(
    predictions: list[BoundingBoxPrediction],
    frame_width: Optional[float],
    frame_height: Optional[float],
) -> DamageSummary:
    """Aggregate normalized predictions into a :class:`DamageSummary`."""
    frame_area_px = _frame_area(frame_width, frame_height)

    counts = {level: 0 for level in SEVERITY_LEVELS}
    area_by_severity = {level: 0.0 for level in SEVERITY_LEVELS}
    bucket_counts = {bucket: 0 for bucket in DamageBucket}
    classes: dict[str, _ClassAccumulator] = {}
    total_box_area_px = 0.0

    for prediction in predictions:
        total_box_area_px += prediction.area_px
        area_percent = box_area_percent(prediction, frame_area_px)
        severity = classify_severity(area_percent)
        counts[severity] += 1
        area_by_severity[severity] += area_percent

        label = prediction.label.strip().lower() or PLACEHOLDER_LABEL
        acc = classes.setdefault(label, _ClassAccumulator(label))
        acc.count += 1
        acc.total_area_percent += area_percent
        acc.severity_area[severity] += area_percent

        bucket_counts[classify_bucket(label)] += 1

    if not math.isfinite(total_box_area_px):
        total_box_area_px = sys.float_info.max
    total = sum(counts.values())
    total_percent = (
        min(100.0, total_box_area_px * 100 / frame_area_px) if frame_area_px > 0 else 0.0
    )

    distribution_base = max(DISTRIBUTION_EPSILON, sum(area_by_severity.values()))
    severity_distribution = {
        level: area_by_severity[level] * 100 / distribution_base for level in SEVERITY_LEVELS
    }
    dominant = Severity.NONE if total == 0 else _area_winner(area_by_severity)

    rows = [
        ClassSummaryRow(
            label=acc.label,
            count=acc.count,
            count_share_percent=acc.count * 100 / total if total else 0.0,
            total_area_percent=acc.total_area_percent,
            dominant_severity=dominant_severity_from_area(acc.severity_area),
        )
        for acc in classes.values()
    ]
    rows.sort(key=lambda row: row.count, reverse=True)

    bucket_distribution = {
        bucket: bucket_counts[bucket] * 100 / total if total else 0.0
        for bucket in DamageBucket
    }

    logger.debug(
        "Summarized %d detections: total=%.2f%% dominant=%s",
        total,
        total_percent,
        dominant.value,
    )

    return DamageSummary(
        area=AreaSummary(
            total_percent=total_percent,
            total_box_area_px=total_box_area_px,
            frame_area_px=frame_area_px,
        ),
        severity=SeveritySummary(
            dominant=dominant,
            counts=counts,
            distribution_percent=severity_distribution,
        ),
        class_breakdown=ClassBreakdown(
            counts=bucket_counts,
            distribution_percent=bucket_distribution,
            dominant_class=rows[0].label if rows else None,
            per_class=rows,
        ),
    )
