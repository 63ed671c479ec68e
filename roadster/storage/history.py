"""Detection history store.

A capacity-bounded, most-recent-first list of detection records kept as one
JSON array in the key-value store. Reads never raise: each stored entry is
coerced field by field, so a corrupted or older-format history still loads.
"""

from __future__ import annotations

import logging
import random
import string
import threading
import time
from typing import Any, Optional, Union

from roadster.core.config import DEFAULT_CONFIG, StorageConfig
from roadster.core.exceptions import StorageError, StorageQuotaError
from roadster.core.models import (
    DamageBucket,
    DamageReport,
    Evidence,
    GpsFix,
    Resolution,
    Severity,
    StoredDetectionRecord,
    StoreResult,
)
from roadster.core.utils import read_object, read_string, to_finite_number, utc_now_iso
from roadster.geo.spatial import (
    create_spatial_record,
    is_valid_lat_lon,
    spatial_record_from_dict,
)
from roadster.report.builder import parse_report
from roadster.storage.kv import DETECTION_HISTORY, KeyValueStore

logger = logging.getLogger("roadster.storage.history")

DEFAULT_MODEL_ID = "unknown-model"
DEFAULT_MODEL_VERSION = "unknown"
DEFAULT_API_MESSAGE = "Detection processed successfully."

QUOTA_MESSAGE = "Local storage is full. Clear part of the detection history."
WRITE_FAILED_MESSAGE = "Could not save the detection history."

_ID_ALPHABET = string.digits + string.ascii_lowercase


def new_record_id() -> str:
    """Time-ordered id: ``<epoch ms>-<8 random base36 chars>``."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=8))
    return f"{int(time.time() * 1000)}-{suffix}"


def _clamp(value: Any, default: float = 0.0) -> float:
    parsed = to_finite_number(value)
    return max(0.0, parsed if parsed is not None else default)


def _bucket_counts(source: dict, total_default: float) -> dict[str, float]:
    counts = {bucket.value: _clamp(source.get(bucket.value)) for bucket in DamageBucket}
    counts["total"] = _clamp(source.get("total"), total_default)
    return counts


def _bucket_distribution(source: dict) -> dict[str, float]:
    return {bucket.value: _clamp(source.get(bucket.value)) for bucket in DamageBucket}


def _stored_location(value: Any) -> Optional[GpsFix]:
    source = read_object(value)
    latitude = to_finite_number(source.get("latitude"))
    longitude = to_finite_number(source.get("longitude"))
    if latitude is None or longitude is None or not is_valid_lat_lon(latitude, longitude):
        return None
    timestamp = source.get("timestamp")
    return GpsFix(
        latitude=latitude,
        longitude=longitude,
        accuracy=to_finite_number(source.get("accuracy")),
        timestamp=timestamp if isinstance(timestamp, str) else None,
        source=read_string(source.get("source"), "gps"),
    )


def _stored_evidence(value: Any) -> Evidence:
    source = read_object(value)
    return Evidence(
        mime=read_string(source.get("mime"), "image/jpeg"),
        quality=to_finite_number(source.get("quality")),
        capture=Resolution(
            to_finite_number(source.get("captureWidth")),
            to_finite_number(source.get("captureHeight")),
        ),
        source=Resolution(
            to_finite_number(source.get("sourceWidth")),
            to_finite_number(source.get("sourceHeight")),
        ),
    )


def _attach_spatial(record: StoredDetectionRecord) -> StoredDetectionRecord:
    record.spatial = create_spatial_record(
        record.location,
        record.id,
        record.detected_at,
        record.created_at,
        record.severity,
        record.damage_percent,
        record.dominant_class,
        record.model_id,
        record.model_version,
    )
    return record


def create_record(
    report: Union[DamageReport, dict, None],
    model_id: str,
    model_version: str,
    api_message: str = DEFAULT_API_MESSAGE,
    api_duration_ms: Optional[float] = None,
) -> StoredDetectionRecord:
    """Build a history record from a report (object or dict form)."""
    if isinstance(report, dict):
        report = parse_report(report)

    created_at = utc_now_iso()
    record = StoredDetectionRecord(
        id=new_record_id(),
        created_at=created_at,
        model_id=model_id,
        model_version=model_version,
        detected_at=created_at,
        api_message=api_message,
        api_duration_ms=api_duration_ms,
    )
    if report is not None:
        breakdown = report.class_breakdown
        total = float(report.severity.total)
        record.detected_at = report.detected_at or created_at
        record.damage_percent = max(0.0, report.area.total_percent)
        record.severity = report.severity.dominant
        record.total_detections = total
        record.dominant_class = breakdown.dominant_class or None
        record.class_counts = _bucket_counts(
            {bucket.value: count for bucket, count in breakdown.counts.items()}, total
        )
        record.class_distribution = _bucket_distribution(
            {bucket.value: share for bucket, share in breakdown.distribution_percent.items()}
        )
        if report.location is not None:
            fix = report.location
            record.location = GpsFix(
                latitude=fix.latitude,
                longitude=fix.longitude,
                accuracy=fix.accuracy,
                timestamp=fix.timestamp,
                source=fix.source or "gps",
            )
        record.evidence = report.evidence
    else:
        record.class_counts = _bucket_counts({}, 0.0)
        record.class_distribution = _bucket_distribution({})

    return _attach_spatial(record)


def normalize_record(value: Any, index: int = 0) -> Optional[StoredDetectionRecord]:
    """Coerce one stored entry; ``None`` for non-object entries."""
    if not isinstance(value, dict):
        return None

    created_at = read_string(value.get("createdAt"), utc_now_iso())
    total = _clamp(value.get("totalDetections"))
    record = StoredDetectionRecord(
        id=read_string(value.get("id"), f"{int(time.time() * 1000)}-{index}"),
        created_at=created_at,
        model_id=read_string(value.get("modelId"), DEFAULT_MODEL_ID),
        model_version=read_string(value.get("modelVersion"), DEFAULT_MODEL_VERSION),
        detected_at=read_string(value.get("detectedAt"), created_at),
        api_message=read_string(value.get("apiMessage"), DEFAULT_API_MESSAGE),
        api_duration_ms=to_finite_number(value.get("apiDurationMs")),
        damage_percent=_clamp(value.get("damagePercent")),
        severity=Severity.coerce(value.get("severity")),
        total_detections=total,
        dominant_class=read_string(value.get("dominantClass")) or None,
        class_counts=_bucket_counts(read_object(value.get("classCounts")), total),
        class_distribution=_bucket_distribution(read_object(value.get("classDistribution"))),
        location=_stored_location(value.get("location")),
        evidence=_stored_evidence(value.get("evidence")),
    )

    spatial = spatial_record_from_dict(value.get("spatial"))
    if spatial is None:
        return _attach_spatial(record)
    record.spatial = spatial
    return record


class DetectionStore:
    """Most-recent-first detection history, capped at ``history_max_items``.

    Usage::

        store = DetectionStore(KeyValueStore(path))
        result = store.append(create_record(report, "model", "3"))
    """

    def __init__(self, kv: KeyValueStore, config: StorageConfig = DEFAULT_CONFIG.storage):
        self.kv = kv
        self.config = config
        self._lock = threading.Lock()

    def read_all(self) -> list[StoredDetectionRecord]:
        try:
            payload = self.kv.read_json(DETECTION_HISTORY, default=[])
        except StorageError as exc:
            logger.warning("Detection history unreadable: %s", exc)
            return []
        if not isinstance(payload, list):
            return []

        records = []
        for index, item in enumerate(payload):
            record = normalize_record(item, index)
            if record is not None:
                records.append(record)
        return records[: self.config.history_max_items]

    def append(self, record: StoredDetectionRecord) -> StoreResult:
        """Prepend ``record`` and truncate; storage failures become a message."""
        if record.spatial is None:
            _attach_spatial(record)

        with self._lock:
            history = [record, *self.read_all()][: self.config.history_max_items]
            try:
                self.kv.write_json(DETECTION_HISTORY, [item.to_dict() for item in history])
            except StorageQuotaError as exc:
                logger.warning("Detection history quota exceeded: %s", exc)
                return StoreResult(ok=False, message=QUOTA_MESSAGE)
            except StorageError as exc:
                logger.error("Detection history write failed: %s", exc)
                return StoreResult(ok=False, message=WRITE_FAILED_MESSAGE)

        logger.info("Stored detection %s (%d in history)", record.id, len(history))
        return StoreResult(ok=True, total=len(history))

    def clear(self) -> None:
        with self._lock:
            self.kv.remove_name(DETECTION_HISTORY)
        logger.info("Detection history cleared")
