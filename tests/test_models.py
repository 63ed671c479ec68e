"""Tests for the core data models and their wire shapes."""

from __future__ import annotations

from roadster.core.models import (
    BoundingBoxPrediction,
    ClassBreakdown,
    DamageBucket,
    Evidence,
    GpsFix,
    Resolution,
    Severity,
    SeveritySummary,
    SpatialRecord,
)


class TestSeverity:
    def test_coerce_member(self):
        assert Severity.coerce(Severity.HEAVY) is Severity.HEAVY

    def test_coerce_string_is_case_insensitive(self):
        assert Severity.coerce(" Medium ") is Severity.MEDIUM

    def test_coerce_garbage_defaults_to_none(self):
        assert Severity.coerce("severe") is Severity.NONE
        assert Severity.coerce(3) is Severity.NONE


class TestBoundingBox:
    def test_area(self):
        box = BoundingBoxPrediction(label="pothole", width=20, height=5)
        assert box.area_px == 100


class TestGpsFix:
    def test_record_dict_drops_motion_fields(self):
        fix = GpsFix(latitude=-6.2, longitude=106.8, speed=12.0, heading=90.0)
        record = fix.to_record_dict()
        assert "speed" not in record
        assert "heading" not in record
        assert record["source"] == "gps"
        assert fix.to_dict()["speed"] == 12.0


class TestEvidence:
    def test_full_hd_unknown_without_source(self):
        assert Evidence().is_full_hd_source is None

    def test_full_hd_portrait(self):
        evidence = Evidence(source=Resolution(1080, 1920))
        assert evidence.is_full_hd_source is True

    def test_below_full_hd(self):
        evidence = Evidence(source=Resolution(1280, 720))
        assert evidence.is_full_hd_source is False

    def test_wire_and_record_shapes(self):
        evidence = Evidence(capture=Resolution(640, 480), source=Resolution(1920, 1080))
        wire = evidence.to_dict()
        assert wire["captureResolution"] == {"width": 640, "height": 480}
        assert wire["isFullHdSource"] is True
        record = evidence.to_record_dict()
        assert record["sourceWidth"] == 1920
        assert record["captureHeight"] == 480


class TestSummaries:
    def test_empty_severity_summary(self):
        data = SeveritySummary().to_dict()
        assert data["dominant"] == "none"
        assert data["counts"] == {"light": 0, "medium": 0, "heavy": 0, "total": 0}

    def test_class_breakdown_has_every_bucket(self):
        breakdown = ClassBreakdown()
        breakdown.counts[DamageBucket.CRACK] = 2
        data = breakdown.to_dict()
        assert set(data["counts"]) == {"pothole", "crack", "rutting", "other", "total"}
        assert data["counts"]["total"] == 2
        assert data["perClass"] == []


class TestSpatialRecord:
    def test_coordinates_are_lon_lat(self):
        record = SpatialRecord(
            latitude=-6.2,
            longitude=106.8,
            wkt="POINT(106.80000000 -6.20000000)",
            ewkt="SRID=4326;POINT(106.80000000 -6.20000000)",
        )
        data = record.to_dict()
        assert data["sourceCrs"] == "EPSG:4326"
        assert data["postgis"]["srid"] == 4326
        assert data["feature"]["geometry"]["coordinates"] == [106.8, -6.2]
