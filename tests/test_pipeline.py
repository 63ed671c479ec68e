"""Unit tests for the GIS aggregation pipeline and layer loading."""

import asyncio
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from roadster.core.models import GpsFix, GeoJsonCacheEntry, Severity
from roadster.geo.pipeline import (
    BOUNDARY_FALLBACK_GEOJSON,
    LayerKind,
    LayerLoader,
    LayerStatus,
    build_feature_collection,
    build_wfs_request_url,
    count_geojson_features,
    is_geojson_like,
)
from roadster.geo.spatial import encode_point
from roadster.storage.geojson_cache import GeoJsonCache
from roadster.storage.history import create_record

BOUNDARY = {
    "type": "FeatureCollection",
    "features": [{"type": "Feature", "properties": {}, "geometry": {"type": "Polygon", "coordinates": []}}],
}


def _record_at(lat, lon, severity=Severity.LIGHT):
    record = create_record(None, "ws/model", "2")
    record.severity = severity
    record.location = GpsFix(latitude=lat, longitude=lon)
    record.spatial = None
    return record


def _loader(kv, handler, base_url=""):
    return LayerLoader(GeoJsonCache(kv), transport=httpx.MockTransport(handler), base_url=base_url)


class TestFeatureCollection:
    def test_points_from_location(self):
        collection = build_feature_collection([_record_at(-6.2, 106.8, Severity.MEDIUM)])
        assert collection["type"] == "FeatureCollection"
        feature = collection["features"][0]
        assert feature["geometry"] == {"type": "Point", "coordinates": [106.8, -6.2]}
        assert feature["properties"]["severity"] == "medium"
        assert feature["properties"]["modelId"] == "ws/model"
        assert feature["properties"]["totalDetections"] == 0

    def test_spatial_takes_precedence(self):
        record = _record_at(-6.2, 106.8)
        record.spatial = encode_point(1.0, 2.0)
        feature = build_feature_collection([record])["features"][0]
        assert feature["geometry"]["coordinates"] == [2.0, 1.0]

    def test_records_without_position_are_skipped(self):
        record = create_record(None, "m", "1")
        assert build_feature_collection([record]) == {"type": "FeatureCollection", "features": []}


class TestGeoJsonHelpers:
    @pytest.mark.parametrize("kind", ["FeatureCollection", "Feature", "Polygon", "MultiPolygon", "GeometryCollection"])
    def test_accepted_types(self, kind):
        assert is_geojson_like({"type": kind})

    def test_rejected(self):
        assert not is_geojson_like({"type": "Point"})
        assert not is_geojson_like([])

    def test_count_features(self):
        assert count_geojson_features(BOUNDARY) == 1
        assert count_geojson_features({"type": "Feature"}) == 1
        assert count_geojson_features({"type": "Polygon"}) == 0

    def test_wfs_url(self):
        url = build_wfs_request_url("https://gis.example/wfs?typeName=roads&service=WFS")
        query = parse_qs(urlsplit(url).query)
        assert query["typeName"] == ["roads"]
        assert query["service"] == ["WFS"]
        assert query["request"] == ["GetFeature"]
        assert query["outputFormat"] == ["application/json"]
        assert query["srsName"] == ["EPSG:4326"]

    def test_wfs_url_blank_or_relative(self):
        assert build_wfs_request_url("  ") == ""
        assert build_wfs_request_url("/local/wfs") == "/local/wfs"


class TestLayerLoader:
    def test_live_load_refreshes_cache(self, kv):
        loader = _loader(kv, lambda request: httpx.Response(200, json=BOUNDARY))
        result = asyncio.run(loader.load(LayerKind.BOUNDARY, "https://gis.example/b.json"))

        assert result.status is LayerStatus.LIVE
        assert result.data == BOUNDARY
        assert result.feature_count == 1
        cached = GeoJsonCache(kv).read("boundary")
        assert cached.source_url == "https://gis.example/b.json"
        assert cached.data == BOUNDARY

    def test_failure_uses_cache(self, kv):
        GeoJsonCache(kv).write(
            "boundary", GeoJsonCacheEntry("https://gis.example/old.json", "2026-01-01T00:00:00.000Z", BOUNDARY)
        )
        loader = _loader(kv, lambda request: httpx.Response(500, text="down"))
        result = asyncio.run(loader.load(LayerKind.BOUNDARY, "https://gis.example/b.json"))

        assert result.status is LayerStatus.CACHED
        assert result.data == BOUNDARY
        assert result.source == "https://gis.example/old.json"
        assert "HTTP 500" in result.error

    def test_invalid_shape_is_a_failure(self, kv):
        loader = _loader(kv, lambda request: httpx.Response(200, json={"type": "Point"}))
        result = asyncio.run(loader.load(LayerKind.BOUNDARY, "https://gis.example/b.json"))
        assert result.status is LayerStatus.FALLBACK
        assert GeoJsonCache(kv).read("boundary") is None

    def test_boundary_static_fallback(self, kv):
        def handler(request):
            raise httpx.ConnectError("offline")

        result = asyncio.run(_loader(kv, handler).load(LayerKind.BOUNDARY, "https://gis.example/b.json"))
        assert result.status is LayerStatus.FALLBACK
        assert result.data == BOUNDARY_FALLBACK_GEOJSON
        assert result.source == "fallback"

    def test_wfs_has_no_static_fallback(self, kv):
        result = asyncio.run(
            _loader(kv, lambda request: httpx.Response(404)).load(LayerKind.WFS, "https://gis.example/wfs")
        )
        assert result.status is LayerStatus.FAILED
        assert result.data is None
        assert result.to_dict()["featureCount"] == 0

    def test_wfs_request_parameters(self, kv):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"type": "FeatureCollection", "features": []})

        result = asyncio.run(_loader(kv, handler).load(LayerKind.WFS, "https://gis.example/wfs?typeName=roads"))
        assert result.status is LayerStatus.LIVE
        assert seen[0].url.params["request"] == "GetFeature"
        assert seen[0].headers["cache-control"] == "no-store"

    def test_empty_boundary_url_uses_default(self, kv):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json=BOUNDARY)

        loader = _loader(kv, handler, base_url="http://roadster.test")
        result = asyncio.run(loader.load(LayerKind.BOUNDARY, ""))
        assert result.status is LayerStatus.LIVE
        assert seen == ["/geo/indonesia-simplified.geojson"]

    def test_empty_wfs_url_fails(self, kv):
        result = asyncio.run(_loader(kv, lambda request: httpx.Response(200, json=BOUNDARY)).load(LayerKind.WFS, ""))
        assert result.status is LayerStatus.FAILED

    def test_superseded_load_is_discarded(self, kv):
        newer = {"type": "FeatureCollection", "features": []}

        async def scenario():
            release = asyncio.Event()

            async def handler(request):
                if request.url.path == "/slow.json":
                    await release.wait()
                    return httpx.Response(200, json=BOUNDARY)
                return httpx.Response(200, json=newer)

            loader = _loader(kv, handler)
            slow = asyncio.create_task(loader.load(LayerKind.BOUNDARY, "https://gis.example/slow.json"))
            await asyncio.sleep(0)
            fast = await loader.load(LayerKind.BOUNDARY, "https://gis.example/fast.json")
            release.set()
            return await slow, fast

        slow, fast = asyncio.run(scenario())
        assert fast.status is LayerStatus.LIVE
        assert slow.status is LayerStatus.SUPERSEDED
        assert GeoJsonCache(kv).read("boundary").data == newer
