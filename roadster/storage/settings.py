"""GIS map settings persistence."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any

from roadster.core.config import DEFAULT_CONFIG, GisConfig
from roadster.core.exceptions import StorageError
from roadster.core.models import GisMapSettings, StoreResult
from roadster.core.utils import read_object, read_string
from roadster.storage.kv import GIS_SETTINGS, KeyValueStore

logger = logging.getLogger("roadster.storage.settings")

SUPPORTED_CRS = ("EPSG:3857", "EPSG:4326")


def default_settings(config: GisConfig = DEFAULT_CONFIG.gis) -> GisMapSettings:
    return GisMapSettings(
        crs=config.default_crs,
        boundary_geojson_url=config.boundary_geojson_url,
        wms_format=config.wms_format,
    )


def _flag(value: Any, default: bool) -> bool:
    return value if isinstance(value, bool) else default


def parse_settings(value: Any, config: GisConfig = DEFAULT_CONFIG.gis) -> GisMapSettings:
    """Coerce a settings dict; unknown CRS means the default web-mercator CRS."""
    source = read_object(value)
    defaults = default_settings(config)
    return GisMapSettings(
        crs="EPSG:4326" if source.get("crs") == "EPSG:4326" else "EPSG:3857",
        show_detection_points=_flag(source.get("showDetectionPoints"), defaults.show_detection_points),
        show_boundary=_flag(source.get("showBoundary"), defaults.show_boundary),
        boundary_geojson_url=read_string(source.get("boundaryGeoJsonUrl"), defaults.boundary_geojson_url),
        wms_enabled=_flag(source.get("wmsEnabled"), defaults.wms_enabled),
        wms_url=read_string(source.get("wmsUrl"), defaults.wms_url),
        wms_layers=read_string(source.get("wmsLayers"), defaults.wms_layers),
        wms_format=read_string(source.get("wmsFormat"), defaults.wms_format),
        wms_transparent=_flag(source.get("wmsTransparent"), defaults.wms_transparent),
        wfs_enabled=_flag(source.get("wfsEnabled"), defaults.wfs_enabled),
        wfs_url=read_string(source.get("wfsUrl"), defaults.wfs_url),
    )


class SettingsStore:
    def __init__(self, kv: KeyValueStore, config: GisConfig = DEFAULT_CONFIG.gis):
        self.kv = kv
        self.config = config

    def read(self) -> GisMapSettings:
        return parse_settings(self.kv.read_json(GIS_SETTINGS, default={}), self.config)

    def write(self, settings: GisMapSettings) -> StoreResult:
        try:
            self.kv.write_json(GIS_SETTINGS, settings.to_dict())
        except StorageError as exc:
            logger.warning("Could not save GIS settings: %s", exc)
            return StoreResult(ok=False, message="Could not save the GIS settings.")
        return StoreResult(ok=True)

    def update(self, **changes: Any) -> GisMapSettings:
        """Apply field changes to the stored settings and persist them."""
        settings = parse_settings(replace(self.read(), **changes).to_dict(), self.config)
        result = self.write(settings)
        if not result.ok:
            raise StorageError(result.message)
        return settings

    def reset(self) -> GisMapSettings:
        self.kv.remove_name(GIS_SETTINGS)
        return default_settings(self.config)
