"""Last-good snapshots of auxiliary GIS layers (boundary, WFS)."""

from __future__ import annotations

import logging
from typing import Optional

from roadster.core.exceptions import StorageError
from roadster.core.models import GeoJsonCacheEntry, StoreResult
from roadster.core.utils import read_object, read_string
from roadster.storage.kv import GIS_BOUNDARY_CACHE, GIS_WFS_CACHE, KeyValueStore

logger = logging.getLogger("roadster.storage.geojson_cache")

LAYER_KEYS = {
    "boundary": GIS_BOUNDARY_CACHE,
    "wfs": GIS_WFS_CACHE,
}


class GeoJsonCache:
    """One cached entry per layer name (``boundary`` or ``wfs``)."""

    def __init__(self, kv: KeyValueStore):
        self.kv = kv

    @staticmethod
    def _name(layer: str) -> str:
        try:
            return LAYER_KEYS[layer]
        except KeyError:
            raise ValueError(f"Unknown GIS layer: {layer}") from None

    def read(self, layer: str) -> Optional[GeoJsonCacheEntry]:
        source = read_object(self.kv.read_json(self._name(layer)))
        source_url = read_string(source.get("sourceUrl"))
        fetched_at = read_string(source.get("fetchedAt"))
        if not source_url or not fetched_at:
            return None
        return GeoJsonCacheEntry(source_url, fetched_at, source.get("data"))

    def write(self, layer: str, entry: GeoJsonCacheEntry) -> StoreResult:
        try:
            self.kv.write_json(self._name(layer), entry.to_dict())
        except StorageError as exc:
            logger.warning("GeoJSON cache write for %s failed: %s", layer, exc)
            return StoreResult(ok=False, message="Could not save the GeoJSON cache.")
        return StoreResult(ok=True)

    def clear(self, layer: str) -> None:
        self.kv.remove_name(self._name(layer))
