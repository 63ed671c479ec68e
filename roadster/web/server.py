"""FastAPI surface for Roadster.

Provides:
  - POST /api/roboflow                 inference intake (camera devices)
  - GET/POST /api/admin/roboflow-stats API-key validation statistics
  - /api/admin/detections              detection history + GeoJSON layer
  - /api/admin/gis-settings            map settings
  - /api/admin/layers/{layer}          boundary / WFS layers with fallback
  - GET /geo/indonesia-simplified.geojson static boundary fallback
"""

from __future__ import annotations

import json
import logging
import math
from contextlib import asynccontextmanager
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from roadster.api import InferenceIntake
from roadster.core.config import DEFAULT_CONFIG, RoadsterConfig, env_flag, env_str
from roadster.core.exceptions import (
    InputError,
    RateLimitError,
    StorageError,
    UpstreamHTTPError,
    UpstreamTransportError,
)
from roadster.core.ratelimit import build_client_key
from roadster.geo.pipeline import (
    BOUNDARY_FALLBACK_GEOJSON,
    LayerKind,
    LayerLoader,
    build_feature_collection,
)
from roadster.server.admin_state import AdminState
from roadster.server.auth import (
    check_endpoint_secret,
    is_fetch_site_allowed,
    is_origin_allowed,
    resolve_endpoint_secret,
    warn_if_legacy_secret,
)
from roadster.storage.admin_stats import AdminStatsStore
from roadster.storage.geojson_cache import GeoJsonCache
from roadster.storage.history import DetectionStore
from roadster.storage.kv import KeyValueStore
from roadster.storage.settings import SettingsStore, parse_settings

logger = logging.getLogger("roadster.web.server")

UNAUTHORIZED_MESSAGE = "Access to this endpoint was denied."


# ── Envelopes ──────────────────────────────────────────────────


def json_error(
    status: int,
    code: str,
    message: str,
    details: Any = None,
    headers: Optional[dict] = None,
) -> JSONResponse:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return JSONResponse({"ok": False, "error": error}, status_code=status, headers=headers)


def _unauthorized() -> JSONResponse:
    return json_error(401, "UNAUTHORIZED", UNAUTHORIZED_MESSAGE)


# ── Request Bodies ─────────────────────────────────────────────


class StatsSyncBody(BaseModel):
    stats: Optional[dict] = None
    cache: Optional[dict] = None


class GisSettingsBody(BaseModel):
    crs: Optional[str] = None
    showDetectionPoints: Optional[bool] = None
    showBoundary: Optional[bool] = None
    boundaryGeoJsonUrl: Optional[str] = None
    wmsEnabled: Optional[bool] = None
    wmsUrl: Optional[str] = None
    wmsLayers: Optional[str] = None
    wmsFormat: Optional[str] = None
    wmsTransparent: Optional[bool] = None
    wfsEnabled: Optional[bool] = None
    wfsUrl: Optional[str] = None


# ── App Factory ────────────────────────────────────────────────


def create_app(
    config: RoadsterConfig = DEFAULT_CONFIG,
    intake: Optional[InferenceIntake] = None,
    admin_state: Optional[AdminState] = None,
    kv: Optional[KeyValueStore] = None,
    layer_loader: Optional[LayerLoader] = None,
) -> FastAPI:
    """Build the application; collaborators are injectable for tests."""
    warn_if_legacy_secret()

    admin_state = admin_state or AdminState(config.server.stats_file)
    admin_state.load()
    kv = kv or KeyValueStore(config.storage.db_path, config.storage)
    history = DetectionStore(kv, config.storage)
    settings_store = SettingsStore(kv, config.gis)
    stats_store = AdminStatsStore(kv, config.storage)
    intake = intake or InferenceIntake.from_env(config, state=admin_state, store=history)
    layer_loader = layer_loader or LayerLoader(GeoJsonCache(kv), config.gis)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        result = stats_store.flush()
        if not result.ok:
            logger.warning("Admin stats not saved on shutdown: %s", result.message)

    app = FastAPI(title="Roadster", version="0.1.0", lifespan=lifespan)
    app.state.stats_store = stats_store

    def admin_allowed(request: Request, allow_trusted: bool = False) -> bool:
        return check_endpoint_secret(
            request.headers, resolve_endpoint_secret(), allow_trusted_client=allow_trusted
        )

    # ── Inference ──────────────────────────────────────────────

    @app.post("/api/roboflow")
    async def roboflow_inference(request: Request):
        """Forward one captured frame upstream and return the damage report."""
        try:
            intake.require_api_key()
        except InputError as exc:
            return json_error(exc.status, exc.code, exc.message)

        if not admin_allowed(request):
            return _unauthorized()

        content_type = request.headers.get("content-type", "").lower()
        if "application/json" not in content_type:
            return json_error(415, "UNSUPPORTED_MEDIA_TYPE", "Content-Type must be application/json.")

        if not is_fetch_site_allowed(request.headers.get("sec-fetch-site")):
            return json_error(403, "FORBIDDEN_ORIGIN", "Cross-origin requests are not allowed.")

        if not is_origin_allowed(request.headers.get("origin"), request.headers.get("host")):
            return json_error(403, "ORIGIN_NOT_ALLOWED", "Request origin is not allowed.")

        client_key = build_client_key(
            request.headers.get("x-forwarded-for"),
            request.headers.get("x-real-ip"),
            request.headers.get("user-agent"),
        )
        try:
            intake.admit(client_key)
        except RateLimitError as exc:
            return json_error(
                429,
                exc.code,
                exc.message,
                details={"retryAfterMs": exc.retry_after_ms},
                headers={"Retry-After": str(max(1, math.ceil(exc.retry_after_ms / 1000)))},
            )

        try:
            payload = json.loads(await request.body())
        except ValueError:
            return json_error(400, "INVALID_JSON", "Request body must be valid JSON.")

        try:
            result = await intake.process(payload)
        except InputError as exc:
            return json_error(exc.status, exc.code, exc.message, exc.details)
        except UpstreamHTTPError as exc:
            return json_error(
                exc.status,
                "UPSTREAM_HTTP_ERROR",
                exc.message,
                details={"upstreamStatus": exc.status, "upstreamBody": exc.body},
            )
        except UpstreamTransportError as exc:
            logger.warning("Inference upstream unreachable: %s", exc)
            return json_error(502, "UPSTREAM_NETWORK_ERROR", "Cannot connect to the inference service.")

        return result.to_dict()

    # ── Admin stats ────────────────────────────────────────────

    @app.get("/api/admin/roboflow-stats")
    async def get_roboflow_stats(request: Request):
        """Current invalid-key counter and validation cache entry."""
        if not admin_allowed(request, env_flag("ROBOFLOW_STATS_ALLOW_TRUSTED_CLIENT")):
            return _unauthorized()
        snapshot = admin_state.snapshot()
        stats_store.write(snapshot)
        return {"ok": True, "stats": snapshot["stats"], "cache": snapshot["cache"]}

    @app.post("/api/admin/roboflow-stats")
    def post_roboflow_stats(request: Request, body: StatsSyncBody):
        """Merge pushed stats into memory and persist them to the stats file."""
        if not admin_allowed(request):
            return _unauthorized()
        try:
            snapshot = admin_state.persist(body.model_dump())
        except OSError as exc:
            logger.error("Could not write admin stats: %s", exc)
            return json_error(500, "STATS_WRITE_FAILED", "Could not persist admin stats.")
        stats_store.write(snapshot)
        return {"ok": True, **snapshot}

    # ── Detection history ──────────────────────────────────────

    @app.get("/api/admin/detections")
    def list_detections(request: Request, limit: int = 120):
        if not admin_allowed(request):
            return _unauthorized()
        records = history.read_all()[: max(0, limit)]
        return {"ok": True, "total": len(records), "records": [r.to_dict() for r in records]}

    @app.get("/api/admin/detections.geojson")
    def detections_geojson(request: Request):
        if not admin_allowed(request):
            return _unauthorized()
        return build_feature_collection(history.read_all())

    @app.delete("/api/admin/detections")
    def clear_detections(request: Request):
        if not admin_allowed(request):
            return _unauthorized()
        history.clear()
        return {"ok": True}

    # ── GIS ────────────────────────────────────────────────────

    @app.get("/api/admin/gis-settings")
    def get_gis_settings(request: Request):
        if not admin_allowed(request):
            return _unauthorized()
        return {"ok": True, "settings": settings_store.read().to_dict()}

    @app.put("/api/admin/gis-settings")
    def put_gis_settings(request: Request, body: GisSettingsBody):
        if not admin_allowed(request):
            return _unauthorized()
        merged = {**settings_store.read().to_dict(), **body.model_dump(exclude_none=True)}
        settings = parse_settings(merged, config.gis)
        result = settings_store.write(settings)
        if not result.ok:
            return json_error(500, "STORAGE_ERROR", result.message)
        return {"ok": True, "settings": settings.to_dict()}

    @app.get("/api/admin/layers/{layer}")
    async def load_layer(layer: str, request: Request):
        """Boundary or WFS layer: live, cached, or fallback."""
        if not admin_allowed(request):
            return _unauthorized()
        try:
            kind = LayerKind(layer)
        except ValueError:
            return json_error(404, "UNKNOWN_LAYER", f"Unknown layer: {layer}")

        settings = await run_in_threadpool(settings_store.read)
        if kind is LayerKind.BOUNDARY:
            enabled, url = settings.show_boundary, settings.boundary_geojson_url
        else:
            enabled, url = settings.wfs_enabled, settings.wfs_url
        if not enabled:
            return {"ok": True, "layer": kind.value, "status": "disabled"}

        result = await layer_loader.load(kind, url)
        return {"ok": True, "layer": kind.value, **result.to_dict()}

    @app.get("/geo/indonesia-simplified.geojson")
    async def boundary_fallback():
        return BOUNDARY_FALLBACK_GEOJSON

    @app.get("/api/health")
    async def health():
        return {"ok": True, "apiKeyConfigured": bool(intake.api_key)}

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError):
        logger.error("Storage failure on %s: %s", request.url.path, exc)
        return json_error(500, "STORAGE_ERROR", "Local storage is unavailable.")

    return app


app = create_app()


def run(host: Optional[str] = None, port: Optional[int] = None, reload: bool = False):
    """CLI entry point."""
    import uvicorn

    uvicorn.run(
        "roadster.web.server:app",
        host=host or env_str("ROADSTER_HOST", DEFAULT_CONFIG.server.host),
        port=port or DEFAULT_CONFIG.server.port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    run()
