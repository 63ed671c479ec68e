"""One-call API for Roadster: ``roadster.detect(image, model_id="ws/model", model_version="3")``.

Wraps the intake pipeline (validation, endpoint resolution, forwarding,
prediction normalization, damage aggregation) for scripts, the CLI and the
HTTP surface.

Examples
--------
>>> import roadster
>>> result = roadster.detect(open("frame.b64").read(), model_id="ws/potholes", model_version="2")
>>> result.report.severity.dominant
<Severity.MEDIUM: 'medium'>
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from roadster.core.config import DEFAULT_CONFIG, RoadsterConfig, env_flag, env_int, env_str
from roadster.core.exceptions import InputError, RateLimitError, UpstreamHTTPError
from roadster.core.models import DamageReport, EndpointVariant
from roadster.core.ratelimit import Admission, RateLimiter
from roadster.core.utils import normalize_image_input, read_string, to_finite_number
from roadster.inference.endpoint import resolve_endpoint
from roadster.inference.forwarder import InferenceForwarder
from roadster.inference.payload import extract_predictions, normalize_predictions
from roadster.inference.upstream_errors import describe_upstream_failure, truncate_body
from roadster.report.aggregator import summarize
from roadster.report.builder import build_report, parse_evidence, parse_location
from roadster.server.admin_state import AdminState
from roadster.server.apikey import ApiKeyValidator
from roadster.storage.history import DetectionStore, create_record

logger = logging.getLogger("roadster.api")

SUCCESS_MESSAGE = "Detection processed successfully."


# ── Result Container ────────────────────────────────────────────────────


@dataclass
class IntakeResult:
    """Successful inference cycle: upstream body, report and request metadata."""

    report: DamageReport
    upstream: dict
    model_id: str
    model_version: str
    duration_ms: int
    endpoint_type: EndpointVariant
    message: str = SUCCESS_MESSAGE
    stored: Optional[dict] = field(default=None)

    def meta(self) -> dict:
        return {
            "modelId": self.model_id,
            "modelVersion": self.model_version,
            "durationMs": self.duration_ms,
            "endpointType": self.endpoint_type.value,
        }

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "message": self.message,
            "data": {**self.upstream, "report": self.report.to_dict()},
            "meta": self.meta(),
        }

    def __repr__(self) -> str:
        severity = self.report.severity
        return (
            f"<IntakeResult detections={severity.total} "
            f"severity={severity.dominant.value} "
            f"damage={self.report.area.total_percent:.2f}%>"
        )


# ── Input Helpers ───────────────────────────────────────────────────────


def _format_number(value: float) -> str:
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


def parse_optional_number(value: Any, code: str, field_name: str) -> Optional[str]:
    """Query-string form of an optional numeric field; raises on garbage."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if math.isfinite(value):
            return _format_number(float(value))
    elif isinstance(value, str) and value.strip():
        parsed = to_finite_number(value)
        if parsed is not None:
            return _format_number(parsed)
    raise InputError(code, f"Field `{field_name}` must be a number when provided.")


# ── Intake ──────────────────────────────────────────────────────────────


class InferenceIntake:
    """Validates a detection request, calls the upstream model and builds the report.

    Usage::

        intake = InferenceIntake(api_key="...")
        result = await intake.process({"image": b64, "modelId": "ws/m", "modelVersion": "3"})
    """

    def __init__(
        self,
        config: RoadsterConfig = DEFAULT_CONFIG,
        api_key: Optional[str] = None,
        endpoint_override: Optional[str] = None,
        forwarder: Optional[InferenceForwarder] = None,
        rate_limiter: Optional[RateLimiter] = None,
        validator: Optional[ApiKeyValidator] = None,
        store: Optional[DetectionStore] = None,
    ):
        self.config = config
        self.api_key = api_key if api_key is not None else env_str("ROBOFLOW_API_KEY")
        self.endpoint_override = endpoint_override
        self.forwarder = forwarder or InferenceForwarder(config.upstream)
        self.rate_limiter = rate_limiter or RateLimiter(config.rate_limit)
        self.validator = validator
        self.store = store

    @classmethod
    def from_env(
        cls,
        config: RoadsterConfig = DEFAULT_CONFIG,
        state: Optional[AdminState] = None,
        store: Optional[DetectionStore] = None,
    ) -> "InferenceIntake":
        """Build an intake wired from ``ROBOFLOW_*`` environment variables."""
        validator = None
        if env_flag("ROBOFLOW_VALIDATE_API_KEY"):
            validator = ApiKeyValidator(
                state or AdminState(config.server.stats_file),
                ttl_ms=env_int(
                    "ROBOFLOW_API_KEY_VALIDATION_TTL_MS", config.server.api_key_validation_ttl_ms
                ),
                config=config.upstream,
            )
        return cls(config=config, validator=validator, store=store)

    def require_api_key(self) -> str:
        if not self.api_key:
            raise InputError(
                "ENV_MISSING", "ROBOFLOW_API_KEY is not set in the server environment.", status=500
            )
        return self.api_key

    def admit(self, client_key: str) -> None:
        """Apply per-client rate limiting; raises :class:`RateLimitError`."""
        result = self.rate_limiter.admit(client_key)
        if result.decision is Admission.THROTTLED:
            raise RateLimitError(
                "RATE_LIMIT_THROTTLED",
                "Requests are too frequent. Wait a moment and try again.",
                result.retry_after_ms,
            )
        if result.decision is Admission.EXCEEDED:
            raise RateLimitError(
                "RATE_LIMIT_EXCEEDED",
                "Too many requests in the current window. Try again later.",
                result.retry_after_ms,
            )

    async def process(self, payload: Any) -> IntakeResult:
        """Run one inference cycle for a decoded JSON request body."""
        started = time.monotonic()
        api_key = self.require_api_key()

        if not isinstance(payload, dict):
            raise InputError("INVALID_JSON", "Request body must be a JSON object.")

        raw_image = read_string(payload.get("image"))
        model_id = read_string(payload.get("modelId")) or env_str("ROBOFLOW_MODEL_ID")
        model_version = read_string(payload.get("modelVersion")) or env_str("ROBOFLOW_MODEL_VERSION")

        if not raw_image:
            raise InputError("IMAGE_REQUIRED", "Field `image` is required (base64 or data URL).")
        if not model_id or not model_version:
            raise InputError(
                "MODEL_REQUIRED",
                "Fields `modelId` and `modelVersion` are required, or set "
                "ROBOFLOW_MODEL_ID and ROBOFLOW_MODEL_VERSION.",
            )

        confidence = parse_optional_number(payload.get("confidence"), "INVALID_CONFIDENCE", "confidence")
        overlap = parse_optional_number(payload.get("overlap"), "INVALID_OVERLAP", "overlap")

        image_base64 = normalize_image_input(raw_image)
        max_length = self.config.upstream.max_image_base64_length
        if len(image_base64) > max_length:
            raise InputError(
                "PAYLOAD_TOO_LARGE",
                "The image is too large to process.",
                status=413,
                details={"maxBase64Length": max_length},
            )

        location = parse_location(payload.get("location"))
        request_width = to_finite_number(payload.get("frameWidth"))
        request_height = to_finite_number(payload.get("frameHeight"))

        endpoint = resolve_endpoint(
            api_key,
            model_id,
            model_version,
            confidence=confidence,
            overlap=overlap,
            endpoint_override=self.endpoint_override,
            config=self.config.upstream,
        )
        if endpoint is None:
            raise InputError(
                "INVALID_MODEL_PATH",
                "`modelId`/`modelVersion` do not form a valid model path.",
            )

        if self.validator is not None:
            validation = await self.validator.validate(api_key)
            if not validation.ok:
                raise InputError(
                    "INVALID_API_KEY",
                    "The configured API key was rejected by the inference provider.",
                    status=401,
                )

        forwarded = await self.forwarder.forward(
            endpoint.url, endpoint.variant, api_key, image_base64, raw_image
        )
        if not forwarded.ok:
            raise UpstreamHTTPError(
                forwarded.status,
                truncate_body(forwarded.body, self.config.upstream.max_echoed_body_chars),
                describe_upstream_failure(forwarded.body),
            )

        extracted = extract_predictions(forwarded.body)
        frame_width = extracted.width if extracted.width is not None else request_width
        frame_height = extracted.height if extracted.height is not None else request_height
        predictions = normalize_predictions(extracted.raw_predictions)
        summary = summarize(predictions, frame_width, frame_height)

        evidence = parse_evidence(
            payload.get("evidence"),
            raw_image,
            request_width if request_width is not None else frame_width,
            request_height if request_height is not None else frame_height,
        )
        report = build_report(summary, payload.get("detectedAt"), location, evidence)

        meta_model_id = endpoint.model_meta.get("modelId") or model_id
        meta_model_version = endpoint.model_meta.get("modelVersion") or model_version
        result = IntakeResult(
            report=report,
            upstream=forwarded.body if isinstance(forwarded.body, dict) else {"raw": forwarded.body},
            model_id=meta_model_id,
            model_version=meta_model_version,
            duration_ms=int((time.monotonic() - started) * 1000),
            endpoint_type=endpoint.variant,
        )
        logger.info(
            "Detection via %s: %d boxes, %.2f%% damage, severity %s",
            endpoint.variant.value,
            report.severity.total,
            report.area.total_percent,
            report.severity.dominant.value,
        )

        if self.store is not None:
            record = create_record(
                report, meta_model_id, meta_model_version, result.message, result.duration_ms
            )
            loop = asyncio.get_running_loop()
            stored = await loop.run_in_executor(None, self.store.append, record)
            if stored.ok:
                result.stored = record.to_dict()
            else:
                logger.warning("Detection not stored: %s", stored.message)
        return result


# ── One-liner ───────────────────────────────────────────────────────────


def detect(
    image: str,
    model_id: str = "",
    model_version: str = "",
    *,
    api_key: Optional[str] = None,
    confidence: Optional[float] = None,
    overlap: Optional[float] = None,
    frame_width: Optional[float] = None,
    frame_height: Optional[float] = None,
    location: Optional[dict] = None,
    store: Optional[DetectionStore] = None,
    config: RoadsterConfig = DEFAULT_CONFIG,
) -> IntakeResult:
    """Run a single detection synchronously.

    Parameters
    ----------
    image : str
        Base64 image or ``data:`` URL.
    model_id, model_version : str
        Model identifiers; fall back to ``ROBOFLOW_MODEL_ID`` / ``ROBOFLOW_MODEL_VERSION``.
    store : DetectionStore, optional
        When given, the resulting report is appended to the history.
    """
    payload: dict[str, Any] = {
        "image": image,
        "modelId": model_id,
        "modelVersion": model_version,
        "confidence": confidence,
        "overlap": overlap,
        "frameWidth": frame_width,
        "frameHeight": frame_height,
        "location": location,
    }
    intake = InferenceIntake(config=config, api_key=api_key, store=store)
    return asyncio.run(intake.process(payload))
