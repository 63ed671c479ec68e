"""Upstream endpoint resolution.

Turns ``(api key, model id, model version, override URL)`` into a concrete
URL plus the request contract it speaks:

  serverless workflow host  → ``workflow`` (api key travels in the JSON body)
  any other absolute URL    → ``detect``   (api key in the query string)
  no usable override        → legacy ``detect.roboflow.com/<model>/<version>``
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Optional
from urllib.parse import parse_qsl, quote, unquote, urlencode, urlsplit, urlunsplit

from roadster.core.config import DEFAULT_CONFIG, UpstreamConfig, env_str
from roadster.core.models import EndpointVariant

logger = logging.getLogger("roadster.inference.endpoint")

DEFAULT_SERVERLESS_ENDPOINT = (
    "https://serverless.roboflow.com/baguss-workspace/"
    "find-barriers-potholes-waters-crackings-ruttings-and-roads"
)

_LEGACY_PREFIX = re.compile(r"^https?://detect\.roboflow\.com/", re.IGNORECASE)
# Characters encodeURIComponent leaves alone besides the RFC 3986 unreserved set.
_SEGMENT_SAFE = "!*'()"


@dataclass
class ModelPath:
    path: str
    normalized_model_id: str


@dataclass
class ResolvedEndpoint:
    url: str
    variant: EndpointVariant
    model_meta: dict[str, Optional[str]] = field(
        default_factory=lambda: {"modelId": None, "modelVersion": None}
    )


def _split_model_id(raw_model_id: str) -> list[str]:
    text = _LEGACY_PREFIX.sub("", raw_model_id.strip()).strip("/")
    if not text:
        return []
    segments = []
    for segment in text.split("/"):
        cleaned = segment.strip()
        if cleaned:
            cleaned = unquote(cleaned).strip()
        if cleaned:
            segments.append(cleaned)
    return segments


def build_model_path(model_id: str, model_version: str) -> Optional[ModelPath]:
    """Build ``<segments>/<version>`` for the legacy detect host.

    A trailing model-id segment equal to the version is dropped so that
    ``"ws/model/3"`` with version ``"3"`` does not become ``ws/model/3/3``.
    """
    version = model_version.strip()
    if not version:
        return None

    segments = _split_model_id(model_id)
    if segments and segments[-1] == version:
        segments.pop()
    if not segments:
        return None

    encoded = [quote(s, safe=_SEGMENT_SAFE) for s in segments]
    encoded.append(quote(version, safe=_SEGMENT_SAFE))
    return ModelPath(path="/".join(encoded), normalized_model_id="/".join(segments))


def _parse_absolute_url(text: str):
    if not text:
        return None
    parts = urlsplit(text.strip())
    if parts.scheme.lower() not in {"http", "https"} or not parts.netloc:
        return None
    return parts


def _normalize_workflow_path(path: str) -> str:
    segments = [s.strip() for s in path.split("/") if s.strip()]
    if len(segments) < 2:
        return path
    if segments[1] != "workflows":
        segments.insert(1, "workflows")
    return "/" + "/".join(segments)


def _optional_query(confidence: Optional[str], overlap: Optional[str]) -> list[tuple[str, str]]:
    params = []
    if confidence is not None:
        params.append(("confidence", confidence))
    if overlap is not None:
        params.append(("overlap", overlap))
    return params


def resolve_endpoint(
    api_key: str,
    model_id: str,
    model_version: str,
    confidence: Optional[str] = None,
    overlap: Optional[str] = None,
    endpoint_override: Optional[str] = None,
    config: UpstreamConfig = DEFAULT_CONFIG.upstream,
) -> Optional[ResolvedEndpoint]:
    """Resolve the upstream URL; ``None`` when the model path is unusable.

    ``endpoint_override`` defaults to ``ROBOFLOW_INFERENCE_ENDPOINT``.
    """
    if endpoint_override is None:
        endpoint_override = env_str("ROBOFLOW_INFERENCE_ENDPOINT")

    parts = _parse_absolute_url(endpoint_override)
    if parts is not None:
        host = (parts.hostname or "").lower()
        if host == config.workflow_host:
            url = urlunsplit(parts._replace(path=_normalize_workflow_path(parts.path)))
            logger.debug("Resolved workflow endpoint %s", url)
            return ResolvedEndpoint(url=url, variant=EndpointVariant.WORKFLOW)

        query = parse_qsl(parts.query, keep_blank_values=True)
        present = {name for name, _ in query}
        extra = [("api_key", api_key)] + _optional_query(confidence, overlap)
        query.extend((name, value) for name, value in extra if name not in present)
        url = urlunsplit(parts._replace(query=urlencode(query)))
        return ResolvedEndpoint(url=url, variant=EndpointVariant.DETECT)

    if endpoint_override:
        logger.warning("Ignoring endpoint override that is not an absolute URL")

    built = build_model_path(model_id, model_version)
    if built is None:
        return None

    query = urlencode([("api_key", api_key)] + _optional_query(confidence, overlap))
    host = config.legacy_detect_host.rstrip("/")
    return ResolvedEndpoint(
        url=f"{host}/{built.path}?{query}",
        variant=EndpointVariant.DETECT,
        model_meta={
            "modelId": built.normalized_model_id or model_id,
            "modelVersion": model_version,
        },
    )
