"""Inference forwarder: sends one image to the resolved upstream endpoint.

Different deployments of the same nominal API accept different request
contracts, so the forwarder probes a fixed, ordered list of request shapes:

  workflow: JSON {api_key, inputs.image = base64 object | base64 | raw input}
  detect:   multipart ``file`` → (405) GET with ``image`` query
            → (400/401/403/404/415) four JSON body shapes

Attempts run strictly one after another; the first 2xx wins.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from roadster.core.config import DEFAULT_CONFIG, UpstreamConfig
from roadster.core.exceptions import UpstreamTransportError
from roadster.core.models import EndpointVariant
from roadster.core.utils import extract_mime_from_data_url
from roadster.inference.upstream_errors import redact_url

logger = logging.getLogger("roadster.inference.forwarder")

JSON_RETRY_STATUSES = frozenset({400, 401, 403, 404, 405, 415})


# ── Attempt Chain ───────────────────────────────────────────────────────


@dataclass
class ForwardResult:
    """Final upstream answer: status, parsed body and the attempt that produced it."""

    ok: bool
    status: int
    body: Any
    attempt: str = ""


def _is_success(response: httpx.Response) -> bool:
    return response.is_success


@dataclass
class RequestAttempt:
    """One request shape in a fallback chain."""

    name: str
    method: str
    url: str
    build: Callable[[], dict] = field(default=lambda: {})
    is_success: Callable[[httpx.Response], bool] = _is_success


def parse_response_body(response: httpx.Response) -> Any:
    text = response.text
    try:
        return response.json()
    except ValueError:
        return {"raw": text}


async def run_attempt_chain(
    client: httpx.AsyncClient,
    attempts: list[RequestAttempt],
) -> Optional[ForwardResult]:
    """Try each attempt in order; stop at the first success.

    Returns the last non-successful result when nothing succeeds, or
    ``None`` when every attempt failed at transport level.
    """
    last: Optional[ForwardResult] = None
    for attempt in attempts:
        try:
            response = await client.request(attempt.method, attempt.url, **attempt.build())
        except httpx.HTTPError as exc:
            logger.warning(
                "Upstream attempt %s to %s raised %s",
                attempt.name,
                redact_url(attempt.url),
                type(exc).__name__,
            )
            continue

        result = ForwardResult(
            ok=attempt.is_success(response),
            status=response.status_code,
            body=parse_response_body(response),
            attempt=attempt.name,
        )
        logger.debug("Upstream attempt %s → HTTP %d", attempt.name, result.status)
        if result.ok:
            return result
        last = result
    return last


# ── Request Shapes ──────────────────────────────────────────────────────


def _json(body: dict) -> Callable[[], dict]:
    return lambda: {"json": body}


def _base64_image(image_base64: str) -> dict:
    return {"type": "base64", "value": image_base64}


def workflow_attempts(
    url: str,
    api_key: str,
    image_base64: str,
    raw_image: str,
) -> list[RequestAttempt]:
    return [
        RequestAttempt(
            "workflow-base64-object",
            "POST",
            url,
            _json({"api_key": api_key, "inputs": {"image": _base64_image(image_base64)}}),
        ),
        RequestAttempt(
            "workflow-base64",
            "POST",
            url,
            _json({"api_key": api_key, "inputs": {"image": image_base64}}),
        ),
        RequestAttempt(
            "workflow-raw-input",
            "POST",
            url,
            _json({"api_key": api_key, "inputs": {"image": raw_image}}),
        ),
    ]


def detect_json_attempts(url: str, api_key: str, image_base64: str) -> list[RequestAttempt]:
    return [
        RequestAttempt("json-image-with-key", "POST", url,
                       _json({"api_key": api_key, "image": image_base64})),
        RequestAttempt("json-image", "POST", url, _json({"image": image_base64})),
        RequestAttempt("json-inputs-with-key", "POST", url,
                       _json({"api_key": api_key, "inputs": {"image": _base64_image(image_base64)}})),
        RequestAttempt("json-inputs", "POST", url,
                       _json({"inputs": {"image": _base64_image(image_base64)}})),
    ]


def _append_query(url: str, name: str, value: str) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.append((name, value))
    return urlunsplit(parts._replace(query=urlencode(query)))


def _decode_image(image_base64: str) -> bytes:
    try:
        return base64.b64decode(image_base64, validate=True)
    except (binascii.Error, ValueError):
        return image_base64.encode()


# ── Forwarder ───────────────────────────────────────────────────────────


class InferenceForwarder:
    """Forwards images upstream using the variant-specific fallback chain.

    Usage::

        forwarder = InferenceForwarder()
        result = await forwarder.forward(url, EndpointVariant.DETECT, key, b64, raw)
    """

    def __init__(
        self,
        config: UpstreamConfig = DEFAULT_CONFIG.upstream,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds),
            transport=self._transport,
        )

    async def forward(
        self,
        url: str,
        variant: EndpointVariant,
        api_key: str,
        image_base64: str,
        raw_image: str,
    ) -> ForwardResult:
        """Send the image; raises :class:`UpstreamTransportError` if nothing answered."""
        logger.info("Forwarding inference (%s) to %s", variant.value, redact_url(url))
        async with self._client() as client:
            if variant is EndpointVariant.WORKFLOW:
                result = await run_attempt_chain(
                    client, workflow_attempts(url, api_key, image_base64, raw_image)
                )
            else:
                result = await self._forward_detect(client, url, api_key, image_base64, raw_image)

        if result is None:
            raise UpstreamTransportError("Cannot connect to the inference service.")
        logger.info("Inference upstream answered HTTP %d via %s", result.status, result.attempt)
        return result

    async def _forward_detect(
        self,
        client: httpx.AsyncClient,
        url: str,
        api_key: str,
        image_base64: str,
        raw_image: str,
    ) -> Optional[ForwardResult]:
        mime = extract_mime_from_data_url(raw_image) or "image/jpeg"
        payload = _decode_image(image_base64)
        multipart = RequestAttempt(
            "multipart",
            "POST",
            url,
            lambda: {"files": {"file": ("upload.jpg", payload, mime)}},
        )

        first = await run_attempt_chain(client, [multipart])
        if first is None or first.ok:
            return first

        if first.status == 405:
            query_get = RequestAttempt("query-get", "GET", _append_query(url, "image", image_base64))
            fallback = await run_attempt_chain(client, [query_get])
            return fallback if fallback is not None else first

        if first.status in JSON_RETRY_STATUSES:
            retried = await run_attempt_chain(
                client, detect_json_attempts(url, api_key, image_base64)
            )
            return retried if retried is not None else first

        return first
