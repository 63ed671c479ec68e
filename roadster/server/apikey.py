"""Upstream API-key validation with a short-lived result cache.

Each failed validation bumps the invalid-key counter in :class:`AdminState`
and persists it best-effort.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from roadster.core.config import DEFAULT_CONFIG, UpstreamConfig
from roadster.inference.forwarder import parse_response_body
from roadster.server.admin_state import AdminState, ValidationCacheEntry, now_ms

logger = logging.getLogger("roadster.server.apikey")


def key_fingerprint(api_key: str) -> str:
    """Stable identifier for an API key that is safe to persist."""
    return hashlib.sha256(api_key.encode()).hexdigest()[:16]


@dataclass
class ValidationResult:
    ok: bool
    info: Any = None
    cached: bool = False


class ApiKeyValidator:
    """Validates the configured API key against the provider's account endpoint."""

    def __init__(
        self,
        state: AdminState,
        ttl_ms: int = DEFAULT_CONFIG.server.api_key_validation_ttl_ms,
        config: UpstreamConfig = DEFAULT_CONFIG.upstream,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = now_ms,
    ):
        self.state = state
        self.ttl_ms = ttl_ms
        self.config = config
        self._transport = transport
        self._clock = clock

    async def validate(self, api_key: str) -> ValidationResult:
        now = self._clock()
        fingerprint = key_fingerprint(api_key)
        cached = self.state.cache
        if cached is not None and cached.key == fingerprint and cached.expires_at > now:
            return ValidationResult(cached.ok, cached.info, cached=True)

        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.get(
                    self.config.api_validation_url, params={"api_key": api_key}
                )
        except httpx.HTTPError as exc:
            info = {"error": str(exc) or type(exc).__name__}
            self.state.set_cache(ValidationCacheEntry(fingerprint, False, now + self.ttl_ms, info))
            self.state.record_invalid(now)
            logger.warning("API key validation error: %s", info["error"])
            self.state.persist_best_effort()
            return ValidationResult(False, info)

        info = {"status": response.status_code, "body": parse_response_body(response)}
        ok = response.is_success
        self.state.set_cache(ValidationCacheEntry(fingerprint, ok, now + self.ttl_ms, info))
        if not ok:
            self.state.record_invalid(now)
            logger.warning("API key validation failed with HTTP %d", response.status_code)
            self.state.persist_best_effort()
        return ValidationResult(ok, info)
