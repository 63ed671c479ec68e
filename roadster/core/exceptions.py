"""Roadster custom exceptions."""

from __future__ import annotations

from typing import Any, Optional


class RoadsterError(Exception):
    """Base exception for all Roadster errors."""


class InputError(RoadsterError):
    """Raised when a request is rejected before any network call."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 400,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status
        self.details = details


class RateLimitError(RoadsterError):
    """Raised when a client is throttled or over its per-window quota."""

    def __init__(self, code: str, message: str, retry_after_ms: int):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retry_after_ms = retry_after_ms


class UpstreamError(RoadsterError):
    """Base class for failures talking to the inference upstream."""


class UpstreamTransportError(UpstreamError):
    """Raised when every attempt to reach the upstream failed at transport level."""


class UpstreamHTTPError(UpstreamError):
    """Raised when the upstream answered with a non-2xx status."""

    def __init__(self, status: int, body: Any, message: str):
        super().__init__(message)
        self.status = status
        self.body = body
        self.message = message


class StorageError(RoadsterError):
    """Raised when the local key-value store cannot be written."""


class StorageQuotaError(StorageError):
    """Raised when a write would exceed the local storage quota."""


class LayerFetchError(RoadsterError):
    """Raised when an auxiliary GIS layer cannot be fetched or is not GeoJSON."""
