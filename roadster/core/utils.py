"""Tolerant readers for loosely-typed JSON input."""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Any, Optional

_WHITESPACE = re.compile(r"\s+")


def to_finite_number(value: Any) -> Optional[float]:
    """Coerce numbers and numeric strings; anything else (or NaN/inf) is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.strip()):
        try:
            parsed = float(value)
        except (ValueError, OverflowError):
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def non_negative(value: Any) -> float:
    parsed = to_finite_number(value)
    return max(0.0, parsed) if parsed is not None else 0.0


def read_string(value: Any, default: str = "") -> str:
    if isinstance(value, str):
        text = value.strip()
        return text if text else default
    return default


def read_object(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def normalize_image_input(raw_image: str) -> str:
    """Strip a data-URL header and any transport whitespace from base64 text."""
    text = raw_image.strip()
    if text.startswith("data:"):
        comma = text.find(",")
        if comma != -1:
            text = text[comma + 1:]
    return _WHITESPACE.sub("", text)


def extract_mime_from_data_url(raw_image: str) -> Optional[str]:
    text = raw_image.strip()
    if not text.startswith("data:"):
        return None
    end = text.find(";")
    if end == -1:
        return None
    mime = text[5:end].strip()
    return mime or None


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Any) -> Optional[str]:
    """Parse an ISO string or epoch-milliseconds number; None when unparseable."""
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_iso(datetime.fromisoformat(text))
        except ValueError:
            return None
    number = to_finite_number(value) if not isinstance(value, str) else None
    if number is not None:
        try:
            return to_iso(datetime.fromtimestamp(number / 1000, tz=timezone.utc))
        except (OverflowError, OSError, ValueError):
            return None
    return None


def parse_detected_at(value: Any) -> str:
    """Like :func:`parse_timestamp` but falls back to the current time."""
    return parse_timestamp(value) or utc_now_iso()
