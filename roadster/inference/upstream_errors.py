"""Best-effort extraction of human-readable messages from upstream error bodies."""

from __future__ import annotations

import json
import re
from typing import Any, Optional

GENERIC_FAILURE_MESSAGE = "Request to the inference service failed."

# Common generic upstream phrases → operator-facing wording.
_TRANSLATIONS = {
    "failed to fetch": "Cannot reach the inference service.",
    "internal server error": "The inference service hit an internal error.",
    "not found": "Model or workflow not found on the inference service.",
    "unauthorized": "The inference service rejected the API key.",
    "forbidden": "The API key is not allowed to use this model.",
    "method not allowed": "The inference endpoint does not accept this request method.",
    "unsupported media type": "The inference service rejected the image format.",
}

_API_KEY_PARAM = re.compile(r"(api_key=)[^&#\s]+", re.IGNORECASE)


def redact_url(url: str) -> str:
    """Hide any ``api_key`` query value before a URL reaches a log line."""
    return _API_KEY_PARAM.sub(r"\1***", url)


def truncate_body(body: Any, limit: int = 2_000) -> Any:
    """Echo an upstream body for debugging, clipping it if it is large."""
    if isinstance(body, str):
        return body if len(body) <= limit else body[:limit] + "…"
    try:
        text = json.dumps(body, default=str)
    except (TypeError, ValueError):
        text = str(body)
    if len(text) <= limit:
        return body
    return {"truncated": True, "preview": text[:limit]}


def translate_message(message: str) -> str:
    return _TRANSLATIONS.get(message.strip().rstrip(".").lower(), message.strip())


def _non_empty(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _from_detail(detail: Any) -> Optional[str]:
    if isinstance(detail, str):
        return _non_empty(detail)
    if not isinstance(detail, list):
        return None
    for item in detail:
        if isinstance(item, dict):
            msg = _non_empty(item.get("msg")) or _non_empty(item.get("message"))
            if not msg:
                continue
            loc = item.get("loc")
            if isinstance(loc, list) and loc:
                return f"{msg} ({'.'.join(str(part) for part in loc)})"
            return msg
        text = _non_empty(item)
        if text:
            return text
    return None


def extract_upstream_message(payload: Any) -> Optional[str]:
    """Search the known upstream error shapes; ``None`` when nothing fits."""
    if isinstance(payload, str):
        return _non_empty(payload)
    if not isinstance(payload, dict):
        return None

    found = _from_detail(payload.get("detail"))
    if found:
        return found

    for key in ("inner_error_message", "message"):
        found = _non_empty(payload.get(key))
        if found:
            return found

    error = payload.get("error")
    if isinstance(error, dict):
        found = _non_empty(error.get("message")) or _non_empty(error.get("msg"))
        if found:
            return found
    elif _non_empty(error):
        return error.strip()

    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0]
        if isinstance(first, dict):
            found = _non_empty(first.get("message")) or _non_empty(first.get("msg"))
        else:
            found = _non_empty(first)
        if found:
            return found

    return None


def describe_upstream_failure(payload: Any) -> str:
    """Message for a failed upstream call, translated, never empty."""
    message = extract_upstream_message(payload)
    if not message:
        return GENERIC_FAILURE_MESSAGE
    return translate_message(message)
