"""Request guards for the HTTP surface.

  - shared-secret header check (with a trusted same-origin bypass)
  - ``Sec-Fetch-Site`` check
  - ``Origin`` allowlist
"""

from __future__ import annotations

import hmac
import logging
import os
from typing import Mapping, Optional
from urllib.parse import urlsplit

logger = logging.getLogger("roadster.server.auth")

ENDPOINT_SECRET_ENV = "ROBOFLOW_ENDPOINT_SECRET"
LEGACY_SYNC_SECRET_ENV = "SYNC_ROBOFLOW_SECRET"
ALLOWED_ORIGINS_ENV = "ROBOFLOW_ALLOWED_ORIGINS"
SECRET_HEADER = "x-roboflow-endpoint-secret"

VALID_FETCH_SITES = frozenset({"same-origin", "same-site", "none"})
TRUSTED_FETCH_SITE = "same-origin"


def _env_value(env: Mapping[str, str], name: str) -> str:
    return (env.get(name) or "").strip()


def resolve_endpoint_secret(env: Optional[Mapping[str, str]] = None) -> str:
    """``ROBOFLOW_ENDPOINT_SECRET``, else the legacy ``SYNC_ROBOFLOW_SECRET``."""
    env = os.environ if env is None else env
    return _env_value(env, ENDPOINT_SECRET_ENV) or _env_value(env, LEGACY_SYNC_SECRET_ENV)


def is_using_legacy_secret_only(env: Optional[Mapping[str, str]] = None) -> bool:
    env = os.environ if env is None else env
    return not _env_value(env, ENDPOINT_SECRET_ENV) and bool(_env_value(env, LEGACY_SYNC_SECRET_ENV))


def warn_if_legacy_secret(env: Optional[Mapping[str, str]] = None) -> None:
    if is_using_legacy_secret_only(env):
        logger.warning(
            "%s is not set; falling back to legacy %s", ENDPOINT_SECRET_ENV, LEGACY_SYNC_SECRET_ENV
        )


def check_endpoint_secret(
    headers: Mapping[str, str],
    secret: str,
    allow_trusted_client: bool = False,
) -> bool:
    """``True`` when the request may proceed.

    No configured secret means the endpoint is open. With
    ``allow_trusted_client`` a same-origin browser request passes without
    the header.
    """
    if not secret:
        return True

    incoming = (headers.get(SECRET_HEADER) or "").strip()
    if incoming and hmac.compare_digest(incoming.encode(), secret.encode()):
        return True

    if allow_trusted_client:
        fetch_site = (headers.get("sec-fetch-site") or "").strip().lower()
        if fetch_site == TRUSTED_FETCH_SITE:
            return True
    return False


def is_fetch_site_allowed(value: Optional[str]) -> bool:
    fetch_site = (value or "").strip().lower()
    return not fetch_site or fetch_site in VALID_FETCH_SITES


def parse_allowed_origins(raw: Optional[str]) -> list[str]:
    return [item.strip() for item in (raw or "").split(",") if item.strip()]


def is_origin_allowed(
    origin: Optional[str],
    host: Optional[str],
    allowed_origins: Optional[list[str]] = None,
) -> bool:
    """Same-host origins pass; others must be listed in ``allowed_origins``."""
    origin = (origin or "").strip()
    if not origin:
        return True

    host = (host or "").strip()
    if not host:
        return False

    try:
        parts = urlsplit(origin)
    except ValueError:
        return False
    if not parts.scheme or not parts.netloc:
        return False
    if parts.netloc.lower() == host.lower():
        return True

    if allowed_origins is None:
        allowed_origins = parse_allowed_origins(os.getenv(ALLOWED_ORIGINS_ENV))
    return origin in allowed_origins
