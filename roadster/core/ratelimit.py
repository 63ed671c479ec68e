"""Per-client admission control for the inference endpoint.

Combines a minimum interval between requests with a fixed 60-second window
quota. State lives in a bounded in-process dict and resets on restart.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from roadster.core.config import DEFAULT_CONFIG, RateLimitConfig

logger = logging.getLogger("roadster.core.ratelimit")


class Admission(Enum):
    ALLOWED = "allowed"
    THROTTLED = "throttled"
    EXCEEDED = "exceeded"


@dataclass
class AdmissionResult:
    decision: Admission
    retry_after_ms: int = 0

    @property
    def allowed(self) -> bool:
        return self.decision is Admission.ALLOWED


@dataclass
class _ClientWindow:
    window_start: float
    count: int
    last_request_at: float


def build_client_key(
    forwarded_for: Optional[str],
    real_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> str:
    """Hash the caller's IP and user-agent prefix into an opaque key."""
    ip = ""
    if forwarded_for:
        ip = forwarded_for.split(",")[0].strip()
    ip = ip or (real_ip or "").strip() or "unknown"
    agent = (user_agent or "").strip()[:100] or "ua"
    return hashlib.sha256(f"{ip}:{agent}".encode()).hexdigest()[:16]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """Sliding-window + minimum-interval limiter keyed by client."""

    def __init__(
        self,
        config: RateLimitConfig = DEFAULT_CONFIG.rate_limit,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self.config = config
        self._clock = clock
        self._records: dict[str, _ClientWindow] = {}
        self._lock = threading.Lock()

    def admit(self, client_key: str) -> AdmissionResult:
        """Admit or reject one request; admitted requests update the window."""
        cfg = self.config
        with self._lock:
            now = self._clock()
            record = self._records.get(client_key)

            if record is None:
                self._records[client_key] = _ClientWindow(now, 1, now)
                self._evict_stale(now)
                return AdmissionResult(Admission.ALLOWED)

            if now - record.window_start >= cfg.window_ms:
                record.window_start = now
                record.count = 0

            since_last = now - record.last_request_at
            if since_last < cfg.min_interval_ms:
                return AdmissionResult(
                    Admission.THROTTLED,
                    retry_after_ms=int(cfg.min_interval_ms - since_last),
                )

            record.count += 1
            record.last_request_at = now

            if record.count > cfg.max_requests:
                remaining = cfg.window_ms - (now - record.window_start)
                logger.info("Rate limit exceeded for client %s", client_key)
                return AdmissionResult(Admission.EXCEEDED, retry_after_ms=int(max(0, remaining)))

            self._evict_stale(now)
            return AdmissionResult(Admission.ALLOWED)

    def _evict_stale(self, now: float) -> None:
        if len(self._records) <= self.config.max_records:
            return
        horizon = self.config.window_ms * 2
        stale = [k for k, r in self._records.items() if now - r.window_start > horizon]
        for key in stale:
            del self._records[key]
        if stale:
            logger.debug("Evicted %d stale rate-limit records", len(stale))

    def reset(self) -> None:
        with self._lock:
            self._records.clear()

    @property
    def size(self) -> int:
        return len(self._records)
