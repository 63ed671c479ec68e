"""Unit tests for per-client admission control."""

import pytest

from roadster.core.config import RateLimitConfig
from roadster.core.ratelimit import Admission, RateLimiter, build_client_key


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    cfg = RateLimitConfig(window_ms=10_000, max_requests=3, min_interval_ms=1_000, max_records=2)
    return RateLimiter(cfg, clock=clock)


class TestBuildClientKey:
    def test_uses_first_forwarded_ip(self):
        a = build_client_key("10.0.0.1, 10.0.0.2", None, "agent")
        b = build_client_key("10.0.0.1", None, "agent")
        assert a == b
        assert len(a) == 16

    def test_falls_back_to_real_ip(self):
        assert build_client_key(None, "10.0.0.9", "agent") == build_client_key("10.0.0.9", None, "agent")

    def test_user_agent_changes_key(self):
        assert build_client_key("1.1.1.1", None, "a") != build_client_key("1.1.1.1", None, "b")

    def test_user_agent_prefix_only(self):
        long_a = "x" * 100 + "A"
        long_b = "x" * 100 + "B"
        assert build_client_key("1.1.1.1", None, long_a) == build_client_key("1.1.1.1", None, long_b)

    def test_missing_everything(self):
        assert build_client_key(None, None, None) == build_client_key("", "", "")


class TestRateLimiter:
    def test_first_request_allowed(self, limiter):
        result = limiter.admit("client")
        assert result.allowed
        assert result.retry_after_ms == 0

    def test_throttled_within_min_interval(self, limiter, clock):
        limiter.admit("client")
        clock.now = 400
        result = limiter.admit("client")
        assert result.decision is Admission.THROTTLED
        assert result.retry_after_ms == 600

    def test_allowed_after_min_interval(self, limiter, clock):
        limiter.admit("client")
        clock.now = 1_000
        assert limiter.admit("client").allowed

    def test_exceeded_after_quota(self, limiter, clock):
        for step in range(3):
            clock.now = step * 1_000
            assert limiter.admit("client").allowed

        clock.now = 3_000
        result = limiter.admit("client")
        assert result.decision is Admission.EXCEEDED
        assert result.retry_after_ms == 7_000

    def test_window_resets(self, limiter, clock):
        for step in range(4):
            clock.now = step * 1_000
            limiter.admit("client")

        clock.now = 10_000
        assert limiter.admit("client").allowed

    def test_clients_are_independent(self, limiter):
        assert limiter.admit("a").allowed
        assert limiter.admit("b").allowed

    def test_throttled_request_does_not_count(self, limiter, clock):
        limiter.admit("client")
        clock.now = 500
        assert limiter.admit("client").decision is Admission.THROTTLED
        clock.now = 1_000
        assert limiter.admit("client").allowed
        clock.now = 2_000
        assert limiter.admit("client").allowed

    def test_evicts_stale_records(self, limiter, clock):
        limiter.admit("a")
        limiter.admit("b")
        clock.now = 25_000
        limiter.admit("c")
        assert limiter.size == 1

    def test_reset(self, limiter):
        limiter.admit("a")
        limiter.reset()
        assert limiter.size == 0
