"""Tests for the fixed-window rate limiter."""

from __future__ import annotations

from fakes import FakeClock

from cognitive_coach.recovery.rate_limit import RateLimiter, build_rate_key


class TestRateLimiter:
    def test_allows_up_to_limit(self):
        limiter = RateLimiter(clock=FakeClock())
        decisions = [limiter.check("k", limit=3, window_seconds=60) for _ in range(4)]
        assert [d.allowed for d in decisions] == [True, True, True, False]

    def test_retry_after_rounds_up(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.check("k", limit=1, window_seconds=60)
        clock.advance(10.5)
        decision = limiter.check("k", limit=1, window_seconds=60)
        assert decision.allowed is False
        assert decision.retry_after == 50

    def test_window_resets(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.check("k", limit=1, window_seconds=60)
        clock.advance(60)
        assert limiter.check("k", limit=1, window_seconds=60).allowed is True

    def test_keys_are_independent(self):
        limiter = RateLimiter(clock=FakeClock())
        limiter.check("a", limit=1)
        assert limiter.check("b", limit=1).allowed is True
        assert limiter.check("a", limit=1).allowed is False

    def test_cleanup_drops_expired_windows(self):
        clock = FakeClock()
        limiter = RateLimiter(clock=clock)
        limiter.check("a", window_seconds=10)
        limiter.check("b", window_seconds=100)
        clock.advance(20)
        assert limiter.cleanup() == 1
        assert len(limiter) == 1


class TestBuildRateKey:
    def test_with_ip(self):
        assert build_rate_key("10.0.0.1", "/api/s0") == "10.0.0.1:/api/s0"

    def test_without_ip(self):
        assert build_rate_key(None, "/api/s0") == "unknown:/api/s0"
