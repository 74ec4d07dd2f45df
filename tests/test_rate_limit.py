"""
Tests for the fixed-window rate limiter.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from fanz_sso.auth.models import User
from fanz_sso.core.errors import ErrorCode
from fanz_sso.server.guards import GuardContext
from fanz_sso.server.rate_limit import (
    POLICIES,
    RateLimiter,
    rate_limit_guard,
    rate_limit_key,
)


class TestRateLimitKey:
    """Test bucket key construction"""

    def test_anonymous(self):
        assert rate_limit_key("1.2.3.4") == "1.2.3.4:anonymous"

    def test_with_user(self):
        assert rate_limit_key("1.2.3.4", "u1") == "1.2.3.4:u1"

    def test_unknown_ip(self):
        assert rate_limit_key(None) == "unknown:anonymous"


class TestFixedWindow:
    """Test window accounting"""

    def test_first_request_creates_bucket(self, clock):
        limiter = RateLimiter(window=60, max_requests=3, clock=clock)

        decision = limiter.hit("k")

        assert decision.allowed
        assert decision.count == 1
        assert decision.remaining == 2
        assert decision.reset_in == 60
        assert len(limiter) == 1

    def test_rejects_after_ceiling(self, clock):
        """Test request max+1 in the window is rejected"""
        limiter = RateLimiter(window=60, max_requests=3, clock=clock)

        decisions = [limiter.hit("k") for _ in range(4)]

        assert [d.allowed for d in decisions] == [True, True, True, False]
        assert decisions[3].remaining == 0

    def test_retry_after_is_time_to_reset(self, clock):
        """Test retryAfter rounds up the seconds left in the window"""
        limiter = RateLimiter(window=60, max_requests=1, clock=clock)
        limiter.hit("k")
        clock.advance(20.5)

        decision = limiter.hit("k")

        assert not decision.allowed
        assert decision.retry_after == 40
        assert decision.headers()["Retry-After"] == "40"

    def test_window_resets(self, clock):
        """Test the first request after reset is allowed with a fresh count"""
        limiter = RateLimiter(window=60, max_requests=1, clock=clock)
        limiter.hit("k")
        assert not limiter.hit("k").allowed

        clock.advance(60)
        decision = limiter.hit("k")

        assert decision.allowed
        assert decision.count == 1

    def test_keys_are_independent(self, clock):
        limiter = RateLimiter(window=60, max_requests=1, clock=clock)

        assert limiter.hit("a").allowed
        assert limiter.hit("b").allowed
        assert not limiter.hit("a").allowed

    def test_allowed_headers(self, clock):
        limiter = RateLimiter(window=900, max_requests=1000, clock=clock)

        headers = limiter.hit("k").headers()

        assert headers == {
            "RateLimit-Limit": "1000",
            "RateLimit-Remaining": "999",
            "RateLimit-Reset": "900",
        }

    def test_rejection_body(self, clock):
        """Test the 429 body carries the code and retryAfter"""
        limiter = RateLimiter(window=60, max_requests=1, clock=clock)
        limiter.hit("k")

        rejection = limiter.hit("k").rejection()

        assert rejection.status_code == 429
        assert rejection.body() == {
            "error": "Rate limit exceeded",
            "code": "RATE_LIMITED",
            "message": "Rate limit exceeded",
            "retryAfter": 60,
        }
        assert rejection.headers["Retry-After"] == "60"

    def test_reset(self, clock):
        limiter = RateLimiter(window=60, max_requests=1, clock=clock)
        limiter.hit("a")
        limiter.hit("b")

        limiter.reset("a")
        assert limiter.hit("a").allowed

        limiter.reset()
        assert len(limiter) == 0

    def test_invalid_settings(self):
        with pytest.raises(ValueError):
            RateLimiter(window=0)
        with pytest.raises(ValueError):
            RateLimiter(window=0.5)
        with pytest.raises(ValueError):
            RateLimiter(max_requests=0)

    def test_concurrent_hits_are_counted(self):
        """Test no increments are lost across threads"""
        limiter = RateLimiter(window=60, max_requests=10_000)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda _: limiter.hit("k"), range(400)))

        assert limiter.hit("k").count == 401


class TestSweep:
    """Test removal of expired buckets"""

    def test_sweep_removes_expired(self, clock):
        limiter = RateLimiter(window=60, max_requests=5, clock=clock)
        limiter.hit("old")
        clock.advance(30)
        limiter.hit("new")
        clock.advance(30)

        assert limiter.sweep() == 1
        assert len(limiter) == 1

    @pytest.mark.asyncio
    async def test_background_sweep(self, clock):
        """Test the sweep task removes buckets and stops cleanly"""
        limiter = RateLimiter(window=60, max_requests=5, sweep_interval=0.01, clock=clock)
        limiter.hit("k")
        clock.advance(61)

        await limiter.start()
        await asyncio.sleep(0.05)
        await limiter.stop()

        assert len(limiter) == 0

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await RateLimiter().stop()


class TestPolicies:
    """Test named presets"""

    def test_defaults(self):
        limiter = RateLimiter()
        assert limiter.window == 900
        assert limiter.max_requests == 1000

    @pytest.mark.parametrize(
        "name,window,max_requests",
        [
            ("auth", 900, 5),
            ("registration", 3600, 3),
            ("upload", 60, 10),
            ("payment", 60, 5),
            ("content", 60, 20),
            ("sensitive", 300, 10),
        ],
    )
    def test_presets(self, name, window, max_requests):
        limiter = RateLimiter.from_policy(name)

        assert POLICIES[name].window == window
        assert limiter.max_requests == max_requests
        assert limiter.name == name


class TestRateLimitGuard:
    """Test the guard form of the limiter"""

    @pytest.mark.asyncio
    async def test_keys_on_user(self, clock):
        """Test authenticated users get their own bucket per ip"""
        guard = rate_limit_guard(RateLimiter(window=60, max_requests=1, clock=clock))
        alice = GuardContext("Bearer a", client_ip="1.1.1.1", user=User(id="alice"))
        bob = GuardContext("Bearer b", client_ip="1.1.1.1", user=User(id="bob"))

        assert await guard(alice) is None
        assert await guard(bob) is None
        rejection = await guard(alice)

        assert rejection.code == ErrorCode.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_anonymous_share_ip_bucket(self, clock):
        guard = rate_limit_guard(RateLimiter(window=60, max_requests=1, clock=clock))

        assert await guard(GuardContext(None, client_ip="1.1.1.1")) is None
        assert await guard(GuardContext(None, client_ip="1.1.1.1")) is not None
