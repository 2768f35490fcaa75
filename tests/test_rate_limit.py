"""Tests for the fixed-window rate limiter."""

from unittest.mock import AsyncMock

import pytest

from gatewarden.service.errors import RateLimitExceeded, ValidationError
from gatewarden.service.rate_limit import (
    RULES,
    InMemoryCounterStore,
    RateLimiter,
    RateLimitRule,
    RedisCounterStore,
)
from gatewarden.storage.redis_cache import RedisCache


@pytest.fixture
def limiter(clock):
    return RateLimiter(InMemoryCounterStore(), clock=clock)


class TestFixedWindow:
    async def test_allows_exactly_max_requests(self, limiter):
        rule = RateLimitRule(window_ms=60_000, max_requests=10, name="test")

        results = [await limiter.check_rate_limit("ip:1.2.3.4", rule) for _ in range(10)]
        denied = await limiter.check_rate_limit("ip:1.2.3.4", rule)

        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == list(range(9, -1, -1))
        assert denied.allowed is False
        assert denied.remaining == 0

    async def test_denied_requests_do_not_extend_the_count(self, limiter):
        rule = RateLimitRule(window_ms=60_000, max_requests=2)
        for _ in range(5):
            await limiter.check_rate_limit("ip:a", rule)

        status = await limiter.status("ip:a", rule)
        assert status.allowed is False
        assert status.remaining == 0

    async def test_window_resets_after_expiry(self, limiter, clock):
        rule = RateLimitRule(window_ms=60_000, max_requests=1)
        assert (await limiter.check_rate_limit("ip:a", rule)).allowed
        assert not (await limiter.check_rate_limit("ip:a", rule)).allowed

        clock.advance(seconds=60)

        result = await limiter.check_rate_limit("ip:a", rule)
        assert result.allowed
        assert result.remaining == 0

    async def test_identifiers_are_independent(self, limiter):
        rule = RateLimitRule(window_ms=60_000, max_requests=1)
        assert (await limiter.check_rate_limit("ip:a", rule)).allowed
        assert (await limiter.check_rate_limit("ip:b", rule)).allowed

    async def test_enforce_raises_with_retry_after(self, limiter):
        rule = RateLimitRule(window_ms=60_000, max_requests=1, name="login")
        await limiter.enforce("ip:a", rule)

        with pytest.raises(RateLimitExceeded) as exc_info:
            await limiter.enforce("ip:a", rule)

        assert exc_info.value.status_code == 429
        assert exc_info.value.detail["retry_after"] == 60
        assert exc_info.value.detail["rule"] == "login"

    async def test_reset_clears_counter(self, limiter):
        rule = RateLimitRule(window_ms=60_000, max_requests=1)
        await limiter.check_rate_limit("ip:a", rule)
        await limiter.reset("ip:a")
        assert (await limiter.check_rate_limit("ip:a", rule)).allowed

    async def test_status_without_traffic(self, limiter):
        status = await limiter.status("ip:new", RULES["login"])
        assert status.allowed
        assert status.remaining == RULES["login"].max_requests

    async def test_rejects_non_positive_rules(self, limiter):
        with pytest.raises(ValidationError):
            await limiter.check_rate_limit("ip:a", RateLimitRule(window_ms=0, max_requests=1))


class TestIdentifiersAndRules:
    def test_identifier_kinds(self):
        assert RateLimiter.identifier("ip", ip="10.0.0.1") == "ip:10.0.0.1"
        assert RateLimiter.identifier("user", user_id="u1") == "user:u1"
        assert (
            RateLimiter.identifier("endpoint", path="/v1/auth/login", ip="10.0.0.1")
            == "endpoint:/v1/auth/login:10.0.0.1"
        )

    def test_user_identifier_requires_id(self):
        with pytest.raises(ValueError):
            RateLimiter.identifier("user")

    def test_unknown_identifier_kind(self):
        with pytest.raises(ValueError):
            RateLimiter.identifier("session")

    def test_named_rules(self):
        assert RULES["login"].window_ms == 15 * 60 * 1000
        assert RULES["login"].max_requests == 5
        assert RULES["api"].max_requests == 100
        with pytest.raises(ValidationError):
            RateLimiter.rule("nope")


class TestRedisCounterStore:
    async def test_hit_maps_script_result(self):
        cache = AsyncMock()
        cache.hit_fixed_window.return_value = (True, 3, 500)
        store = RedisCounterStore(cache)

        allowed, counter = await store.hit("ip:a", 60_000, 10, now_ms=1_000)

        cache.hit_fixed_window.assert_awaited_once_with("ip:a", 60_000, 10)
        assert allowed is True
        assert counter.count == 3
        assert counter.window_reset_at_ms == 1_500

    async def test_status_without_key(self):
        cache = AsyncMock()
        cache.get_counter.return_value = None
        assert await RedisCounterStore(cache).status("ip:a", now_ms=0) is None

    async def test_limiter_over_redis_counters(self, clock):
        cache = AsyncMock()
        cache.hit_fixed_window.return_value = (False, 5, 30_000)
        limiter = RateLimiter(RedisCounterStore(cache), clock=clock)

        result = await limiter.check_rate_limit("ip:a", RULES["login"])

        assert result.allowed is False
        assert result.retry_after_seconds(clock()) == 30

    def test_rate_keys_are_hashed(self):
        key = RedisCache._normalize_rate_key("ip:10.0.0.1")
        assert key.startswith("rate:")
        assert "10.0.0.1" not in key
        assert key == RedisCache._normalize_rate_key("ip:10.0.0.1")
