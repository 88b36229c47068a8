"""Fixed-window rate limiting over the store and Redis backends."""

import asyncio
import threading
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from warden.service.rate_limit import (
    LOGIN,
    OAUTH,
    Allowed,
    Limited,
    RateLimiter,
    RatePolicy,
    default_policies,
)
from warden.storage.errors import BackendUnavailable
from warden.storage.redis_cache import RedisCache


@pytest.fixture
def limiter(memory_store, clock):
    return RateLimiter(
        memory_store,
        policies={
            LOGIN: RatePolicy(LOGIN, 5, 60),
            OAUTH: RatePolicy(OAUTH, 2, 30),
        },
        clock=clock,
    )


class TestStoreBackedLimiter:
    async def test_sixth_attempt_in_window_is_limited(self, limiter):
        decisions = [await limiter.check_and_increment("t1", LOGIN, "a@x.com") for _ in range(6)]
        assert [type(d) for d in decisions[:5]] == [Allowed] * 5
        assert decisions[0].remaining == 4
        assert decisions[4].remaining == 0
        assert isinstance(decisions[5], Limited)
        assert 1 <= decisions[5].retry_after <= 60

    async def test_window_resets_after_elapsing(self, limiter, clock):
        for _ in range(5):
            await limiter.check_and_increment("t1", LOGIN, "a@x.com")
        clock.advance(seconds=61)
        assert isinstance(await limiter.check_and_increment("t1", LOGIN, "a@x.com"), Allowed)

    async def test_retry_after_counts_down(self, limiter, clock):
        for _ in range(5):
            await limiter.check_and_increment("t1", LOGIN, "a@x.com")
        clock.advance(seconds=45)
        decision = await limiter.check_and_increment("t1", LOGIN, "a@x.com")
        assert decision == Limited(retry_after=15)

    async def test_rejected_attempts_do_not_extend_window(self, limiter, memory_store):
        for _ in range(8):
            await limiter.check_and_increment("t1", LOGIN, "a@x.com")
        window = memory_store.for_tenant("t1").get_rate_window("login:a@x.com")
        assert window.count == 5

    async def test_keys_are_independent(self, limiter):
        for _ in range(5):
            await limiter.check_and_increment("t1", LOGIN, "a@x.com")
        assert isinstance(await limiter.check_and_increment("t1", LOGIN, "b@x.com"), Allowed)

    async def test_namespaces_are_independent(self, limiter):
        for _ in range(5):
            await limiter.check_and_increment("t1", LOGIN, "10.0.0.1")
        assert isinstance(await limiter.check_and_increment("t1", OAUTH, "10.0.0.1"), Allowed)

    async def test_tenants_are_independent(self, limiter):
        for _ in range(5):
            await limiter.check_and_increment("t1", LOGIN, "a@x.com")
        assert isinstance(await limiter.check_and_increment("t2", LOGIN, "a@x.com"), Allowed)

    async def test_unknown_namespace_is_a_programming_error(self, limiter):
        with pytest.raises(ValueError):
            await limiter.check_and_increment("t1", "signup", "a@x.com")

    def test_concurrent_attempts_never_exceed_limit(self, limiter):
        results = []
        results_lock = threading.Lock()
        barrier = threading.Barrier(20)

        def worker():
            barrier.wait()
            decision = asyncio.run(limiter.check_and_increment("t1", LOGIN, "a@x.com"))
            with results_lock:
                results.append(decision)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert sum(isinstance(d, Allowed) for d in results) == 5
        assert sum(isinstance(d, Limited) for d in results) == 15


class TestFailClosed:
    async def test_store_failure_limits(self, limiter, memory_store, monkeypatch):
        from warden.storage.memory import TenantStore

        def broken(self, key):
            raise BackendUnavailable("store down", operation="get_rate_window")

        monkeypatch.setattr(TenantStore, "get_rate_window", broken)
        decision = await limiter.check_and_increment("t1", LOGIN, "a@x.com")
        assert decision == Limited(retry_after=60)

    async def test_cas_contention_exhaustion_limits(self, memory_store, clock, monkeypatch):
        from warden.storage.memory import TenantStore

        limiter = RateLimiter(
            memory_store,
            policies={LOGIN: RatePolicy(LOGIN, 5, 60)},
            clock=clock,
            max_cas_attempts=3,
        )
        monkeypatch.setattr(TenantStore, "compare_and_set_rate_window", lambda *a: False)
        assert isinstance(await limiter.check_and_increment("t1", LOGIN, "a@x.com"), Limited)

    async def test_redis_error_limits(self, memory_store, clock):
        cache = AsyncMock()
        cache.fixed_window_hit.side_effect = RedisConnectionError("refused")
        limiter = RateLimiter(
            memory_store, cache, policies={LOGIN: RatePolicy(LOGIN, 5, 60)}, clock=clock
        )
        assert await limiter.check_and_increment("t1", LOGIN, "a@x.com") == Limited(retry_after=60)

    async def test_redis_timeout_limits(self, memory_store, clock):
        cache = AsyncMock()
        cache.fixed_window_hit.side_effect = asyncio.TimeoutError()
        limiter = RateLimiter(
            memory_store, cache, policies={LOGIN: RatePolicy(LOGIN, 5, 60)}, clock=clock
        )
        assert isinstance(await limiter.check_and_increment("t1", LOGIN, "a@x.com"), Limited)


class TestRedisBackedLimiter:
    async def test_allowed_decision_from_script(self, memory_store, clock):
        cache = AsyncMock()
        cache.fixed_window_hit.return_value = (True, 2, 58)
        limiter = RateLimiter(
            memory_store, cache, policies={LOGIN: RatePolicy(LOGIN, 5, 60)}, clock=clock
        )
        assert await limiter.check_and_increment("t1", LOGIN, "a@x.com") == Allowed(remaining=3)
        cache.fixed_window_hit.assert_awaited_once_with("login", "a@x.com", 5, 60, tenant_id="t1")

    async def test_limited_decision_uses_ttl(self, memory_store, clock):
        cache = AsyncMock()
        cache.fixed_window_hit.return_value = (False, 5, 17)
        limiter = RateLimiter(
            memory_store, cache, policies={LOGIN: RatePolicy(LOGIN, 5, 60)}, clock=clock
        )
        assert await limiter.check_and_increment("t1", LOGIN, "a@x.com") == Limited(retry_after=17)

    def test_rate_keys_hash_subject_and_scope_tenant(self):
        key = RedisCache._normalize_rate_key("login", "a@x.com", "t1")
        assert key.startswith("rate:t1:login:")
        assert "a@x.com" not in key
        assert key != RedisCache._normalize_rate_key("login", "a@x.com", "t2")

    def test_delimiters_in_subject_cannot_collide(self):
        a = RedisCache._normalize_rate_key("login", "x:login:y", "t1")
        b = RedisCache._normalize_rate_key("login", "x", "t1")
        assert a != b


class TestPolicies:
    def test_default_policies_follow_settings(self, settings):
        policies = default_policies(settings)
        assert policies[LOGIN] == RatePolicy(LOGIN, settings.login_rate_limit, settings.login_rate_window_seconds)
        assert set(policies) == {"login", "oauth", "reset"}
