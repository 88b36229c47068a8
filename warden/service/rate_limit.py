from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Union

from redis.exceptions import RedisError

from warden.config import Settings
from warden.logging import get_logger, hash_identifier
from warden.service.interfaces import CredentialStore
from warden.storage.errors import BackendUnavailable
from warden.storage.models import RateWindow, utcnow

logger = get_logger(__name__)

LOGIN = "login"
OAUTH = "oauth"
RESET = "reset"


@dataclass(frozen=True)
class RatePolicy:
    namespace: str
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class Allowed:
    remaining: int


@dataclass(frozen=True)
class Limited:
    retry_after: int


RateDecision = Union[Allowed, Limited]


def default_policies(settings: Settings) -> Dict[str, RatePolicy]:
    return {
        LOGIN: RatePolicy(LOGIN, settings.login_rate_limit, settings.login_rate_window_seconds),
        OAUTH: RatePolicy(OAUTH, settings.oauth_rate_limit, settings.oauth_rate_window_seconds),
        RESET: RatePolicy(RESET, settings.reset_rate_limit, settings.reset_rate_window_seconds),
    }


class RateLimiter:
    """Fixed-window attempt counter per (tenant, namespace, key).

    Counters live in Redis when a cache is configured (atomic Lua script),
    otherwise in the tenant's credential store as versioned records updated
    by compare-and-set. Any backend failure is reported as ``Limited``.
    """

    def __init__(
        self,
        store: CredentialStore,
        cache=None,
        *,
        policies: Dict[str, RatePolicy],
        clock: Callable[[], datetime] = utcnow,
        max_cas_attempts: int = 16,
    ) -> None:
        self.store = store
        self.cache = cache
        self.policies = dict(policies)
        self.clock = clock
        self.max_cas_attempts = max_cas_attempts

    def policy(self, namespace: str) -> RatePolicy:
        try:
            return self.policies[namespace]
        except KeyError:
            raise ValueError(f"no rate policy for namespace {namespace!r}") from None

    async def check_and_increment(self, tenant: str, namespace: str, key: str) -> RateDecision:
        policy = self.policy(namespace)
        try:
            if self.cache is not None:
                allowed, count, ttl = await self.cache.fixed_window_hit(
                    namespace, key, policy.limit, policy.window_seconds, tenant_id=tenant
                )
                decision: RateDecision = (
                    Allowed(remaining=max(0, policy.limit - count))
                    if allowed
                    else Limited(retry_after=max(1, ttl))
                )
            else:
                decision = self._store_hit(tenant, policy, key)
        except (RedisError, BackendUnavailable, OSError, asyncio.TimeoutError) as exc:
            logger.error(
                "rate_limiter_unavailable",
                tenant_id=tenant,
                namespace=namespace,
                error=str(exc),
                alert=True,
            )
            return Limited(retry_after=policy.window_seconds)

        if isinstance(decision, Limited):
            logger.warning(
                "rate_limited",
                tenant_id=tenant,
                namespace=namespace,
                subject_hash=hash_identifier(key),
                retry_after=decision.retry_after,
            )
        return decision

    def _store_hit(self, tenant: str, policy: RatePolicy, key: str) -> RateDecision:
        repo = self.store.for_tenant(tenant)
        window_key = f"{policy.namespace}:{key}"
        for _ in range(self.max_cas_attempts):
            now = self.clock()
            current = repo.get_rate_window(window_key)
            version = current.version if current is not None else -1
            if current is None or current.is_elapsed(now):
                fresh = RateWindow(
                    tenant_id=tenant,
                    key=window_key,
                    count=1,
                    window_start=now,
                    limit=policy.limit,
                    window_seconds=policy.window_seconds,
                    version=version,
                )
                if repo.compare_and_set_rate_window(fresh, version):
                    return Allowed(remaining=policy.limit - 1)
                continue
            if current.count >= policy.limit:
                remaining = (current.window_end - now).total_seconds()
                return Limited(retry_after=max(1, math.ceil(remaining)))
            bumped = replace(current, count=current.count + 1)
            if repo.compare_and_set_rate_window(bumped, version):
                return Allowed(remaining=policy.limit - bumped.count)
        raise BackendUnavailable("rate window contention", operation="rate_limit")
