from __future__ import annotations

import asyncio
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Set
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from warden.config import Settings, get_settings, reset_settings_cache
from warden.logging import get_logger
from warden.service.audit import AuditRecorder
from warden.service.email import EmailService
from warden.service.interfaces import (
    AuditSink,
    CredentialStore,
    OAuthProviderClient,
    ResetNotifier,
    SigningAuthorityProtocol,
)
from warden.service.oauth import OAuthFederationFlow
from warden.service.oauth_providers import build_providers
from warden.service.orchestrator import SessionOrchestrator
from warden.service.password_reset import PasswordResetFlow
from warden.service.passwords import Argon2PasswordHasher
from warden.service.rate_limit import RateLimiter, default_policies
from warden.service.signing import SigningAuthority
from warden.service.tokens import TokenLifecycleManager
from warden.storage.memory import MemoryAuditSink, MemoryStore
from warden.storage.models import utcnow
from warden.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username}:***@{netloc}" if parsed.username else f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Composition root holding one instance of every collaborator."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
        audit_sink: Optional[AuditSink] = None,
        notifier: Optional[ResetNotifier] = None,
        providers: Optional[Dict[str, OAuthProviderClient]] = None,
        signer: Optional[SigningAuthorityProtocol] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info("runtime_init_started", test_mode=self.settings.test_mode)

        self.store = store if store is not None else MemoryStore()
        self.audit_sink = audit_sink if audit_sink is not None else MemoryAuditSink()
        self.cache = self._build_cache()

        self.hasher = Argon2PasswordHasher.from_settings(self.settings)
        self.signer = signer if signer is not None else SigningAuthority.from_settings(self.settings)
        self.rate_limiter = RateLimiter(
            self.store,
            self.cache,
            policies=default_policies(self.settings),
            clock=clock,
        )
        self.tokens = TokenLifecycleManager(self.store, self.signer, self.settings, clock=clock)
        self.audit = AuditRecorder(
            self.audit_sink, pending_limit=self.settings.audit_pending_limit, clock=clock
        )
        self.email = EmailService.from_settings(self.settings)
        self.reset_flow = PasswordResetFlow(
            self.store,
            self.hasher,
            self.settings,
            notifier=notifier if notifier is not None else self.email,
            clock=clock,
        )
        self.oauth_flow = OAuthFederationFlow(
            self.store,
            providers if providers is not None else build_providers(self.settings),
            self.settings,
            clock=clock,
        )
        self.orchestrator = SessionOrchestrator(
            self.store,
            rate_limiter=self.rate_limiter,
            tokens=self.tokens,
            hasher=self.hasher,
            audit=self.audit,
            reset_flow=self.reset_flow,
            oauth_flow=self.oauth_flow,
            settings=self.settings,
            clock=clock,
        )
        logger.info(
            "runtime_init_completed",
            rate_backend="redis" if self.cache else "store",
            oauth_providers=sorted(self.oauth_flow.providers),
        )

    def _build_cache(self):
        if not self.settings.redis_url:
            return None
        try:
            # Sync client in test mode avoids event loop binding issues
            if self.settings.test_mode:
                cache = SyncRedisCache(self.settings.redis_url)
            else:
                cache = RedisCache(self.settings.redis_url)
            cache.verify_connection()
            return cache
        except (RedisError, OSError) as exc:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is configured but unreachable; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to keep rate "
                    "windows in the credential store."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return None

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()
_pending_closes: Set[asyncio.Task] = set()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_done(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("runtime_cache_close_failed", error=str(task.exception()))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                asyncio.run(runtime.cache.close())
            else:
                try:
                    loop = asyncio.get_running_loop()
                    task = loop.create_task(runtime.cache.close())
                    _pending_closes.add(task)
                    task.add_done_callback(_close_done)
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
