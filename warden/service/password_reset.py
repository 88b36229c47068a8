from __future__ import annotations

import asyncio
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from warden.config import Settings
from warden.logging import get_logger, hash_identifier
from warden.service import store_access
from warden.service.errors import InvalidOrExpiredResetToken, WeakPassword
from warden.service.interfaces import CredentialStore, PasswordHasherProtocol, ResetNotifier
from warden.service.validation import normalize_email, password_policy_violations
from warden.storage.models import RequestSource, ResetToken, utcnow

logger = get_logger(__name__)

RESET_REQUESTED_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent."
)


@dataclass(frozen=True)
class ResetReceipt:
    message: str = RESET_REQUESTED_MESSAGE


@dataclass(frozen=True)
class ResetTokenStatus:
    valid: bool
    email: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class ResetConfirmation:
    tenant_id: str
    principal_id: str
    email: str


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class PasswordResetFlow:
    """Single-use reset tokens: issue, inspect, consume."""

    def __init__(
        self,
        store: CredentialStore,
        hasher: PasswordHasherProtocol,
        settings: Settings,
        *,
        notifier: Optional[ResetNotifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self._deliveries: Set[asyncio.Task] = set()
        self._ttl = timedelta(minutes=settings.reset_token_ttl_minutes)

    async def request_reset(
        self, tenant: str, email: str, *, source: Optional[RequestSource] = None
    ) -> ResetReceipt:
        """Issue a fresh token if the account exists; the reply never says."""
        email = normalize_email(email or "")
        ip_address = source.ip_address if source else None
        repo = self.store.for_tenant(tenant)
        principal = store_access.read(
            repo.find_by_email, email,
            retries=self.settings.store_read_retries, operation="find_by_email",
        )
        if principal is None or not principal.active or principal.federated is not None:
            logger.info(
                "password_reset_requested",
                tenant_id=tenant,
                email_hash=hash_identifier(email),
                ip_address=ip_address,
                matched=False,
            )
            return ResetReceipt()

        token = secrets.token_urlsafe(32)
        now = self.clock()
        record = ResetToken(
            token_digest=token_digest(token),
            principal_id=principal.id,
            tenant_id=tenant,
            email=principal.email,
            issued_at=now,
            expires_at=now + self._ttl,
            ip_address=ip_address,
        )
        invalidated = store_access.write(
            repo.replace_reset_token, record, operation="replace_reset_token"
        )
        logger.info(
            "password_reset_requested",
            tenant_id=tenant,
            principal_id=principal.id,
            ip_address=ip_address,
            matched=True,
            invalidated=invalidated,
        )
        self._schedule_delivery(principal.email, token)
        return ResetReceipt()

    def _schedule_delivery(self, email: str, token: str) -> None:
        # The reply must not wait on the mail server, or latency would reveal
        # which addresses have accounts.
        task = asyncio.create_task(self._deliver(email, token))
        self._deliveries.add(task)
        task.add_done_callback(self._delivery_done)

    def _delivery_done(self, task: asyncio.Task) -> None:
        self._deliveries.discard(task)
        if task.cancelled():
            logger.warning("password_reset_delivery_cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error("password_reset_delivery_failed", error=str(exc), alert=True)

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    async def drain(self) -> None:
        """Wait for every scheduled reset email to finish sending."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def _deliver(self, email: str, token: str) -> None:
        if self.notifier is None:
            logger.warning("password_reset_notifier_missing")
            return
        try:
            delivered = await asyncio.to_thread(self.notifier.send_password_reset, email, token)
        except Exception as exc:
            # Delivery problems must not change the generic reply.
            logger.error("password_reset_delivery_failed", error=str(exc), alert=True)
            return
        if not delivered:
            logger.error("password_reset_delivery_failed", alert=True)

    def validate(self, tenant: str, token: str) -> ResetTokenStatus:
        """Read-only check; does not consume the token."""
        if not token:
            return ResetTokenStatus(valid=False)
        repo = self.store.for_tenant(tenant)
        record = store_access.read(
            repo.get_reset_token, token_digest(token),
            retries=self.settings.store_read_retries, operation="get_reset_token",
        )
        if record is None or not record.is_usable(self.clock()):
            return ResetTokenStatus(valid=False)
        return ResetTokenStatus(valid=True, email=record.email, expires_at=record.expires_at)

    async def confirm(self, tenant: str, token: str, new_password: str) -> ResetConfirmation:
        """Consume the token and set the password.

        Marking the token used, invalidating sibling tokens, storing the new
        hash and revoking every refresh token of the principal happen in one
        store operation. Once it returns, consumption is final.
        """
        violations = password_policy_violations(
            new_password,
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )
        if violations:
            raise WeakPassword(violations)
        if not token:
            raise InvalidOrExpiredResetToken(reason="unknown_reset_token")

        digest = token_digest(token)
        repo = self.store.for_tenant(tenant)
        record = store_access.read(
            repo.get_reset_token, digest,
            retries=self.settings.store_read_retries, operation="get_reset_token",
        )
        now = self.clock()
        if record is None:
            raise InvalidOrExpiredResetToken(reason="unknown_reset_token")
        if record.used:
            raise InvalidOrExpiredResetToken(reason="reset_token_used")
        if record.is_expired(now):
            raise InvalidOrExpiredResetToken(reason="reset_token_expired")

        new_hash = await asyncio.to_thread(self.hasher.hash, new_password)
        consumed = store_access.write(
            repo.complete_password_reset, digest, new_hash, self.clock(),
            operation="complete_password_reset",
        )
        if consumed is None:
            raise InvalidOrExpiredResetToken(reason="reset_token_consumed_concurrently")
        logger.info(
            "password_reset_completed",
            tenant_id=tenant,
            principal_id=consumed.principal_id,
        )
        return ResetConfirmation(
            tenant_id=tenant, principal_id=consumed.principal_id, email=consumed.email
        )
