from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger, hash_identifier
from warden.service import store_access
from warden.service.audit import AuditRecorder
from warden.service.errors import (
    AccountInactive,
    AuthError,
    EmailAlreadyRegistered,
    InvalidCredentials,
    InvalidRegistration,
    RateLimited,
    StoreUnavailable,
)
from warden.service.interfaces import CredentialStore, PasswordHasherProtocol
from warden.service.oauth import OAuthFederationFlow, OAuthStart
from warden.service.password_reset import (
    PasswordResetFlow,
    ResetConfirmation,
    ResetReceipt,
    ResetTokenStatus,
)
from warden.service.rate_limit import LOGIN, OAUTH, RESET, Limited, RateLimiter
from warden.service.tokens import AccessClaims, TokenLifecycleManager, TokenPair
from warden.service.validation import normalize_email, password_policy_violations, validate_email
from warden.storage.errors import ConstraintViolation
from warden.storage.models import PasswordCredential, Principal, RequestSource, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class PrincipalSummary:
    id: str
    tenant_id: str
    email: str
    roles: Tuple[str, ...]
    email_verified: bool
    display_name: Optional[str] = None
    picture: Optional[str] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalSummary":
        return cls(
            id=principal.id,
            tenant_id=principal.tenant_id,
            email=principal.email,
            roles=tuple(sorted(principal.roles)),
            email_verified=principal.email_verified,
            display_name=principal.display_name,
            picture=principal.picture,
            last_login_at=principal.last_login_at,
        )


@dataclass(frozen=True)
class Session:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    principal: PrincipalSummary
    token_type: str = "Bearer"

    @classmethod
    def from_pair(cls, pair: TokenPair, principal: Principal) -> "Session":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            session_id=pair.session_id,
            principal=PrincipalSummary.from_principal(principal),
            token_type=pair.token_type,
        )


class SessionOrchestrator:
    """Entry point for every authentication request.

    Each call runs Received -> RateChecked -> CredentialChecked and ends in
    exactly one of Accepted (a Session is returned) or Rejected (an AuthError
    is raised). Every terminal state is written to the audit trail. Nothing
    here retries a failed authentication.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        rate_limiter: RateLimiter,
        tokens: TokenLifecycleManager,
        hasher: PasswordHasherProtocol,
        audit: AuditRecorder,
        reset_flow: PasswordResetFlow,
        oauth_flow: OAuthFederationFlow,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self.hasher = hasher
        self.audit = audit
        self.reset_flow = reset_flow
        self.oauth_flow = oauth_flow
        self.settings = settings
        self.clock = clock

    # Helpers --------------------------------------------------------------

    @staticmethod
    def _rate_keys(email: Optional[str], source: Optional[RequestSource]) -> List[str]:
        keys = []
        if email:
            keys.append(f"email:{email}")
        if source is not None and source.ip_address:
            keys.append(f"ip:{source.ip_address}")
        return keys

    async def _check_rate(self, tenant: str, namespace: str, keys: Iterable[str]) -> None:
        for key in keys:
            decision = await self.rate_limiter.check_and_increment(tenant, namespace, key)
            if isinstance(decision, Limited):
                raise RateLimited(decision.retry_after)

    def _reject(
        self,
        tenant: str,
        email: Optional[str],
        exc: AuthError,
        *,
        method: str,
        source: Optional[RequestSource],
        principal_id: Optional[str] = None,
    ) -> None:
        principal_id = principal_id or exc.detail.get("principal_id")
        self.audit.record(
            self.audit.attempt(
                tenant,
                email,
                success=False,
                method=method,
                principal_id=principal_id,
                failure_reason=exc.reason,
                source=source,
            )
        )
        log = logger.error if exc.reason == "token_reuse_detected" else logger.warning
        log(
            "login_failed",
            tenant_id=tenant,
            method=method,
            reason=exc.reason,
            principal_id=principal_id,
            email_hash=hash_identifier(email),
        )

    def _accept(
        self,
        principal: Principal,
        pair: TokenPair,
        *,
        method: str,
        source: Optional[RequestSource],
        touch_last_login: bool = True,
    ) -> Session:
        if touch_last_login:
            now = self.clock()
            repo = self.store.for_tenant(principal.tenant_id)
            try:
                store_access.write(repo.record_login, principal.id, now, operation="record_login")
                principal = principal.copy(last_login_at=now, updated_at=now)
            except StoreUnavailable:
                logger.warning("last_login_update_failed", principal_id=principal.id)
        self.audit.record(
            self.audit.attempt(
                principal.tenant_id,
                principal.email,
                success=True,
                method=method,
                principal_id=principal.id,
                source=source,
                token_issued=True,
                refresh_issued=True,
                session_id=pair.session_id,
            )
        )
        logger.info(
            "login_succeeded",
            tenant_id=principal.tenant_id,
            principal_id=principal.id,
            method=method,
            session_id=pair.session_id,
        )
        return Session.from_pair(pair, principal)

    async def _maybe_rehash(self, principal: Principal, password: str) -> None:
        current = principal.password_hash
        if not current or not self.hasher.needs_rehash(current):
            return
        new_hash = await asyncio.to_thread(self.hasher.hash, password)
        repo = self.store.for_tenant(principal.tenant_id)
        try:
            store_access.write(
                repo.set_password_hash, principal.id, new_hash, self.clock(),
                operation="set_password_hash",
            )
            logger.info("password_rehashed", principal_id=principal.id)
        except StoreUnavailable:
            logger.warning("password_rehash_failed", principal_id=principal.id)

    # Password -------------------------------------------------------------

    async def authenticate_password(
        self,
        tenant: str,
        email: str,
        password: Optional[str],
        *,
        source: Optional[RequestSource] = None,
    ) -> Session:
        email = normalize_email(email or "")
        principal: Optional[Principal] = None
        try:
            await self._check_rate(tenant, LOGIN, self._rate_keys(email, source))
            repo = self.store.for_tenant(tenant)
            principal = store_access.read(
                repo.find_by_email, email,
                retries=self.settings.store_read_retries, operation="find_by_email",
            )
            stored_hash = principal.password_hash if principal is not None else None
            matched = await asyncio.to_thread(self.hasher.verify, password or "", stored_hash)
            if principal is None or not matched:
                raise InvalidCredentials()
            if not principal.active:
                raise AccountInactive()
            await self._maybe_rehash(principal, password or "")
            pair = self.tokens.issue_session(principal)
        except AuthError as exc:
            self._reject(
                tenant, email, exc, method="password", source=source,
                principal_id=principal.id if principal else None,
            )
            raise
        return self._accept(principal, pair, method="password", source=source)

    async def register_password(
        self,
        tenant: str,
        email: str,
        password: str,
        *,
        roles: Optional[Iterable[str]] = None,
        source: Optional[RequestSource] = None,
    ) -> Session:
        try:
            try:
                email = validate_email(email)
            except ValueError as exc:
                raise InvalidRegistration([str(exc)]) from exc
            violations = password_policy_violations(
                password,
                min_length=self.settings.password_min_length,
                max_length=self.settings.password_max_length,
            )
            if violations:
                raise InvalidRegistration(violations)
            password_hash = await asyncio.to_thread(self.hasher.hash, password)
            principal = Principal.new(
                tenant,
                email,
                PasswordCredential(password_hash),
                roles=frozenset(roles) if roles else None,
                now=self.clock(),
            )
            repo = self.store.for_tenant(tenant)
            try:
                principal = store_access.write(
                    repo.create_principal, principal, operation="create_principal"
                )
            except ConstraintViolation as exc:
                raise EmailAlreadyRegistered() from exc
            pair = self.tokens.issue_session(principal)
        except AuthError as exc:
            self._reject(
                tenant, email if isinstance(email, str) else None, exc,
                method="register", source=source,
            )
            raise
        return self._accept(principal, pair, method="register", source=source)

    # Refresh / logout -----------------------------------------------------

    async def refresh(
        self, tenant: str, refresh_token: str, *, source: Optional[RequestSource] = None
    ) -> Session:
        try:
            pair, principal = self.tokens.rotate(tenant, refresh_token)
        except AuthError as exc:
            self._reject(tenant, None, exc, method="refresh", source=source)
            raise
        return self._accept(
            principal, pair, method="refresh", source=source, touch_last_login=False
        )

    async def logout(self, tenant: str, refresh_token: str) -> None:
        """Revoke the session; repeating the call is not an error."""
        record = self.tokens.revoke(tenant, refresh_token, reason="logout")
        logger.info(
            "logout",
            tenant_id=tenant,
            principal_id=record.principal_id if record else None,
            session_id=record.family_id if record else None,
        )

    def verify_access(self, tenant: str, access_token: str) -> AccessClaims:
        return self.tokens.verify_access(tenant, access_token)

    # Password reset -------------------------------------------------------

    async def request_password_reset(
        self, tenant: str, email: str, *, source: Optional[RequestSource] = None
    ) -> ResetReceipt:
        email = normalize_email(email or "")
        await self._check_rate(tenant, RESET, self._rate_keys(email, source))
        return await self.reset_flow.request_reset(tenant, email, source=source)

    def validate_reset_token(self, tenant: str, token: str) -> ResetTokenStatus:
        return self.reset_flow.validate(tenant, token)

    async def confirm_password_reset(
        self,
        tenant: str,
        token: str,
        new_password: str,
        *,
        source: Optional[RequestSource] = None,
    ) -> ResetConfirmation:
        try:
            confirmation = await self.reset_flow.confirm(tenant, token, new_password)
        except AuthError as exc:
            self._reject(tenant, None, exc, method="password_reset", source=source)
            raise
        self.audit.record(
            self.audit.attempt(
                tenant,
                confirmation.email,
                success=True,
                method="password_reset",
                principal_id=confirmation.principal_id,
                source=source,
            )
        )
        return confirmation

    # OAuth ----------------------------------------------------------------

    async def begin_oauth(
        self, tenant: str, provider: str, *, source: Optional[RequestSource] = None
    ) -> OAuthStart:
        await self._check_rate(tenant, OAUTH, self._rate_keys(None, source))
        return self.oauth_flow.begin(tenant, provider)

    async def complete_oauth(
        self,
        tenant: str,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        *,
        source: Optional[RequestSource] = None,
    ) -> Session:
        method = f"oauth:{provider}"
        email: Optional[str] = None
        principal_id: Optional[str] = None
        try:
            await self._check_rate(tenant, OAUTH, self._rate_keys(None, source))
            login = await self.oauth_flow.complete(tenant, provider, code, state)
            principal = login.principal
            email, principal_id = principal.email, principal.id
            if not principal.active:
                raise AccountInactive()
            pair = self.tokens.issue_session(principal)
        except AuthError as exc:
            self._reject(
                tenant, email, exc, method=method, source=source, principal_id=principal_id
            )
            raise
        return self._accept(principal, pair, method=method, source=source)
