from __future__ import annotations

import base64
import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from warden.config import Settings
from warden.logging import get_logger, hash_identifier
from warden.service import store_access
from warden.service.errors import (
    IdentityConflict,
    InvalidOrExpiredOAuthState,
    ProviderExchangeFailed,
    UnsupportedProvider,
)
from warden.service.interfaces import CredentialStore, OAuthProviderClient, TenantRepository
from warden.service.validation import normalize_email
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    FederatedCredential,
    OAuthSession,
    OAuthUserInfo,
    Principal,
    utcnow,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class OAuthStart:
    authorization_url: str
    state: str
    provider: str
    expires_at: datetime


@dataclass(frozen=True)
class FederatedLogin:
    principal: Principal
    info: OAuthUserInfo
    created: bool


def pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class OAuthFederationFlow:
    """CSRF-bound authorization code flow resolving to tenant principals."""

    def __init__(
        self,
        store: CredentialStore,
        providers: Dict[str, OAuthProviderClient],
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.providers = dict(providers)
        self.settings = settings
        self.clock = clock
        self._state_ttl = timedelta(seconds=settings.oauth_state_ttl_seconds)

    def _provider(self, name: str) -> OAuthProviderClient:
        adapter = self.providers.get(name)
        if adapter is None:
            logger.warning("oauth_not_configured", provider=name)
            raise UnsupportedProvider()
        return adapter

    def begin(self, tenant: str, provider: str) -> OAuthStart:
        adapter = self._provider(provider)
        now = self.clock()
        session = OAuthSession(
            state=secrets.token_urlsafe(32),
            provider=provider,
            tenant_id=tenant,
            created_at=now,
            expires_at=now + self._state_ttl,
            code_verifier=secrets.token_urlsafe(64),
        )
        repo = self.store.for_tenant(tenant)
        store_access.write(repo.save_oauth_session, session, operation="save_oauth_session")
        url = adapter.authorization_url(session.state, pkce_challenge(session.code_verifier))
        logger.info("oauth_started", tenant_id=tenant, provider=provider)
        return OAuthStart(
            authorization_url=url,
            state=session.state,
            provider=provider,
            expires_at=session.expires_at,
        )

    async def complete(
        self, tenant: str, provider: str, code: Optional[str], state: Optional[str]
    ) -> FederatedLogin:
        """Consume the state, exchange the code and resolve the principal.

        The state is burned before any provider I/O, so a failed exchange
        cannot be replayed with the same state.
        """
        if not state:
            raise InvalidOrExpiredOAuthState(reason="missing_state")
        repo = self.store.for_tenant(tenant)
        session = store_access.write(
            repo.consume_oauth_session, state, self.clock(), operation="consume_oauth_session"
        )
        if session is None:
            logger.warning(
                "oauth_state_rejected",
                tenant_id=tenant,
                provider=provider,
                state_hash=hash_identifier(state),
            )
            raise InvalidOrExpiredOAuthState()
        if session.provider != provider:
            logger.warning(
                "oauth_state_rejected",
                tenant_id=tenant,
                provider=provider,
                expected_provider=session.provider,
            )
            raise InvalidOrExpiredOAuthState(reason="provider_mismatch")
        if not code:
            raise ProviderExchangeFailed(reason="missing_code")

        adapter = self._provider(provider)
        provider_token = await adapter.exchange(code, session.code_verifier)
        info = await adapter.user_info(provider_token)
        principal, created = self._resolve(repo, info)
        logger.info(
            "oauth_identity_resolved",
            tenant_id=tenant,
            provider=provider,
            principal_id=principal.id,
            created=created,
        )
        return FederatedLogin(principal=principal, info=info, created=created)

    def _resolve(self, repo: TenantRepository, info: OAuthUserInfo) -> Tuple[Principal, bool]:
        retries = self.settings.store_read_retries
        existing = store_access.read(
            repo.find_by_oauth, info.provider, info.external_id,
            retries=retries, operation="find_by_oauth",
        )
        if existing is not None:
            return self._refresh_profile(repo, existing, info), False

        email = normalize_email(info.email)
        owner = store_access.read(
            repo.find_by_email, email, retries=retries, operation="find_by_email"
        )
        if owner is not None:
            logger.warning(
                "oauth_email_conflict",
                tenant_id=repo.tenant_id,
                provider=info.provider,
                principal_id=owner.id,
            )
            raise IdentityConflict()

        principal = Principal.new(
            repo.tenant_id,
            email,
            FederatedCredential(provider=info.provider, provider_id=info.external_id),
            email_verified=True,
            display_name=info.name,
            picture=info.picture,
            now=self.clock(),
        )
        try:
            created = store_access.write(
                repo.create_principal, principal, operation="create_principal"
            )
        except ConstraintViolation:
            # Lost a race with a concurrent first login for the same identity.
            winner = store_access.read(
                repo.find_by_oauth, info.provider, info.external_id,
                retries=retries, operation="find_by_oauth",
            )
            if winner is None:
                raise IdentityConflict()
            return winner, False
        return created, True

    def _refresh_profile(
        self, repo: TenantRepository, principal: Principal, info: OAuthUserInfo
    ) -> Principal:
        # Providers omit the name after the first login; keep what we have.
        name = info.name or principal.display_name
        picture = info.picture or principal.picture
        if name == principal.display_name and picture == principal.picture:
            return principal
        updated = principal.copy(display_name=name, picture=picture, updated_at=self.clock())
        return store_access.write(repo.save_principal, updated, operation="save_principal")
