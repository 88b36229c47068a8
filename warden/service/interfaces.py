from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from warden.storage.models import (
    LoginAttempt,
    OAuthSession,
    OAuthUserInfo,
    Principal,
    RateWindow,
    RefreshToken,
    ResetToken,
)


class TenantRepository(Protocol):
    """Credential store handle bound to exactly one tenant."""

    @property
    def tenant_id(self) -> str: ...

    def find_by_email(self, email: str) -> Optional[Principal]: ...

    def find_by_oauth(self, provider: str, provider_id: str) -> Optional[Principal]: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def create_principal(self, principal: Principal) -> Principal: ...

    def save_principal(self, principal: Principal) -> Principal: ...

    def record_login(self, principal_id: str, at: datetime) -> None: ...

    def set_password_hash(self, principal_id: str, password_hash: str, at: datetime) -> bool: ...

    def replace_reset_token(self, token: ResetToken) -> int: ...

    def get_reset_token(self, token_digest: str) -> Optional[ResetToken]: ...

    def complete_password_reset(
        self, token_digest: str, password_hash: str, now: datetime
    ) -> Optional[ResetToken]: ...

    def save_refresh_token(self, token: RefreshToken) -> None: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(self, old_id: str, successor: RefreshToken) -> bool: ...

    def revoke_refresh_family(self, family_id: str, now: datetime, reason: str) -> int: ...

    def revoke_principal_refresh_tokens(
        self, principal_id: str, now: datetime, reason: str
    ) -> int: ...

    def save_oauth_session(self, session: OAuthSession) -> None: ...

    def consume_oauth_session(self, state: str, now: datetime) -> Optional[OAuthSession]: ...

    def get_rate_window(self, key: str) -> Optional[RateWindow]: ...

    def compare_and_set_rate_window(self, window: RateWindow, expected_version: int) -> bool: ...


class CredentialStore(Protocol):
    def for_tenant(self, tenant_id: str) -> TenantRepository: ...


class AuditSink(Protocol):
    def append(self, attempt: LoginAttempt) -> None: ...

    def query(
        self,
        *,
        tenant_id: Optional[str] = None,
        principal_id: Optional[str] = None,
        email: Optional[str] = None,
        success: Optional[bool] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[LoginAttempt]: ...


class PasswordHasherProtocol(Protocol):
    def hash(self, plaintext: str) -> str: ...

    def verify(self, plaintext: str, password_hash: Optional[str]) -> bool: ...

    def needs_rehash(self, password_hash: str) -> bool: ...


class SigningAuthorityProtocol(Protocol):
    def sign(self, claims: Dict[str, Any]) -> str: ...

    def verify(self, token: str) -> Dict[str, Any]: ...


class OAuthProviderClient(Protocol):
    name: str

    def authorization_url(self, state: str, code_challenge: str) -> str: ...

    async def exchange(self, code: str, code_verifier: str) -> Dict[str, Any]: ...

    async def user_info(self, provider_token: Dict[str, Any]) -> OAuthUserInfo: ...


class ResetNotifier(Protocol):
    def send_password_reset(self, to_email: str, token: str) -> bool: ...
