from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Optional, Union

DEFAULT_ROLES: FrozenSet[str] = frozenset({"user"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PasswordCredential:
    # None means the principal has no usable password.
    hash: Optional[str]


@dataclass(frozen=True)
class FederatedCredential:
    provider: str
    provider_id: str


Credential = Union[PasswordCredential, FederatedCredential]


@dataclass
class Principal:
    id: str
    tenant_id: str
    email: str
    credential: Credential
    roles: FrozenSet[str] = DEFAULT_ROLES
    active: bool = True
    email_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    display_name: Optional[str] = None
    picture: Optional[str] = None

    def __post_init__(self) -> None:
        self.roles = frozenset(self.roles) or DEFAULT_ROLES

    @property
    def password_hash(self) -> Optional[str]:
        if isinstance(self.credential, PasswordCredential):
            return self.credential.hash
        return None

    @property
    def federated(self) -> Optional[FederatedCredential]:
        if isinstance(self.credential, FederatedCredential):
            return self.credential
        return None

    @classmethod
    def new(
        cls,
        tenant_id: str,
        email: str,
        credential: Credential,
        *,
        roles: Optional[FrozenSet[str]] = None,
        email_verified: bool = False,
        display_name: Optional[str] = None,
        picture: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Principal":
        ts = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            email=email,
            credential=credential,
            roles=frozenset(roles or DEFAULT_ROLES),
            email_verified=email_verified,
            created_at=ts,
            updated_at=ts,
            display_name=display_name,
            picture=picture,
        )

    def copy(self, **changes) -> "Principal":
        return replace(self, **changes)


@dataclass
class ResetToken:
    # Only the digest of the emailed secret is persisted.
    token_digest: str
    principal_id: str
    tenant_id: str
    email: str
    issued_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_usable(self, now: datetime) -> bool:
        return not self.used and not self.is_expired(now)


@dataclass
class RefreshToken:
    id: str
    principal_id: str
    tenant_id: str
    family_id: str
    issued_at: datetime
    expires_at: datetime
    parent_id: Optional[str] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    replaced_by: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def is_spent(self) -> bool:
        return self.revoked or self.replaced_by is not None


@dataclass
class OAuthSession:
    state: str
    provider: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime
    code_verifier: str
    consumed: bool = False
    consumed_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class RequestSource:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_method: Optional[str] = None
    request_path: Optional[str] = None


@dataclass(frozen=True)
class OAuthUserInfo:
    provider: str
    external_id: str
    email: str
    email_verified: bool
    name: Optional[str] = None
    picture: Optional[str] = None


@dataclass(frozen=True)
class LoginAttempt:
    id: str
    tenant_id: str
    email: Optional[str]
    success: bool
    timestamp: datetime
    method: str = "password"
    principal_id: Optional[str] = None
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    request_method: Optional[str] = None
    request_path: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    token_issued: bool = False
    refresh_issued: bool = False
    session_id: Optional[str] = None

    @property
    def login_date(self) -> str:
        return self.timestamp.strftime("%Y-%m-%d")

    @property
    def login_time(self) -> str:
        return self.timestamp.strftime("%H:%M:%S")


@dataclass
class RateWindow:
    tenant_id: str
    key: str
    count: int
    window_start: datetime
    limit: int
    window_seconds: int
    version: int = 0

    @property
    def window_end(self) -> datetime:
        return self.window_start + timedelta(seconds=self.window_seconds)

    def is_elapsed(self, now: datetime) -> bool:
        return now >= self.window_end
