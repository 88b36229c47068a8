from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as ClaimsValidationError

from warden.config import Settings
from warden.logging import get_logger
from warden.service import store_access
from warden.service.errors import InvalidToken, TokenExpired, TokenReuseDetected
from warden.service.interfaces import CredentialStore, SigningAuthorityProtocol
from warden.storage.models import Principal, RefreshToken, utcnow

logger = get_logger(__name__)


class AccessClaims(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    sub: str
    tid: str
    email: str
    roles: List[str]
    active: bool
    iat: int
    exp: int
    jti: str
    aud: str
    iss: str
    typ: Literal["access"] = "access"


class RefreshClaims(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    sub: str
    tid: str
    jti: str
    fam: str
    iat: int
    exp: int
    iss: str
    typ: Literal["refresh"] = "refresh"


@dataclass(frozen=True)
class IssuedRefresh:
    token: str
    record: RefreshToken


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str
    token_type: str = "Bearer"


def _ts(value: datetime) -> int:
    return int(value.timestamp())


class TokenLifecycleManager:
    """Issues access tokens and owns refresh-token rotation and revocation."""

    def __init__(
        self,
        store: CredentialStore,
        signer: SigningAuthorityProtocol,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.signer = signer
        self.settings = settings
        self.clock = clock
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)
        self._read_retries = settings.store_read_retries

    # Issuance -------------------------------------------------------------

    def issue_access(self, principal: Principal) -> Tuple[str, datetime]:
        now = self.clock()
        expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        claims = AccessClaims(
            sub=principal.id,
            tid=principal.tenant_id,
            email=principal.email,
            roles=sorted(principal.roles),
            active=principal.active,
            iat=_ts(now),
            exp=_ts(expires_at),
            jti=str(uuid.uuid4()),
            aud=self.settings.jwt_audience,
            iss=self.settings.jwt_issuer,
        )
        return self.signer.sign(claims.model_dump()), expires_at

    def _build_refresh(
        self,
        principal: Principal,
        *,
        family_id: Optional[str] = None,
        parent_id: Optional[str] = None,
    ) -> IssuedRefresh:
        now = self.clock()
        token_id = str(uuid.uuid4())
        record = RefreshToken(
            id=token_id,
            principal_id=principal.id,
            tenant_id=principal.tenant_id,
            family_id=family_id or token_id,
            parent_id=parent_id,
            issued_at=now,
            expires_at=now + timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        claims = RefreshClaims(
            sub=principal.id,
            tid=principal.tenant_id,
            jti=record.id,
            fam=record.family_id,
            iat=_ts(now),
            exp=_ts(record.expires_at),
            iss=self.settings.jwt_issuer,
        )
        return IssuedRefresh(token=self.signer.sign(claims.model_dump()), record=record)

    def issue_refresh(self, principal: Principal) -> IssuedRefresh:
        """Start a new refresh chain for the principal."""
        issued = self._build_refresh(principal)
        repo = self.store.for_tenant(principal.tenant_id)
        store_access.write(repo.save_refresh_token, issued.record, operation="save_refresh_token")
        return issued

    def issue_session(self, principal: Principal) -> TokenPair:
        access_token, access_expires_at = self.issue_access(principal)
        refresh = self.issue_refresh(principal)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh.token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh.record.expires_at,
            session_id=refresh.record.family_id,
        )

    # Refresh --------------------------------------------------------------

    def decode_refresh(self, tenant: str, token: str) -> RefreshClaims:
        raw = self.signer.verify(token)
        try:
            claims = RefreshClaims.model_validate(raw)
        except ClaimsValidationError as exc:
            raise InvalidToken(reason="malformed_refresh_claims") from exc
        if claims.iss != self.settings.jwt_issuer:
            raise InvalidToken(reason="issuer_mismatch")
        if claims.tid != tenant:
            raise InvalidToken(reason="tenant_mismatch")
        return claims

    def rotate(self, tenant: str, presented: str) -> Tuple[TokenPair, Principal]:
        """Exchange a live refresh token for a new access/refresh pair.

        Raises TokenReuseDetected after revoking the whole chain when the
        presented token was already rotated away or revoked. A caller that
        loses a concurrent rotation also gets TokenReuseDetected, but the
        chain is left intact for the winner.
        """
        claims = self.decode_refresh(tenant, presented)
        repo = self.store.for_tenant(tenant)
        record = store_access.read(
            repo.get_refresh_token, claims.jti,
            retries=self._read_retries, operation="get_refresh_token",
        )
        if record is None or record.principal_id != claims.sub:
            raise InvalidToken(reason="unknown_refresh_token")
        now = self.clock()
        if record.is_spent:
            revoked = self.revoke_chain(tenant, record, reason="reuse_detected")
            logger.error(
                "refresh_token_reuse_detected",
                tenant_id=tenant,
                principal_id=record.principal_id,
                family_id=record.family_id,
                token_id=record.id,
                revoked=revoked,
                alert=True,
            )
            raise TokenReuseDetected(detail={"principal_id": record.principal_id})
        if record.is_expired(now):
            raise TokenExpired()

        principal = store_access.read(
            repo.get_principal, record.principal_id,
            retries=self._read_retries, operation="get_principal",
        )
        if principal is None or not principal.active:
            self.revoke_chain(tenant, record, reason="principal_inactive")
            raise InvalidToken(reason="account_inactive")

        # Sign before the swap so a signing failure leaves the chain untouched.
        successor = self._build_refresh(principal, family_id=record.family_id, parent_id=record.id)
        access_token, access_expires_at = self.issue_access(principal)
        swapped = store_access.write(
            repo.rotate_refresh_token, record.id, successor.record,
            operation="rotate_refresh_token",
        )
        if not swapped:
            logger.warning(
                "refresh_rotation_race_lost",
                tenant_id=tenant,
                principal_id=record.principal_id,
                family_id=record.family_id,
            )
            raise TokenReuseDetected(
                reason="rotation_race_lost", detail={"principal_id": record.principal_id}
            )
        pair = TokenPair(
            access_token=access_token,
            refresh_token=successor.token,
            access_expires_at=access_expires_at,
            refresh_expires_at=successor.record.expires_at,
            session_id=record.family_id,
        )
        return pair, principal

    # Revocation -----------------------------------------------------------

    def revoke_chain(self, tenant: str, record: RefreshToken, *, reason: str) -> int:
        """Revoke every token sharing the record's lineage, however long."""
        repo = self.store.for_tenant(tenant)
        return store_access.write(
            repo.revoke_refresh_family, record.family_id, self.clock(), reason,
            operation="revoke_refresh_family",
        )

    def revoke_all(self, tenant: str, principal_id: str, *, reason: str) -> int:
        repo = self.store.for_tenant(tenant)
        return store_access.write(
            repo.revoke_principal_refresh_tokens, principal_id, self.clock(), reason,
            operation="revoke_principal_refresh_tokens",
        )

    def revoke(self, tenant: str, presented: str, *, reason: str = "logout") -> Optional[RefreshToken]:
        """Revoke the session the presented token belongs to.

        Already-revoked and unknown tokens are not errors; a token that fails
        signature or claim checks is.
        """
        claims = self.decode_refresh(tenant, presented)
        repo = self.store.for_tenant(tenant)
        record = store_access.read(
            repo.get_refresh_token, claims.jti,
            retries=self._read_retries, operation="get_refresh_token",
        )
        if record is None or record.principal_id != claims.sub:
            return None
        self.revoke_chain(tenant, record, reason=reason)
        return record

    # Verification ---------------------------------------------------------

    def verify_access(self, tenant: str, token: str) -> AccessClaims:
        """Full claim validation plus a live principal check, on every call."""
        raw = self.signer.verify(token)
        try:
            claims = AccessClaims.model_validate(raw)
        except ClaimsValidationError as exc:
            raise InvalidToken(reason="malformed_access_claims") from exc
        if claims.iss != self.settings.jwt_issuer:
            raise InvalidToken(reason="issuer_mismatch")
        if claims.aud != self.settings.jwt_audience:
            raise InvalidToken(reason="audience_mismatch")
        if claims.tid != tenant:
            raise InvalidToken(reason="tenant_mismatch")
        now = self.clock()
        expires_at = datetime.fromtimestamp(claims.exp, tz=timezone.utc)
        if now > expires_at + self._leeway:
            raise TokenExpired()
        issued_at = datetime.fromtimestamp(claims.iat, tz=timezone.utc)
        if issued_at > now + self._leeway:
            raise InvalidToken(reason="issued_in_future")

        repo = self.store.for_tenant(tenant)
        principal = store_access.read(
            repo.get_principal, claims.sub,
            retries=self._read_retries, operation="get_principal",
        )
        if principal is None or not principal.active:
            raise InvalidToken(reason="account_inactive")
        return claims
