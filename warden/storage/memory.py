from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from warden.logging import get_logger
from warden.storage.errors import ConstraintViolation
from warden.storage.models import (
    FederatedCredential,
    LoginAttempt,
    OAuthSession,
    Principal,
    RateWindow,
    RefreshToken,
    ResetToken,
)


class _TenantPartition:
    """All records of one tenant, guarded by the tenant's own lock."""

    def __init__(self, tenant_id: str) -> None:
        self.tenant_id = tenant_id
        self.lock = threading.RLock()
        self.principals: Dict[str, Principal] = {}
        self.email_index: Dict[str, str] = {}
        self.provider_index: Dict[tuple[str, str], str] = {}
        self.reset_tokens: Dict[str, ResetToken] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.oauth_sessions: Dict[str, OAuthSession] = {}
        self.rate_windows: Dict[str, RateWindow] = {}


class TenantStore:
    """Repository handle bound to a single tenant.

    There is no method that accepts a tenant id: every lookup resolves
    inside the partition this handle was created for.
    """

    def __init__(self, partition: _TenantPartition) -> None:
        self._p = partition

    @property
    def tenant_id(self) -> str:
        return self._p.tenant_id

    # Principals -----------------------------------------------------------

    def find_by_email(self, email: str) -> Optional[Principal]:
        with self._p.lock:
            principal_id = self._p.email_index.get(email)
            if principal_id is None:
                return None
            return replace(self._p.principals[principal_id])

    def find_by_oauth(self, provider: str, provider_id: str) -> Optional[Principal]:
        with self._p.lock:
            principal_id = self._p.provider_index.get((provider, provider_id))
            if principal_id is None:
                return None
            return replace(self._p.principals[principal_id])

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._p.lock:
            principal = self._p.principals.get(principal_id)
            return replace(principal) if principal else None

    def create_principal(self, principal: Principal) -> Principal:
        if principal.tenant_id != self.tenant_id:
            raise ConstraintViolation("tenant mismatch", {"field": "tenant_id"})
        with self._p.lock:
            if principal.email in self._p.email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            federated = principal.federated
            if federated is not None:
                key = (federated.provider, federated.provider_id)
                if key in self._p.provider_index:
                    raise ConstraintViolation(
                        "provider identity already linked", {"field": "provider_id"}
                    )
                self._p.provider_index[key] = principal.id
            self._p.principals[principal.id] = replace(principal)
            self._p.email_index[principal.email] = principal.id
            return replace(principal)

    def save_principal(self, principal: Principal) -> Principal:
        if principal.tenant_id != self.tenant_id:
            raise ConstraintViolation("tenant mismatch", {"field": "tenant_id"})
        with self._p.lock:
            existing = self._p.principals.get(principal.id)
            if existing is None:
                raise ConstraintViolation("principal not found", {"field": "id"})
            owner = self._p.email_index.get(principal.email)
            if owner is not None and owner != principal.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if existing.email != principal.email:
                self._p.email_index.pop(existing.email, None)
                self._p.email_index[principal.email] = principal.id
            self._p.principals[principal.id] = replace(principal)
            return replace(principal)

    def record_login(self, principal_id: str, at: datetime) -> None:
        with self._p.lock:
            principal = self._p.principals.get(principal_id)
            if principal is None:
                return
            principal.last_login_at = at
            principal.updated_at = at

    def set_password_hash(self, principal_id: str, password_hash: str, at: datetime) -> bool:
        with self._p.lock:
            principal = self._p.principals.get(principal_id)
            if principal is None or isinstance(principal.credential, FederatedCredential):
                return False
            principal.credential = replace(principal.credential, hash=password_hash)
            principal.updated_at = at
            return True

    # Reset tokens ---------------------------------------------------------

    def replace_reset_token(self, token: ResetToken) -> int:
        """Invalidate every unused token of the principal and insert ``token``."""
        with self._p.lock:
            invalidated = 0
            for existing in self._p.reset_tokens.values():
                if existing.principal_id == token.principal_id and not existing.used:
                    existing.used = True
                    existing.used_at = token.issued_at
                    invalidated += 1
            self._p.reset_tokens[token.token_digest] = replace(token)
            return invalidated

    def get_reset_token(self, token_digest: str) -> Optional[ResetToken]:
        with self._p.lock:
            token = self._p.reset_tokens.get(token_digest)
            return replace(token) if token else None

    def complete_password_reset(
        self, token_digest: str, password_hash: str, now: datetime
    ) -> Optional[ResetToken]:
        """Consume the token, set the new hash and end every refresh session.

        Returns the consumed token, or None if the token was unknown, used or
        expired. All effects happen under one tenant lock acquisition.
        """
        with self._p.lock:
            token = self._p.reset_tokens.get(token_digest)
            if token is None or not token.is_usable(now):
                return None
            principal = self._p.principals.get(token.principal_id)
            if principal is None or isinstance(principal.credential, FederatedCredential):
                return None
            token.used = True
            token.used_at = now
            for other in self._p.reset_tokens.values():
                if other.principal_id == token.principal_id and not other.used:
                    other.used = True
                    other.used_at = now
            principal.credential = replace(principal.credential, hash=password_hash)
            principal.updated_at = now
            self._revoke_where(
                lambda rt: rt.principal_id == token.principal_id, now, "password_reset"
            )
            return replace(token)

    # Refresh tokens -------------------------------------------------------

    def save_refresh_token(self, token: RefreshToken) -> None:
        with self._p.lock:
            if token.id in self._p.refresh_tokens:
                raise ConstraintViolation("refresh token id exists", {"field": "id"})
            self._p.refresh_tokens[token.id] = replace(token)

    def get_refresh_token(self, token_id: str) -> Optional[RefreshToken]:
        with self._p.lock:
            token = self._p.refresh_tokens.get(token_id)
            return replace(token) if token else None

    def rotate_refresh_token(self, old_id: str, successor: RefreshToken) -> bool:
        """Compare-and-swap: link ``successor`` only if ``old_id`` is still live."""
        with self._p.lock:
            old = self._p.refresh_tokens.get(old_id)
            if old is None or old.is_spent:
                return False
            if successor.id in self._p.refresh_tokens:
                raise ConstraintViolation("refresh token id exists", {"field": "id"})
            old.replaced_by = successor.id
            self._p.refresh_tokens[successor.id] = replace(successor)
            return True

    def revoke_refresh_family(self, family_id: str, now: datetime, reason: str) -> int:
        with self._p.lock:
            return self._revoke_where(lambda rt: rt.family_id == family_id, now, reason)

    def revoke_principal_refresh_tokens(
        self, principal_id: str, now: datetime, reason: str
    ) -> int:
        with self._p.lock:
            return self._revoke_where(lambda rt: rt.principal_id == principal_id, now, reason)

    def _revoke_where(self, predicate, now: datetime, reason: str) -> int:
        count = 0
        for token in self._p.refresh_tokens.values():
            if not token.revoked and predicate(token):
                token.revoked = True
                token.revoked_at = now
                token.revoked_reason = reason
                count += 1
        return count

    # OAuth sessions -------------------------------------------------------

    def save_oauth_session(self, session: OAuthSession) -> None:
        with self._p.lock:
            if session.state in self._p.oauth_sessions:
                raise ConstraintViolation("oauth state exists", {"field": "state"})
            self._p.oauth_sessions[session.state] = replace(session)

    def consume_oauth_session(self, state: str, now: datetime) -> Optional[OAuthSession]:
        with self._p.lock:
            session = self._p.oauth_sessions.get(state)
            if session is None or session.consumed or session.is_expired(now):
                return None
            session.consumed = True
            session.consumed_at = now
            return replace(session)

    # Rate windows ---------------------------------------------------------

    def get_rate_window(self, key: str) -> Optional[RateWindow]:
        with self._p.lock:
            window = self._p.rate_windows.get(key)
            return replace(window) if window else None

    def compare_and_set_rate_window(self, window: RateWindow, expected_version: int) -> bool:
        with self._p.lock:
            current = self._p.rate_windows.get(window.key)
            current_version = current.version if current else -1
            if current_version != expected_version:
                return False
            self._p.rate_windows[window.key] = replace(window, version=expected_version + 1)
            return True

    # Maintenance ----------------------------------------------------------

    def purge_expired(self, now: datetime) -> Dict[str, int]:
        with self._p.lock:
            reset = [k for k, t in self._p.reset_tokens.items() if t.is_expired(now)]
            for key in reset:
                del self._p.reset_tokens[key]
            oauth = [k for k, s in self._p.oauth_sessions.items() if s.is_expired(now)]
            for key in oauth:
                del self._p.oauth_sessions[key]
            refresh = [k for k, t in self._p.refresh_tokens.items() if t.is_expired(now)]
            for key in refresh:
                del self._p.refresh_tokens[key]
            windows = [k for k, w in self._p.rate_windows.items() if w.is_elapsed(now)]
            for key in windows:
                del self._p.rate_windows[key]
            return {
                "reset_tokens": len(reset),
                "oauth_sessions": len(oauth),
                "refresh_tokens": len(refresh),
                "rate_windows": len(windows),
            }


class MemoryStore:
    """In-memory credential store partitioned by tenant."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self._partitions: Dict[str, _TenantPartition] = {}
        # Guards partition creation only; data access uses per-tenant locks
        self._registry_lock = threading.Lock()

    def for_tenant(self, tenant_id: str) -> TenantStore:
        if not tenant_id:
            raise ValueError("tenant_id is required")
        partition = self._partitions.get(tenant_id)
        if partition is None:
            with self._registry_lock:
                partition = self._partitions.get(tenant_id)
                if partition is None:
                    partition = _TenantPartition(tenant_id)
                    self._partitions[tenant_id] = partition
        return TenantStore(partition)

    def tenants(self) -> List[str]:
        with self._registry_lock:
            return list(self._partitions)

    def purge_expired(self, now: datetime) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for tenant_id in self.tenants():
            for kind, count in self.for_tenant(tenant_id).purge_expired(now).items():
                totals[kind] = totals.get(kind, 0) + count
        if any(totals.values()):
            self.logger.info("expired_records_purged", **totals)
        return totals


class MemoryAuditSink:
    """Append-only login attempt log."""

    def __init__(self) -> None:
        self._attempts: List[LoginAttempt] = []
        self._lock = threading.Lock()

    def append(self, attempt: LoginAttempt) -> None:
        with self._lock:
            self._attempts.append(attempt)

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
    ) -> List[LoginAttempt]:
        """Return matching attempts, newest first."""
        with self._lock:
            snapshot = list(self._attempts)
        results = []
        for attempt in reversed(snapshot):
            if tenant_id is not None and attempt.tenant_id != tenant_id:
                continue
            if principal_id is not None and attempt.principal_id != principal_id:
                continue
            if email is not None and attempt.email != email:
                continue
            if success is not None and attempt.success != success:
                continue
            if since is not None and attempt.timestamp < since:
                continue
            if until is not None and attempt.timestamp >= until:
                continue
            results.append(attempt)
        results.sort(key=lambda a: a.timestamp, reverse=True)
        if limit is not None:
            results = results[:limit]
        return results

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)
