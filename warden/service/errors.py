from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to caller-facing results.

    Each exception class defines both a transport status_code and a stable
    error_code:
    - unauthorized / invalid_credentials / token_* (401)
    - validation_error / invalid_* (400)
    - conflict (409)
    - rate_limited (429)
    - server_error (500), provider_exchange_failed (502), unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthError(ServiceError):
    """Authentication-flow failure.

    ``reason`` is the internal, audit-only classification. ``public_message``
    and ``error_code`` are the only parts that may reach a client; several
    reasons deliberately share one external shape.
    """

    status_code = 401
    error_code = "unauthorized"
    reason = "unauthorized"
    public_message = "Authentication failed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
        reason: Optional[str] = None,
    ) -> None:
        super().__init__(message or self.public_message, detail=detail)
        if reason is not None:
            self.reason = reason

    @property
    def public_detail(self) -> dict:
        return {}


class InvalidCredentials(AuthError):
    error_code = "invalid_credentials"
    reason = "invalid_credentials"
    public_message = "Invalid email or password"


class AccountInactive(InvalidCredentials):
    """Externally indistinguishable from InvalidCredentials."""

    reason = "account_inactive"


class RateLimited(AuthError):
    status_code = 429
    error_code = "rate_limited"
    reason = "rate_limited"
    public_message = "Too many attempts, try again later"

    def __init__(self, retry_after: int, *, reason: Optional[str] = None) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(detail={"retry_after": self.retry_after}, reason=reason)

    @property
    def public_detail(self) -> dict:
        return {"retry_after": self.retry_after}


class TokenExpired(AuthError):
    error_code = "token_expired"
    reason = "token_expired"
    public_message = "Token has expired"


class InvalidToken(AuthError):
    error_code = "invalid_token"
    reason = "invalid_token"
    public_message = "Token is invalid"


class TokenReuseDetected(AuthError):
    error_code = "token_reuse_detected"
    reason = "token_reuse_detected"
    public_message = "Session is no longer valid, sign in again"


class InvalidOrExpiredResetToken(AuthError):
    status_code = 400
    error_code = "invalid_reset_token"
    reason = "invalid_reset_token"
    public_message = "Invalid or expired reset token"


class WeakPassword(InvalidOrExpiredResetToken):
    """Carries the policy violations internally; the public shape stays uniform."""

    reason = "weak_password"

    def __init__(self, violations: Optional[list[str]] = None) -> None:
        self.violations = list(violations or [])
        super().__init__(detail={"violations": self.violations})


class InvalidOrExpiredOAuthState(AuthError):
    status_code = 400
    error_code = "invalid_oauth_state"
    reason = "invalid_oauth_state"
    public_message = "Invalid or expired OAuth state"


class UnsupportedProvider(AuthError):
    status_code = 400
    error_code = "unsupported_provider"
    reason = "unsupported_provider"
    public_message = "OAuth provider is not configured"


class ProviderExchangeFailed(AuthError):
    status_code = 502
    error_code = "provider_exchange_failed"
    reason = "provider_exchange_failed"
    public_message = "Could not complete sign-in with the identity provider"


class IdentityConflict(AuthError):
    status_code = 409
    error_code = "conflict"
    reason = "identity_conflict"
    public_message = "An account with this email already exists"


class EmailAlreadyRegistered(IdentityConflict):
    reason = "email_already_registered"


class InvalidRegistration(AuthError):
    status_code = 400
    error_code = "validation_error"
    reason = "invalid_registration"
    public_message = "Email or password does not meet requirements"

    def __init__(self, violations: Optional[list[str]] = None) -> None:
        self.violations = list(violations or [])
        super().__init__(detail={"violations": self.violations})

    @property
    def public_detail(self) -> dict:
        return {"violations": self.violations}


class UnavailableError(AuthError):
    """A collaborator failed; the caller owns retry and backoff."""

    status_code = 503
    error_code = "unavailable"
    reason = "unavailable"
    public_message = "Service temporarily unavailable"


class StoreUnavailable(UnavailableError):
    reason = "store_unavailable"


class SigningFailed(UnavailableError):
    reason = "signing_failed"


__all__ = [
    "ServiceError",
    "AuthError",
    "InvalidCredentials",
    "AccountInactive",
    "RateLimited",
    "TokenExpired",
    "InvalidToken",
    "TokenReuseDetected",
    "InvalidOrExpiredResetToken",
    "WeakPassword",
    "InvalidOrExpiredOAuthState",
    "UnsupportedProvider",
    "ProviderExchangeFailed",
    "IdentityConflict",
    "EmailAlreadyRegistered",
    "InvalidRegistration",
    "UnavailableError",
    "StoreUnavailable",
    "SigningFailed",
]
