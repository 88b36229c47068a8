from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from warden.service.audit import LoginStats
from warden.service.oauth import OAuthStart
from warden.service.orchestrator import PrincipalSummary, Session
from warden.service.password_reset import ResetReceipt, ResetTokenStatus
from warden.service.validation import validate_email
from warden.storage.models import LoginAttempt

# Stable external error codes
_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_credentials",
    "invalid_token",
    "token_expired",
    "token_reuse_detected",
    "invalid_reset_token",
    "invalid_oauth_state",
    "unsupported_provider",
    "provider_exchange_failed",
    "rate_limited",
    "validation_error",
    "conflict",
    "unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class PrincipalSummaryModel(BaseModel):
    id: str
    tenant_id: str
    email: str
    roles: List[str]
    email_verified: bool
    display_name: Optional[str] = None
    picture: Optional[str] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_summary(cls, summary: PrincipalSummary) -> "PrincipalSummaryModel":
        return cls(
            id=summary.id,
            tenant_id=summary.tenant_id,
            email=summary.email,
            roles=list(summary.roles),
            email_verified=summary.email_verified,
            display_name=summary.display_name,
            picture=summary.picture,
            last_login_at=summary.last_login_at,
        )


class SessionTokens(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str


class AuthOutcome(BaseModel):
    """Either tokens plus principal summary, or an error. Never both."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    tokens: Optional[SessionTokens] = None
    principal: Optional[PrincipalSummaryModel] = None
    error: Optional[ErrorBody] = None

    @model_validator(mode="after")
    def _exclusive(self):
        if self.ok and (self.tokens is None or self.principal is None or self.error is not None):
            raise ValueError("successful outcome requires tokens and principal only")
        if not self.ok and (self.error is None or self.tokens is not None):
            raise ValueError("failed outcome requires an error and no tokens")
        return self

    @classmethod
    def from_session(cls, session: Session, *, now: Optional[datetime] = None) -> "AuthOutcome":
        now = now or datetime.now(timezone.utc)
        expires_in = max(0, int((session.access_expires_at - now).total_seconds()))
        return cls(
            ok=True,
            tokens=SessionTokens(
                access_token=session.access_token,
                refresh_token=session.refresh_token,
                token_type=session.token_type,
                expires_in=expires_in,
                access_expires_at=session.access_expires_at,
                refresh_expires_at=session.refresh_expires_at,
                session_id=session.session_id,
            ),
            principal=PrincipalSummaryModel.from_summary(session.principal),
        )

    @classmethod
    def from_error(cls, error: ErrorBody) -> "AuthOutcome":
        return cls(ok=False, error=error)


class LoginAttemptView(BaseModel):
    id: str
    tenant_id: str
    principal_id: Optional[str] = None
    email: Optional[str] = None
    method: str
    success: bool
    failure_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    timestamp: datetime
    login_date: str
    login_time: str
    token_issued: bool
    refresh_issued: bool
    session_id: Optional[str] = None

    @classmethod
    def from_attempt(cls, attempt: LoginAttempt) -> "LoginAttemptView":
        return cls(
            id=attempt.id,
            tenant_id=attempt.tenant_id,
            principal_id=attempt.principal_id,
            email=attempt.email,
            method=attempt.method,
            success=attempt.success,
            failure_reason=attempt.failure_reason,
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
            device_type=attempt.device_type,
            browser=attempt.browser,
            os=attempt.os,
            timestamp=attempt.timestamp,
            login_date=attempt.login_date,
            login_time=attempt.login_time,
            token_issued=attempt.token_issued,
            refresh_issued=attempt.refresh_issued,
            session_id=attempt.session_id,
        )


class LoginStatsView(BaseModel):
    total_attempts: int
    successful_logins: int
    failed_logins: int
    success_rate: float
    period_days: float

    @classmethod
    def from_stats(cls, stats: LoginStats) -> "LoginStatsView":
        return cls(
            total_attempts=stats.total_attempts,
            successful_logins=stats.successful_logins,
            failed_logins=stats.failed_logins,
            success_rate=round(stats.success_rate, 2),
            period_days=stats.period_days,
        )


class ResetReceiptView(BaseModel):
    message: str

    @classmethod
    def from_receipt(cls, receipt: ResetReceipt) -> "ResetReceiptView":
        return cls(message=receipt.message)


class ResetTokenStatusView(BaseModel):
    valid: bool
    email: Optional[str] = None
    expires_at: Optional[datetime] = None

    @classmethod
    def from_status(cls, status: ResetTokenStatus) -> "ResetTokenStatusView":
        return cls(valid=status.valid, email=status.email, expires_at=status.expires_at)


class OAuthStartView(BaseModel):
    authorization_url: str
    state: str
    provider: str
    expires_at: datetime

    @classmethod
    def from_start(cls, start: OAuthStart) -> "OAuthStartView":
        return cls(
            authorization_url=start.authorization_url,
            state=start.state,
            provider=start.provider,
            expires_at=start.expires_at,
        )


class LoginRequest(BaseModel):
    email: str = Field(..., max_length=254)
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return validate_email(value)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., max_length=254)

    @field_validator("email")
    @classmethod
    def _validate_reset_email(cls, value: str) -> str:
        return validate_email(value)


class PasswordResetConfirm(BaseModel):
    # Strength is checked by the reset flow so failures stay uniform.
    token: str = Field(..., min_length=1, max_length=512)
    new_password: str = Field(..., max_length=1024)


class OAuthCallbackRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=2048)
    state: Optional[str] = Field(default=None, max_length=512)
