from __future__ import annotations

from typing import Dict

from warden.api.schemas import AuthOutcome, Envelope, ErrorBody
from warden.logging import get_logger
from warden.service.errors import AuthError, RateLimited, ServiceError
from warden.storage.errors import ConstraintViolation

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    409: "conflict",
    429: "rate_limited",
    500: "server_error",
    502: "provider_exchange_failed",
    503: "unavailable",
}


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "server_error")


def status_for(exc: BaseException) -> int:
    if isinstance(exc, ServiceError):
        return exc.status_code
    if isinstance(exc, ConstraintViolation):
        return 409
    return 500


def error_body(exc: BaseException) -> ErrorBody:
    """Client-safe error body.

    AuthError subclasses expose only their public message and detail; the
    internal ``reason`` stays in logs and the audit trail.
    """
    if isinstance(exc, AuthError):
        return ErrorBody(
            code=exc.error_code,
            message=exc.public_message,
            details=exc.public_detail or None,
        )
    if isinstance(exc, ServiceError):
        code = exc.error_code if exc.error_code else _error_code_for_status(exc.status_code)
        return ErrorBody(code=code, message=exc.message, details=exc.detail or None)
    if isinstance(exc, ConstraintViolation):
        logger.warning("constraint_violation", message=exc.message, detail=exc.detail)
        return ErrorBody(code="conflict", message=exc.message, details=exc.detail or None)
    logger.error("unhandled_error", error_type=type(exc).__name__, error=str(exc))
    return ErrorBody(code="server_error", message="An unexpected error occurred")


def response_headers(exc: BaseException) -> Dict[str, str]:
    if isinstance(exc, RateLimited):
        return {"Retry-After": str(exc.retry_after)}
    return {}


def outcome_for(exc: BaseException) -> AuthOutcome:
    return AuthOutcome.from_error(error_body(exc))


def error_envelope(exc: BaseException) -> Envelope:
    return Envelope(status="error", error=error_body(exc))
