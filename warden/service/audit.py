from __future__ import annotations

import threading
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Deque, List, Optional

from warden.logging import get_logger, hash_identifier
from warden.service.interfaces import AuditSink
from warden.service.user_agent import parse_user_agent
from warden.service.validation import normalize_email
from warden.storage.models import LoginAttempt, RequestSource, utcnow

logger = get_logger(__name__)

DEFAULT_QUERY_LIMIT = 50


@dataclass(frozen=True)
class LoginStats:
    total_attempts: int
    successful_logins: int
    failed_logins: int
    success_rate: float
    period_days: float


class AuditRecorder:
    """Append-only login attempt trail.

    ``record`` never raises. A record the sink rejects is kept in a bounded
    pending buffer, reported with ``alert=True`` and handed to ``on_failure``;
    ``flush_pending`` replays the buffer once the sink recovers.
    """

    def __init__(
        self,
        sink: AuditSink,
        *,
        pending_limit: int = 1000,
        on_failure: Optional[Callable[[LoginAttempt, Exception], None]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sink = sink
        self.on_failure = on_failure
        self.clock = clock
        self._pending: Deque[LoginAttempt] = deque(maxlen=pending_limit)
        self._pending_lock = threading.Lock()

    def attempt(
        self,
        tenant: str,
        email: Optional[str],
        *,
        success: bool,
        method: str = "password",
        principal_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        source: Optional[RequestSource] = None,
        token_issued: bool = False,
        refresh_issued: bool = False,
        session_id: Optional[str] = None,
    ) -> LoginAttempt:
        source = source or RequestSource()
        ua = parse_user_agent(source.user_agent)
        return LoginAttempt(
            id=str(uuid.uuid4()),
            tenant_id=tenant,
            email=normalize_email(email) if email else None,
            success=success,
            timestamp=self.clock(),
            method=method,
            principal_id=principal_id,
            failure_reason=failure_reason,
            ip_address=source.ip_address,
            user_agent=source.user_agent,
            request_method=source.request_method,
            request_path=source.request_path,
            device_type=ua.device_type,
            browser=ua.browser,
            os=ua.os,
            token_issued=token_issued,
            refresh_issued=refresh_issued,
            session_id=session_id,
        )

    def record(self, attempt: LoginAttempt) -> bool:
        try:
            self.sink.append(attempt)
        except Exception as exc:
            self._escalate(attempt, exc)
            return False
        return True

    def _escalate(self, attempt: LoginAttempt, exc: Exception) -> None:
        with self._pending_lock:
            overflow = len(self._pending) == self._pending.maxlen
            self._pending.append(attempt)
            pending = len(self._pending)
        logger.error(
            "audit_write_failed",
            tenant_id=attempt.tenant_id,
            attempt_id=attempt.id,
            success=attempt.success,
            failure_reason=attempt.failure_reason,
            email_hash=hash_identifier(attempt.email),
            error=str(exc),
            error_type=type(exc).__name__,
            pending=pending,
            alert=True,
        )
        if overflow:
            logger.error("audit_pending_overflow", dropped=1, alert=True)
        if self.on_failure is not None:
            try:
                self.on_failure(attempt, exc)
            except Exception as hook_exc:
                logger.error("audit_alert_hook_failed", error=str(hook_exc))

    @property
    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def flush_pending(self) -> int:
        """Replay buffered records in order; stops at the first failure."""
        written = 0
        while True:
            with self._pending_lock:
                if not self._pending:
                    break
                attempt = self._pending[0]
            try:
                self.sink.append(attempt)
            except Exception as exc:
                logger.warning("audit_flush_stalled", error=str(exc), written=written)
                break
            with self._pending_lock:
                if self._pending and self._pending[0] is attempt:
                    self._pending.popleft()
            written += 1
        if written:
            logger.info("audit_pending_flushed", written=written)
        return written

    # Read path ------------------------------------------------------------

    def query_by_principal(
        self, tenant: str, principal_id: str, *, limit: int = DEFAULT_QUERY_LIMIT
    ) -> List[LoginAttempt]:
        return self.sink.query(tenant_id=tenant, principal_id=principal_id, limit=limit)

    def query_by_email(
        self, tenant: str, email: str, *, limit: int = DEFAULT_QUERY_LIMIT
    ) -> List[LoginAttempt]:
        return self.sink.query(tenant_id=tenant, email=normalize_email(email), limit=limit)

    def query_by_date_range(
        self,
        start: datetime,
        end: datetime,
        *,
        tenant: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LoginAttempt]:
        if end < start:
            raise ValueError("end must not precede start")
        return self.sink.query(tenant_id=tenant, since=start, until=end, limit=limit)

    def query_failed(
        self,
        *,
        tenant: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: Optional[int] = DEFAULT_QUERY_LIMIT,
    ) -> List[LoginAttempt]:
        return self.sink.query(tenant_id=tenant, success=False, since=since, limit=limit)

    def stats(self, window: timedelta, *, tenant: Optional[str] = None) -> LoginStats:
        attempts = self.sink.query(tenant_id=tenant, since=self.clock() - window)
        total = len(attempts)
        successful = sum(1 for a in attempts if a.success)
        return LoginStats(
            total_attempts=total,
            successful_logins=successful,
            failed_logins=total - successful,
            success_rate=(successful / total * 100.0) if total else 0.0,
            period_days=window.total_seconds() / 86400,
        )
