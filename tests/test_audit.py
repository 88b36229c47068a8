"""Audit recorder: append-only trail, failure escalation and read queries."""

from datetime import timedelta

import pytest

from warden.service.audit import AuditRecorder
from warden.service.user_agent import parse_user_agent
from warden.storage.memory import MemoryAuditSink
from warden.storage.models import RequestSource

CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)
SAFARI_IPHONE = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 14_6 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/14.1.1 Mobile/15E148 Safari/604.1"
)
CHROME_ANDROID = (
    "Mozilla/5.0 (Linux; Android 11; SM-G991B) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.120 Mobile Safari/537.36"
)
EDGE_WINDOWS = CHROME_WINDOWS + " Edg/120.0.0.0"
SAFARI_IPAD = (
    "Mozilla/5.0 (iPad; CPU OS 15_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/15.0 Mobile/15E148 Safari/604.1"
)


@pytest.fixture
def recorder(audit_sink, clock):
    return AuditRecorder(audit_sink, clock=clock)


class FlakySink(MemoryAuditSink):
    def __init__(self):
        super().__init__()
        self.down = True

    def append(self, attempt):
        if self.down:
            raise ConnectionError("audit backend unreachable")
        super().append(attempt)


class TestUserAgentParsing:
    @pytest.mark.parametrize(
        "ua,expected",
        [
            (CHROME_WINDOWS, ("Desktop", "Chrome", "Windows")),
            (SAFARI_IPHONE, ("Mobile", "Safari", "iOS")),
            (CHROME_ANDROID, ("Mobile", "Chrome", "Android")),
            (EDGE_WINDOWS, ("Desktop", "Edge", "Windows")),
            (SAFARI_IPAD, ("Tablet", "Safari", "iOS")),
            ("curl/8.4.0", ("Desktop", "Unknown", "Unknown")),
        ],
    )
    def test_classification(self, ua, expected):
        info = parse_user_agent(ua)
        assert (info.device_type, info.browser, info.os) == expected

    def test_missing_user_agent(self):
        info = parse_user_agent(None)
        assert info.device_type is None and info.browser is None and info.os is None


class TestRecording:
    def test_attempt_captures_request_metadata(self, recorder, audit_sink, clock):
        source = RequestSource(
            ip_address="192.0.2.1",
            user_agent=SAFARI_IPHONE,
            request_method="POST",
            request_path="/auth/login",
        )
        attempt = recorder.attempt("t1", "A@X.com", success=False, failure_reason="invalid_credentials", source=source)
        assert recorder.record(attempt) is True
        stored = audit_sink.query()[0]
        assert stored.email == "a@x.com"
        assert stored.device_type == "Mobile"
        assert stored.request_path == "/auth/login"
        assert stored.login_date == "2026-01-01"
        assert stored.login_time == "12:00:00"

    def test_sink_failure_is_buffered_and_alerted(self, clock):
        sink = FlakySink()
        hooked = []
        recorder = AuditRecorder(sink, clock=clock, on_failure=lambda a, e: hooked.append((a, e)))
        attempt = recorder.attempt("t1", "a@x.com", success=True)
        assert recorder.record(attempt) is False
        assert recorder.pending_count == 1
        assert hooked[0][0] is attempt
        assert isinstance(hooked[0][1], ConnectionError)

    def test_failing_alert_hook_is_contained(self, clock):
        def explode(attempt, exc):
            raise RuntimeError("pager offline")

        recorder = AuditRecorder(FlakySink(), clock=clock, on_failure=explode)
        assert recorder.record(recorder.attempt("t1", "a@x.com", success=True)) is False

    def test_flush_replays_in_order(self, clock):
        sink = FlakySink()
        recorder = AuditRecorder(sink, clock=clock)
        first = recorder.attempt("t1", "a@x.com", success=False)
        second = recorder.attempt("t1", "a@x.com", success=True)
        recorder.record(first)
        recorder.record(second)
        assert recorder.flush_pending() == 0
        sink.down = False
        assert recorder.flush_pending() == 2
        assert recorder.pending_count == 0
        assert [a.id for a in reversed(sink.query())] == [first.id, second.id]

    def test_pending_buffer_is_bounded(self, clock):
        recorder = AuditRecorder(FlakySink(), clock=clock, pending_limit=3)
        for _ in range(5):
            recorder.record(recorder.attempt("t1", "a@x.com", success=False))
        assert recorder.pending_count == 3


class TestQueries:
    def _seed(self, recorder, clock):
        recorder.record(recorder.attempt("t1", "a@x.com", success=True, principal_id="p1"))
        clock.advance(hours=1)
        recorder.record(recorder.attempt("t1", "a@x.com", success=False, failure_reason="invalid_credentials"))
        clock.advance(hours=1)
        recorder.record(recorder.attempt("t1", "b@x.com", success=True, principal_id="p2"))
        recorder.record(recorder.attempt("t2", "a@x.com", success=False))

    def test_by_principal(self, recorder, clock):
        self._seed(recorder, clock)
        assert [a.email for a in recorder.query_by_principal("t1", "p1")] == ["a@x.com"]

    def test_by_email_is_tenant_scoped_and_newest_first(self, recorder, clock):
        self._seed(recorder, clock)
        results = recorder.query_by_email("t1", "A@X.COM")
        assert [a.success for a in results] == [False, True]
        assert all(a.tenant_id == "t1" for a in results)

    def test_by_date_range(self, recorder, clock):
        start = clock()
        self._seed(recorder, clock)
        window = recorder.query_by_date_range(start, start + timedelta(hours=1, minutes=30), tenant="t1")
        assert len(window) == 2

    def test_date_range_must_be_ordered(self, recorder, clock):
        with pytest.raises(ValueError):
            recorder.query_by_date_range(clock(), clock() - timedelta(days=1))

    def test_failed_across_tenants(self, recorder, clock):
        self._seed(recorder, clock)
        assert len(recorder.query_failed()) == 2
        assert len(recorder.query_failed(tenant="t2")) == 1

    def test_query_limit(self, recorder, clock):
        for _ in range(5):
            recorder.record(recorder.attempt("t1", "a@x.com", success=False))
        assert len(recorder.query_by_email("t1", "a@x.com", limit=3)) == 3

    def test_stats_over_window(self, recorder, clock):
        self._seed(recorder, clock)
        stats = recorder.stats(timedelta(days=7), tenant="t1")
        assert stats.total_attempts == 3
        assert stats.successful_logins == 2
        assert stats.failed_logins == 1
        assert stats.success_rate == pytest.approx(66.666, rel=1e-3)
        assert stats.period_days == 7

    def test_stats_excludes_older_attempts(self, recorder, clock):
        self._seed(recorder, clock)
        clock.advance(days=2)
        assert recorder.stats(timedelta(days=1)).total_attempts == 0
        assert recorder.stats(timedelta(days=1)).success_rate == 0.0
