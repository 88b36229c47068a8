"""Password reset: enumeration-safe requests and single-use tokens."""

import time

import pytest

from conftest import STRONG_PASSWORD, RecordingNotifier
from warden.service.errors import (
    InvalidCredentials,
    InvalidOrExpiredResetToken,
    RateLimited,
    TokenReuseDetected,
    WeakPassword,
)
from warden.service.password_reset import RESET_REQUESTED_MESSAGE, token_digest

NEW_PASSWORD = "Battery-Staple-7"


async def _registered(orchestrator, email="a@x.com", tenant="t1"):
    return await orchestrator.register_password(tenant, email, STRONG_PASSWORD)


async def _request(orchestrator, tenant, email, **kwargs):
    receipt = await orchestrator.request_password_reset(tenant, email, **kwargs)
    await orchestrator.reset_flow.drain()
    return receipt


class TestResetRequest:
    async def test_receipt_is_identical_for_known_and_unknown(self, orchestrator, notifier):
        await _registered(orchestrator)
        known = await _request(orchestrator, "t1", "a@x.com")
        unknown = await _request(orchestrator, "t1", "ghost@x.com")
        assert known == unknown
        assert known.message == RESET_REQUESTED_MESSAGE
        assert [to for to, _ in notifier.sent] == ["a@x.com"]

    async def test_reply_does_not_wait_for_mail_delivery(self, runtime, orchestrator):
        class SlowNotifier(RecordingNotifier):
            def send_password_reset(self, to_email, token):
                time.sleep(0.3)
                return super().send_password_reset(to_email, token)

        slow = SlowNotifier()
        runtime.reset_flow.notifier = slow
        await _registered(orchestrator)

        started = time.perf_counter()
        await orchestrator.request_password_reset("t1", "a@x.com")
        known = time.perf_counter() - started
        started = time.perf_counter()
        await orchestrator.request_password_reset("t1", "ghost@x.com")
        unknown = time.perf_counter() - started

        assert known < 0.2
        assert abs(known - unknown) < 0.2
        assert runtime.reset_flow.pending_deliveries == 1
        await runtime.reset_flow.drain()
        assert runtime.reset_flow.pending_deliveries == 0
        assert [to for to, _ in slow.sent] == ["a@x.com"]

    async def test_only_digest_is_stored(self, orchestrator, notifier, memory_store):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        token = notifier.last_token_for("a@x.com")
        repo = memory_store.for_tenant("t1")
        assert repo.get_reset_token(token) is None
        assert repo.get_reset_token(token_digest(token)).email == "a@x.com"

    async def test_federated_principal_gets_no_token(self, orchestrator, google, notifier):
        google.register("c1", "42", "fed@x.com")
        start = await orchestrator.begin_oauth("t1", "google")
        await orchestrator.complete_oauth("t1", "google", "c1", start.state)
        receipt = await _request(orchestrator, "t1", "fed@x.com")
        assert receipt.message == RESET_REQUESTED_MESSAGE
        assert notifier.sent == []

    async def test_inactive_principal_gets_no_token(self, orchestrator, memory_store, notifier):
        session = await _registered(orchestrator)
        repo = memory_store.for_tenant("t1")
        repo.save_principal(repo.get_principal(session.principal.id).copy(active=False))
        await _request(orchestrator, "t1", "a@x.com")
        assert notifier.sent == []

    async def test_second_request_invalidates_first(self, orchestrator, notifier):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        first = notifier.last_token_for("a@x.com")
        await _request(orchestrator, "t1", "a@x.com")
        second = notifier.last_token_for("a@x.com")
        assert first != second
        assert orchestrator.validate_reset_token("t1", first).valid is False
        assert orchestrator.validate_reset_token("t1", second).valid is True

    async def test_requests_are_rate_limited_per_email(self, orchestrator, settings):
        for _ in range(settings.reset_rate_limit):
            await _request(orchestrator, "t1", "ghost@x.com")
        with pytest.raises(RateLimited):
            await _request(orchestrator, "t1", "ghost@x.com")

    async def test_delivery_failure_keeps_generic_reply(self, runtime, orchestrator):
        class BrokenNotifier:
            def send_password_reset(self, to_email, token):
                raise ConnectionRefusedError("smtp down")

        await _registered(orchestrator)
        runtime.reset_flow.notifier = BrokenNotifier()
        receipt = await _request(orchestrator, "t1", "a@x.com")
        assert receipt.message == RESET_REQUESTED_MESSAGE
        assert runtime.reset_flow.pending_deliveries == 0


class TestResetValidation:
    async def test_validate_does_not_consume(self, orchestrator, notifier):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        token = notifier.last_token_for("a@x.com")
        status = orchestrator.validate_reset_token("t1", token)
        assert status.valid is True
        assert status.email == "a@x.com"
        assert orchestrator.validate_reset_token("t1", token).valid is True
        await orchestrator.confirm_password_reset("t1", token, NEW_PASSWORD)

    async def test_validate_rejects_other_tenant(self, orchestrator, notifier):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        token = notifier.last_token_for("a@x.com")
        assert orchestrator.validate_reset_token("t2", token).valid is False

    async def test_validate_rejects_expired(self, orchestrator, notifier, clock, settings):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        token = notifier.last_token_for("a@x.com")
        clock.advance(minutes=settings.reset_token_ttl_minutes)
        assert orchestrator.validate_reset_token("t1", token).valid is False

    def test_validate_empty_token(self, orchestrator):
        assert orchestrator.validate_reset_token("t1", "").valid is False


class TestResetConfirm:
    async def test_confirm_changes_password(self, orchestrator, notifier):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        token = notifier.last_token_for("a@x.com")
        confirmation = await orchestrator.confirm_password_reset("t1", token, NEW_PASSWORD)
        assert confirmation.email == "a@x.com"
        with pytest.raises(InvalidCredentials):
            await orchestrator.authenticate_password("t1", "a@x.com", STRONG_PASSWORD)
        session = await orchestrator.authenticate_password("t1", "a@x.com", NEW_PASSWORD)
        assert session.principal.id == confirmation.principal_id

    async def test_token_is_single_use(self, orchestrator, notifier, audit_sink):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        token = notifier.last_token_for("a@x.com")
        await orchestrator.confirm_password_reset("t1", token, NEW_PASSWORD)
        with pytest.raises(InvalidOrExpiredResetToken) as excinfo:
            await orchestrator.confirm_password_reset("t1", token, "Another-Pass-3")
        assert excinfo.value.reason == "reset_token_used"
        assert audit_sink.query(success=False)[0].method == "password_reset"

    async def test_expired_token_rejected(self, orchestrator, notifier, clock, settings):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        token = notifier.last_token_for("a@x.com")
        clock.advance(minutes=settings.reset_token_ttl_minutes, seconds=1)
        with pytest.raises(InvalidOrExpiredResetToken) as excinfo:
            await orchestrator.confirm_password_reset("t1", token, NEW_PASSWORD)
        assert excinfo.value.reason == "reset_token_expired"

    async def test_unknown_token_rejected(self, orchestrator):
        with pytest.raises(InvalidOrExpiredResetToken) as excinfo:
            await orchestrator.confirm_password_reset("t1", "made-up", NEW_PASSWORD)
        assert excinfo.value.reason == "unknown_reset_token"

    async def test_weak_password_does_not_consume_token(self, orchestrator, notifier):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        token = notifier.last_token_for("a@x.com")
        with pytest.raises(WeakPassword) as excinfo:
            await orchestrator.confirm_password_reset("t1", token, "weak")
        assert excinfo.value.error_code == "invalid_reset_token"
        assert excinfo.value.public_detail == {}
        assert orchestrator.validate_reset_token("t1", token).valid is True
        await orchestrator.confirm_password_reset("t1", token, NEW_PASSWORD)

    async def test_confirm_revokes_existing_sessions(self, orchestrator, notifier):
        session = await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        await orchestrator.confirm_password_reset("t1", notifier.last_token_for("a@x.com"), NEW_PASSWORD)
        with pytest.raises(TokenReuseDetected):
            await orchestrator.refresh("t1", session.refresh_token)

    async def test_confirm_in_wrong_tenant_fails(self, orchestrator, notifier):
        await _registered(orchestrator)
        await _request(orchestrator, "t1", "a@x.com")
        with pytest.raises(InvalidOrExpiredResetToken):
            await orchestrator.confirm_password_reset("t2", notifier.last_token_for("a@x.com"), NEW_PASSWORD)
