from __future__ import annotations

import threading
import time

import pytest

from leadauth.core.errors import ErrorKind
from leadauth.core.events import EventLogger
from leadauth.core.recovery.machine import RecoveryStateMachine
from leadauth.core.recovery.models import RecoveryState, ResetToken

from .helpers.fakes import DummyLogger, RecordingLogger


EMAIL = "partner@example.com"


@pytest.fixture
def rsm(service, clock, events):
    m = RecoveryStateMachine(client=service, clock=clock, logger=DummyLogger(), event_logger=events)
    yield m
    m.close()


def _request(rsm, email=EMAIL):
    res = rsm.request_code(email, "leadgen")
    assert res.ok, res.error
    return res.value


def test_full_recovery_then_login_with_new_password(rsm, service, session_manager, events):
    assert rsm.state == RecoveryState.AWAITING_EMAIL
    attempt = _request(rsm)
    assert rsm.state == RecoveryState.AWAITING_CODE
    assert service.calls[-1] == ("forgot_password", EMAIL, "leadgen")

    vr = rsm.verify_code(attempt, service.code_for(EMAIL))
    assert vr.ok
    assert rsm.state == RecoveryState.AWAITING_NEW_PASSWORD

    rr = rsm.reset_password(vr.value, "brand-new-pass", "brand-new-pass")
    assert rr.ok
    assert rsm.state == RecoveryState.DONE
    assert rsm.attempt is None

    assert session_manager.login(EMAIL, "partner-pass").kind == ErrorKind.INVALID_CREDENTIALS
    assert session_manager.login(EMAIL, "brand-new-pass").ok
    for ev in ("otp_requested", "otp_verified", "password_reset"):
        assert ev in events.types()


def test_server_ttl_sets_expiry(rsm, service, clock):
    service.otp_ttl_seconds = 600
    attempt = _request(rsm)
    assert attempt.otp_expires_at == clock.time() + 600


def test_bad_code_format_never_reaches_network(rsm, service):
    attempt = _request(rsm)
    res = rsm.verify_code(attempt, "12345")
    assert res.kind == ErrorKind.VALIDATION_ERROR
    assert service.count("verify_otp") == 0
    assert rsm.attempt.attempts_remaining == 5


def test_invalid_email_rejected_locally(rsm, service):
    assert rsm.request_code("nope", None).kind == ErrorKind.VALIDATION_ERROR
    assert service.count("forgot_password") == 0


def test_five_wrong_codes_then_too_many_attempts_even_if_correct(rsm, service):
    attempt = _request(rsm)
    right = service.code_for(EMAIL)
    wrong = "000000" if right != "000000" else "111111"

    lefts = []
    for _ in range(5):
        res = rsm.verify_code(attempt, wrong)
        assert res.kind == ErrorKind.CODE_INVALID
        lefts.append(res.error.context["attempts_left"])
    assert lefts == [4, 3, 2, 1, 0]

    res = rsm.verify_code(attempt, right)
    assert res.kind == ErrorKind.TOO_MANY_ATTEMPTS
    assert service.count("verify_otp") == 5


def test_expired_code_fails_without_network(rsm, service, clock):
    attempt = _request(rsm)
    clock.advance(900)
    res = rsm.verify_code(attempt, service.code_for(EMAIL))
    assert res.kind == ErrorKind.CODE_EXPIRED
    assert service.count("verify_otp") == 0
    # stays dead
    assert rsm.verify_code(attempt, service.code_for(EMAIL)).kind == ErrorKind.CODE_EXPIRED


def test_resend_is_refused_during_countdown(rsm, service, clock):
    _request(rsm)
    clock.advance(100)
    res = rsm.resend_code()
    assert res.kind == ErrorKind.VALIDATION_ERROR
    assert res.error.context["remaining_seconds"] == 800
    assert service.count("forgot_password") == 1
    assert rsm.can_resend() is False


def test_resend_without_attempt_is_refused(rsm):
    assert rsm.resend_code().kind == ErrorKind.VALIDATION_ERROR


def test_after_resend_old_code_never_verifies(rsm, service, clock):
    service.next_codes = ["111111", "222222"]
    first = _request(rsm)
    clock.advance(901)
    assert rsm.can_resend() is True
    res = rsm.resend_code()
    assert res.ok
    second = res.value
    assert second.attempt_id != first.attempt_id
    assert second.otp_request_id != first.otp_request_id

    # old attempt handle is superseded locally
    assert rsm.verify_code(first, "111111").kind == ErrorKind.CODE_EXPIRED
    # old code against the new attempt is simply wrong
    assert rsm.verify_code(second, "111111").kind == ErrorKind.CODE_INVALID
    assert rsm.verify_code(second, "222222").ok


def test_request_code_mid_flow_restarts_attempt(rsm, service):
    first = _request(rsm)
    old_code = service.code_for(EMAIL)
    second = _request(rsm)
    assert rsm.attempt.attempt_id == second.attempt_id
    assert rsm.verify_code(first, old_code).kind == ErrorKind.CODE_EXPIRED


def test_verifying_twice_fails_second_time(rsm, service):
    attempt = _request(rsm)
    code = service.code_for(EMAIL)
    assert rsm.verify_code(attempt, code).ok
    res = rsm.verify_code(attempt, code)
    assert res.kind == ErrorKind.CODE_EXPIRED
    assert service.count("verify_otp") == 1


def test_reset_token_is_single_use(rsm, service):
    attempt = _request(rsm)
    token = rsm.verify_code(attempt, service.code_for(EMAIL)).value
    assert rsm.reset_password(token, "new-password-1", "new-password-1").ok
    res = rsm.reset_password(token, "new-password-2", "new-password-2")
    assert res.kind == ErrorKind.TOKEN_EXPIRED_OR_USED
    assert service.count("reset_password") == 1


def test_reset_with_token_from_unrelated_attempt_fails(rsm, service):
    attempt = _request(rsm)
    rsm.verify_code(attempt, service.code_for(EMAIL))
    foreign = ResetToken(value="reset-otp-999", attempt_id="unrelated", issued_at=0.0)
    res = rsm.reset_password(foreign, "new-password-1", "new-password-1")
    assert res.kind == ErrorKind.TOKEN_EXPIRED_OR_USED
    assert service.count("reset_password") == 0


def test_token_from_previous_attempt_is_rejected(rsm, service):
    attempt = _request(rsm)
    old_token = rsm.verify_code(attempt, service.code_for(EMAIL)).value
    fresh = _request(rsm)
    assert fresh.attempt_id != old_token.attempt_id
    assert rsm.reset_password(old_token, "new-password-1", "new-password-1").kind == ErrorKind.TOKEN_EXPIRED_OR_USED


def test_password_rules_checked_before_network_and_token_survives(rsm, service):
    attempt = _request(rsm)
    token = rsm.verify_code(attempt, service.code_for(EMAIL)).value
    assert rsm.reset_password(token, "short", "short").kind == ErrorKind.VALIDATION_ERROR
    assert rsm.reset_password(token, "long-enough-1", "long-enough-2").kind == ErrorKind.VALIDATION_ERROR
    assert service.count("reset_password") == 0
    assert rsm.reset_password(token, "long-enough-1", "long-enough-1").ok


def test_reset_after_token_expiry_fails(rsm, service, clock):
    attempt = _request(rsm)
    token = rsm.verify_code(attempt, service.code_for(EMAIL)).value
    clock.advance(901)
    assert rsm.reset_password(token, "long-enough-1", "long-enough-1").kind == ErrorKind.TOKEN_EXPIRED_OR_USED


def test_network_error_keeps_previous_attempt(rsm, service):
    first = _request(rsm)
    service.fail_next = ConnectionError("down")
    res = rsm.request_code(EMAIL, "leadgen")
    assert res.kind == ErrorKind.NETWORK_ERROR
    assert rsm.attempt.attempt_id == first.attempt_id


def test_network_error_during_verify_does_not_burn_attempt(rsm, service):
    attempt = _request(rsm)
    service.fail_next = ConnectionError("down")
    assert rsm.verify_code(attempt, service.code_for(EMAIL)).kind == ErrorKind.NETWORK_ERROR
    assert rsm.attempt.attempts_remaining == 5
    assert rsm.verify_code(attempt, service.code_for(EMAIL)).ok


def test_cancel_abandons_attempt(rsm, service):
    attempt = _request(rsm)
    rsm.cancel()
    assert rsm.attempt is None
    assert rsm.state == RecoveryState.AWAITING_EMAIL
    assert rsm.resend_seconds_left() == 0.0
    assert rsm.verify_code(attempt, service.code_for(EMAIL)).kind == ErrorKind.CODE_EXPIRED


def test_from_config_uses_configured_limits(service, clock):
    from leadauth.core.config.models import ClientConfig

    cfg = ClientConfig(otp_max_attempts=3, resend_cooldown_seconds=60, min_password_length=12)
    m = RecoveryStateMachine.from_config(cfg, client=service, clock=clock, logger=DummyLogger())
    try:
        attempt = m.request_code(EMAIL).value
        assert attempt.attempts_remaining == 3
        assert m.resend_seconds_left() == 60
        token = m.verify_code(attempt, service.code_for(EMAIL)).value
        assert m.reset_password(token, "elevenchars", "elevenchars").kind == ErrorKind.VALIDATION_ERROR
    finally:
        m.close()


def test_async_variants(rsm, service):
    attempt = rsm.request_code_async(EMAIL).result(timeout=2.0).value
    token = rsm.verify_code_async(attempt, service.code_for(EMAIL)).result(timeout=2.0).value
    assert rsm.reset_password_async(token, "new-password-1", "new-password-1").result(timeout=2.0).ok


def test_concurrent_verify_lets_exactly_one_through(rsm, service):
    attempt = _request(rsm)
    code = service.code_for(EMAIL)
    start = threading.Barrier(4)
    results = []

    def run():
        start.wait(timeout=2.0)
        results.append(rsm.verify_code(attempt, code))

    threads = [threading.Thread(target=run) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5.0)

    assert len(results) == 4
    assert sum(1 for r in results if r.ok) == 1
    assert all(r.kind == ErrorKind.CODE_EXPIRED for r in results if not r.ok)
    assert service.count("verify_otp") == 1
    assert rsm.state == RecoveryState.AWAITING_NEW_PASSWORD


def test_cancel_does_not_wait_for_inflight_verify(rsm, service):
    attempt = _request(rsm)
    service.verify_gate = threading.Event()
    fut = rsm.verify_code_async(attempt, service.code_for(EMAIL))
    assert service.verify_started.wait(2.0)

    began = time.monotonic()
    assert rsm.state == RecoveryState.AWAITING_CODE
    rsm.cancel()
    assert time.monotonic() - began < 0.5
    assert rsm.attempt is None

    service.verify_gate.set()
    res = fut.result(timeout=5.0)
    assert res.kind == ErrorKind.CODE_EXPIRED
    assert res.error.context["reason"] == "superseded"
    assert rsm.state == RecoveryState.AWAITING_EMAIL
    assert rsm.attempt is None


def test_broken_audit_log_never_escapes(tmp_path, service, clock):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    logger = RecordingLogger()
    m = RecoveryStateMachine(client=service, clock=clock, logger=logger, event_logger=EventLogger(path=str(blocker / "events.jsonl")))
    try:
        attempt = m.request_code(EMAIL).value
        assert m.verify_code(attempt, "000000").kind == ErrorKind.CODE_INVALID
        token = m.verify_code(attempt, service.code_for(EMAIL)).value
        assert m.reset_password(token, "new-password-1", "new-password-1").ok
        assert m.state == RecoveryState.DONE
        assert any("Audit event otp_verify_failed not written" in w for w in logger.warnings())
    finally:
        m.close()
