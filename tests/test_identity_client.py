from __future__ import annotations

import pytest
import requests

from leadauth.core.errors import ErrorKind, IdentityServiceError
from leadauth.core.identity.client import IdentityClient, classify_error

from .helpers.fakes import FakeHttp


BASE = "http://crm.test/api"


@pytest.fixture
def http():
    return FakeHttp()


@pytest.fixture
def client(http):
    return IdentityClient(BASE + "/", timeout_seconds=5, http=http)


def _raises(fn, *a, **kw) -> IdentityServiceError:
    with pytest.raises(IdentityServiceError) as ei:
        fn(*a, **kw)
    return ei.value


def test_login_payload_and_parsing(client, http):
    http.queue(200, {"tokens": {"accessToken": "at", "refreshToken": "rt"}, "user": {"id": "u1", "role": "partner"}})
    resp = client.login("p@example.com", "pw", service_scope="leadgen", admin_only=True)
    req = http.requests[-1]
    assert req["method"] == "POST"
    assert req["url"] == f"{BASE}/auth/login"
    assert req["json"] == {"email": "p@example.com", "password": "pw", "selectedService": "leadgen", "isAdminLogin": True}
    assert req["timeout"] == 5.0
    assert "Authorization" not in req["headers"]
    assert resp.tokens.access_token == "at"
    assert resp.tokens.refresh_token == "rt"
    assert resp.user["id"] == "u1"


def test_login_without_token_is_network_error(client, http):
    http.queue(200, {"user": {"id": "u1"}})
    assert _raises(client.login, "p@example.com", "pw").kind == ErrorKind.NETWORK_ERROR


def test_register_posts_profile_and_parses_legacy_token(client, http):
    http.queue(201, {"token": "at-new", "user": {"id": "u9", "role": "user", "email": "new@example.com"}})
    resp = client.register({"email": "new@example.com", "password": "pw12345678", "name": "New"})
    req = http.requests[-1]
    assert req["method"] == "POST"
    assert req["url"] == f"{BASE}/auth/register"
    assert req["json"] == {"email": "new@example.com", "password": "pw12345678", "name": "New"}
    assert "Authorization" not in req["headers"]
    assert resp.tokens.access_token == "at-new"
    assert resp.tokens.refresh_token is None
    assert resp.user["id"] == "u9"


def test_register_conflict_is_validation_error(client, http):
    http.queue(409, {"message": "User already exists"})
    err = _raises(client.register, {"email": "p@example.com", "password": "pw"})
    assert err.kind == ErrorKind.VALIDATION_ERROR
    assert err.user_message == "User already exists"


def test_locked_account_carries_remaining_minutes(client, http):
    http.queue(423, {"message": "Account locked", "messageDE": "Konto gesperrt", "accountLocked": True, "remainingMinutes": 14})
    err = _raises(client.login, "p@example.com", "pw")
    assert err.kind == ErrorKind.ACCOUNT_LOCKED
    assert err.remaining_minutes == 14
    assert err.context["message_de"] == "Konto gesperrt"
    assert err.user_message == "Account locked"


def test_account_locked_flag_beats_status(client, http):
    http.queue(401, {"message": "x", "accountLocked": True, "remainingMinutes": 3})
    assert _raises(client.login, "p@example.com", "pw").kind == ErrorKind.ACCOUNT_LOCKED


def test_message_text_is_not_interpreted():
    err = classify_error(401, {"message": "Account is locked for 15 minutes"})
    assert err.kind == ErrorKind.INVALID_CREDENTIALS


@pytest.mark.parametrize(
    "status,kind",
    [
        (400, ErrorKind.VALIDATION_ERROR),
        (401, ErrorKind.INVALID_CREDENTIALS),
        (403, ErrorKind.ACCESS_DENIED),
        (422, ErrorKind.VALIDATION_ERROR),
        (423, ErrorKind.ACCOUNT_LOCKED),
        (500, ErrorKind.NETWORK_ERROR),
        (503, ErrorKind.NETWORK_ERROR),
    ],
)
def test_status_fallback(status, kind):
    assert classify_error(status, {}).kind == kind


def test_structured_code_wins_over_status():
    assert classify_error(400, {"code": "OTP_EXPIRED"}).kind == ErrorKind.CODE_EXPIRED
    assert classify_error(403, {"errorCode": "too_many_attempts"}).kind == ErrorKind.TOO_MANY_ATTEMPTS
    # unknown codes fall back to status
    assert classify_error(403, {"code": "SOMETHING_NEW"}).kind == ErrorKind.ACCESS_DENIED


def test_verify_otp_wrong_code_passes_attempts_left(client, http):
    http.queue(400, {"message": "Invalid OTP", "attemptsLeft": 2})
    err = _raises(client.verify_otp, "otp-1", "123456")
    assert err.kind == ErrorKind.CODE_INVALID
    assert err.context["attempts_left"] == 2
    assert http.requests[-1]["json"] == {"otpId": "otp-1", "otp": "123456"}


@pytest.mark.parametrize("status,kind", [(404, ErrorKind.CODE_EXPIRED), (410, ErrorKind.CODE_EXPIRED), (429, ErrorKind.TOO_MANY_ATTEMPTS)])
def test_verify_otp_status_kinds(client, http, status, kind):
    http.queue(status, {"message": "nope"})
    assert _raises(client.verify_otp, "otp-1", "123456").kind == kind


def test_verify_otp_returns_reset_token(client, http):
    http.queue(200, {"resetToken": "tok-1"})
    assert client.verify_otp("otp-1", "123456") == "tok-1"


def test_forgot_password(client, http):
    http.queue(200, {"otpId": "otp-9", "expiresInSeconds": 600, "maxAttempts": 3})
    issued = client.forgot_password("p@example.com", "invoice")
    assert http.requests[-1]["json"] == {"email": "p@example.com", "service": "invoice"}
    assert issued.otp_request_id == "otp-9"
    assert issued.expires_in_seconds == 600.0
    assert issued.max_attempts == 3


def test_forgot_password_without_optional_fields(client, http):
    http.queue(200, {"otpId": "otp-9"})
    issued = client.forgot_password("p@example.com", None)
    assert http.requests[-1]["json"] == {"email": "p@example.com"}
    assert issued.expires_in_seconds is None
    assert issued.max_attempts is None


def test_reset_password_rejected_token(client, http):
    http.queue(400, {"message": "Invalid or expired reset token"})
    err = _raises(client.reset_password, "tok", "new-password")
    assert err.kind == ErrorKind.TOKEN_EXPIRED_OR_USED
    assert http.requests[-1]["json"] == {"resetToken": "tok", "newPassword": "new-password"}


def test_refresh_rejection_is_not_authenticated(client, http):
    http.queue(401, {"message": "expired"})
    assert _raises(client.refresh, "rt").kind == ErrorKind.NOT_AUTHENTICATED


def test_bearer_credentials_injected_per_request(client, http):
    token = {"v": "a1"}
    client.bind_credentials(lambda: {"Authorization": f"Bearer {token['v']}"})
    client.call("GET", "/notifications/unread-count")
    assert http.requests[-1]["headers"]["Authorization"] == "Bearer a1"
    token["v"] = "a2"
    client.call("GET", "/notifications/unread-count")
    assert http.requests[-1]["headers"]["Authorization"] == "Bearer a2"


def test_transport_errors_map_to_network_error(client, http):
    http.queue_exception(requests.ConnectionError("refused"))
    assert _raises(client.call, "GET", "/x").kind == ErrorKind.NETWORK_ERROR
    http.queue_exception(requests.Timeout("slow"))
    assert _raises(client.call, "GET", "/x").kind == ErrorKind.NETWORK_ERROR


def test_non_json_success_body_is_network_error(client, http):
    http.queue(200, raw=b"<html>")
    assert _raises(client.call, "GET", "/x").kind == ErrorKind.NETWORK_ERROR


def test_close_closes_session(client, http):
    client.close()
    assert http.closed is True
