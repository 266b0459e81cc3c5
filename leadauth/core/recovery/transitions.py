"""
Pure transition functions for the password-recovery protocol.

Each function takes the current attempt (plus inputs and `now`) and returns the
next attempt and/or an error. No I/O, no clocks, no locks: the state machine
owns those and these stay deterministic under test.
"""

from __future__ import annotations

import re
from typing import Optional, Tuple

from leadauth.core.errors import AuthError, ErrorKind, auth_error
from leadauth.core.recovery.models import RecoveryAttempt, RecoveryState, ResetToken


CODE_RE = re.compile(r"^[0-9]{6}$")
EMAIL_RE = re.compile(r"^\S+@\S+\.\S+$")

# remote outcomes after which the attempt can never verify again
_TERMINAL_VERIFY_KINDS = {ErrorKind.CODE_EXPIRED, ErrorKind.TOO_MANY_ATTEMPTS}


def check_email(email: str) -> Optional[AuthError]:
    if not str(email or "").strip():
        return auth_error(ErrorKind.VALIDATION_ERROR, "Email is required.", field="email")
    if not EMAIL_RE.match(str(email).strip()):
        return auth_error(ErrorKind.VALIDATION_ERROR, "Email is invalid.", field="email")
    return None


def check_code_format(code: str) -> Optional[AuthError]:
    if not CODE_RE.match(str(code or "")):
        return auth_error(ErrorKind.VALIDATION_ERROR, "Code must be exactly 6 digits.", field="code")
    return None


def check_new_password(new_password: str, confirmation: str, *, min_length: int) -> Optional[AuthError]:
    if len(new_password or "") < int(min_length):
        return auth_error(ErrorKind.VALIDATION_ERROR, f"Password must be at least {int(min_length)} characters.", field="new_password")
    if new_password != confirmation:
        return auth_error(ErrorKind.VALIDATION_ERROR, "Passwords do not match.", field="confirmation")
    return None


def begin(*, email: str, service_scope: Optional[str], otp_request_id: str, now: float, ttl_seconds: float, max_attempts: int) -> RecoveryAttempt:
    """A fresh attempt; any previous attempt (and its code or token) is superseded."""
    return RecoveryAttempt(
        otp_request_id=otp_request_id,
        email=str(email).strip(),
        service_scope=service_scope,
        otp_expires_at=float(now) + float(ttl_seconds),
        attempts_remaining=max(0, int(max_attempts)),
        state=RecoveryState.AWAITING_CODE,
    )


def precheck_verify(current: Optional[RecoveryAttempt], attempt: RecoveryAttempt, now: float) -> Optional[AuthError]:
    if current is None or current.attempt_id != attempt.attempt_id:
        return auth_error(ErrorKind.CODE_EXPIRED, "This code was replaced by a newer request.", reason="superseded")
    if current.state != RecoveryState.AWAITING_CODE or current.reset_token is not None:
        return auth_error(ErrorKind.CODE_EXPIRED, "This code was already used.", reason="already_verified")
    if current.dead_reason is not None:
        return auth_error(current.dead_reason, attempts_left=current.attempts_remaining)
    if float(now) >= float(current.otp_expires_at):
        return auth_error(ErrorKind.CODE_EXPIRED)
    if current.attempts_remaining <= 0:
        return auth_error(ErrorKind.TOO_MANY_ATTEMPTS, attempts_left=0)
    return None


def mark_dead(current: RecoveryAttempt, kind: ErrorKind) -> RecoveryAttempt:
    if current.dead_reason is not None:
        return current
    update = {"dead_reason": kind}
    if kind == ErrorKind.TOO_MANY_ATTEMPTS:
        update["attempts_remaining"] = 0
    return current.model_copy(update=update)


def on_verify_failed(current: RecoveryAttempt, err: AuthError) -> Tuple[RecoveryAttempt, AuthError]:
    if err.kind == ErrorKind.CODE_INVALID:
        left = err.context.get("attempts_left")
        remaining = int(left) if isinstance(left, int) else current.attempts_remaining - 1
        remaining = max(0, min(remaining, current.attempts_remaining))
        nxt = current.model_copy(update={"attempts_remaining": remaining})
        if remaining == 0:
            nxt = mark_dead(nxt, ErrorKind.TOO_MANY_ATTEMPTS)
        out = AuthError(err.kind, err.user_message, context={**err.context, "attempts_left": remaining})
        return nxt, out
    if err.kind in _TERMINAL_VERIFY_KINDS:
        return mark_dead(current, err.kind), err
    # transport or unexpected errors: the server-side counter is unknown, keep local state
    return current, err


def on_verify_succeeded(current: RecoveryAttempt, token_value: str, now: float) -> Tuple[RecoveryAttempt, ResetToken]:
    token = ResetToken(value=token_value, attempt_id=current.attempt_id, issued_at=float(now))
    nxt = current.model_copy(update={"state": RecoveryState.AWAITING_NEW_PASSWORD, "reset_token": token})
    return nxt, token


def precheck_reset(current: Optional[RecoveryAttempt], token: ResetToken, now: float) -> Optional[AuthError]:
    if current is None or token.attempt_id != current.attempt_id:
        return auth_error(ErrorKind.TOKEN_EXPIRED_OR_USED, reason="unknown_attempt")
    if current.state != RecoveryState.AWAITING_NEW_PASSWORD or current.reset_token is None:
        return auth_error(ErrorKind.TOKEN_EXPIRED_OR_USED, reason="not_verified")
    if current.reset_token.value != token.value:
        return auth_error(ErrorKind.TOKEN_EXPIRED_OR_USED, reason="token_mismatch")
    if float(now) >= float(current.otp_expires_at):
        return auth_error(ErrorKind.TOKEN_EXPIRED_OR_USED, "Reset token has expired.", reason="expired")
    return None


def on_reset_failed(current: RecoveryAttempt, err: AuthError) -> RecoveryAttempt:
    if err.kind == ErrorKind.TOKEN_EXPIRED_OR_USED:
        # token is gone server-side; only a new request_code can continue
        return current.model_copy(update={"reset_token": None, "dead_reason": ErrorKind.TOKEN_EXPIRED_OR_USED})
    return current
