from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from leadauth.core.errors import AuthError, ErrorKind, IdentityServiceError, Outcome, auth_error
from leadauth.core.events import NullEventLogger
from leadauth.core.logger import get_logger
from leadauth.core.recovery import transitions as tr
from leadauth.core.recovery.countdown import Countdown
from leadauth.core.recovery.models import RecoveryAttempt, RecoveryState, ResetToken


def _superseded() -> AuthError:
    return auth_error(ErrorKind.CODE_EXPIRED, "This code was replaced by a newer request.", reason="superseded")


def _cancelled() -> AuthError:
    return auth_error(ErrorKind.CODE_EXPIRED, "Password recovery was cancelled.", reason="cancelled")


class RecoveryStateMachine:
    """
    Drives AWAITING_EMAIL -> AWAITING_CODE -> AWAITING_NEW_PASSWORD -> DONE
    against the identity service. Owns the single active RecoveryAttempt.

    `_step` runs network steps one at a time, so a second concurrent
    verify_code observes the attempt as updated by the first. `_lock` only
    guards state and is never held over a request; cancel() bumps
    `_generation` and any step still on the network discards its result.
    Nothing here retries or restarts on its own: expired/exhausted attempts
    stay dead until request_code is called.
    """

    def __init__(
        self,
        *,
        client: Any,
        clock: Callable[[], float] = time.time,
        otp_ttl_seconds: float = 900,
        max_attempts: int = 5,
        resend_cooldown_seconds: float = 900,
        min_password_length: int = 8,
        on_resend_available: Optional[Callable[[], None]] = None,
        logger=None,
        event_logger: Any = None,
    ):
        self.client = client
        self.clock = clock
        self.otp_ttl_seconds = float(otp_ttl_seconds)
        self.max_attempts = int(max_attempts)
        self.resend_cooldown_seconds = float(resend_cooldown_seconds)
        self.min_password_length = int(min_password_length)
        self.logger = logger or get_logger()
        self.event_logger = event_logger or NullEventLogger()

        self._lock = threading.RLock()
        self._step = threading.Lock()
        self._generation = 0
        self._attempt: Optional[RecoveryAttempt] = None
        self._state = RecoveryState.AWAITING_EMAIL
        self._countdown = Countdown(clock=clock, on_elapsed=on_resend_available, logger=self.logger)
        self._exec = ThreadPoolExecutor(max_workers=1, thread_name_prefix="recovery-io")

    @classmethod
    def from_config(cls, cfg: Any, *, client: Any, **kwargs: Any) -> "RecoveryStateMachine":
        return cls(
            client=client,
            otp_ttl_seconds=cfg.otp_ttl_seconds,
            max_attempts=cfg.otp_max_attempts,
            resend_cooldown_seconds=cfg.resend_cooldown_seconds,
            min_password_length=cfg.min_password_length,
            **kwargs,
        )

    # ---------- views ----------
    @property
    def state(self) -> RecoveryState:
        with self._lock:
            return self._state

    @property
    def attempt(self) -> Optional[RecoveryAttempt]:
        with self._lock:
            return self._attempt

    def resend_seconds_left(self) -> float:
        return self._countdown.remaining()

    def can_resend(self) -> bool:
        with self._lock:
            return self._state == RecoveryState.AWAITING_CODE and not self._countdown.active()

    # ---------- step 1 ----------
    def request_code(self, email: str, service_scope: Optional[str] = None) -> Outcome[RecoveryAttempt]:
        bad = tr.check_email(email)
        if bad is not None:
            return Outcome.fail(bad)
        trace_id = uuid.uuid4().hex
        with self._step:
            with self._lock:
                gen = self._generation
            try:
                issued = self.client.forgot_password(str(email).strip(), service_scope)
            except IdentityServiceError as e:
                return self._failed(trace_id, "otp_request_failed", e)
            except Exception as e:  # noqa: BLE001
                return self._failed(trace_id, "otp_request_failed", auth_error(ErrorKind.NETWORK_ERROR, detail=type(e).__name__))

            ttl = issued.expires_in_seconds if issued.expires_in_seconds else self.otp_ttl_seconds
            attempts = issued.max_attempts if issued.max_attempts else self.max_attempts
            with self._lock:
                if self._generation != gen:
                    return Outcome.fail(_cancelled())
                replaced = self._attempt is not None
                attempt = tr.begin(
                    email=email,
                    service_scope=service_scope,
                    otp_request_id=issued.otp_request_id,
                    now=self.clock(),
                    ttl_seconds=ttl,
                    max_attempts=attempts,
                )
                self._generation += 1
                self._attempt = attempt
                self._state = RecoveryState.AWAITING_CODE
                self._countdown.start(min(self.resend_cooldown_seconds, ttl))

        self.logger.info(f"One-time code requested (attempt {attempt.attempt_id}, replaced={replaced}).")
        self._audit(trace_id, "otp_requested", {"attempt_id": attempt.attempt_id, "service_scope": service_scope, "replaced": replaced})
        return Outcome.success(attempt)

    def resend_code(self) -> Outcome[RecoveryAttempt]:
        with self._lock:
            current = self._attempt
            if current is None or self._state != RecoveryState.AWAITING_CODE:
                return Outcome.fail(auth_error(ErrorKind.VALIDATION_ERROR, "There is no pending code to resend."))
            left = self._countdown.remaining()
            if left > 0:
                return Outcome.fail(auth_error(ErrorKind.VALIDATION_ERROR, "Please wait before requesting a new code.", remaining_seconds=int(left + 0.999)))
        return self.request_code(current.email, current.service_scope)

    # ---------- step 2 ----------
    def verify_code(self, attempt: RecoveryAttempt, code: str) -> Outcome[ResetToken]:
        bad = tr.check_code_format(code)
        if bad is not None:
            # rejected locally so no server-side attempt is spent
            return Outcome.fail(bad)
        trace_id = uuid.uuid4().hex
        with self._step:
            with self._lock:
                now = self.clock()
                current = self._attempt
                gen = self._generation
                pre = tr.precheck_verify(current, attempt, now)
                if pre is not None:
                    if current is not None and current.attempt_id == attempt.attempt_id and pre.kind in (ErrorKind.CODE_EXPIRED, ErrorKind.TOO_MANY_ATTEMPTS) and current.state == RecoveryState.AWAITING_CODE:
                        self._attempt = tr.mark_dead(current, pre.kind)
                    return Outcome.fail(pre)
            assert current is not None
            try:
                token_value = self.client.verify_otp(current.otp_request_id, str(code))
            except IdentityServiceError as e:
                with self._lock:
                    if self._generation != gen:
                        return Outcome.fail(_superseded())
                    self._attempt, err = tr.on_verify_failed(current, e)
                return self._failed(trace_id, "otp_verify_failed", err)
            except Exception as e:  # noqa: BLE001
                return self._failed(trace_id, "otp_verify_failed", auth_error(ErrorKind.NETWORK_ERROR, detail=type(e).__name__))

            with self._lock:
                if self._generation != gen:
                    # cancelled or replaced while the call was out: the token is dropped
                    return Outcome.fail(_superseded())
                self._attempt, token = tr.on_verify_succeeded(current, token_value, self.clock())
                self._state = RecoveryState.AWAITING_NEW_PASSWORD
                self._countdown.cancel()

        self._audit(trace_id, "otp_verified", {"attempt_id": token.attempt_id})
        return Outcome.success(token)

    # ---------- step 3 ----------
    def reset_password(self, token: ResetToken, new_password: str, confirmation: str) -> Outcome[None]:
        trace_id = uuid.uuid4().hex
        with self._step:
            with self._lock:
                pre = tr.precheck_reset(self._attempt, token, self.clock())
                current = self._attempt
                gen = self._generation
            if pre is not None:
                return self._failed(trace_id, "password_reset_failed", pre)
            bad = tr.check_new_password(new_password, confirmation, min_length=self.min_password_length)
            if bad is not None:
                return Outcome.fail(bad)
            assert current is not None
            try:
                self.client.reset_password(token.value, new_password)
            except IdentityServiceError as e:
                with self._lock:
                    if self._generation == gen:
                        self._attempt = tr.on_reset_failed(current, e)
                return self._failed(trace_id, "password_reset_failed", e)
            except Exception as e:  # noqa: BLE001
                return self._failed(trace_id, "password_reset_failed", auth_error(ErrorKind.NETWORK_ERROR, detail=type(e).__name__))

            with self._lock:
                # the server accepted the new password even if the flow was cancelled meanwhile
                if self._generation == gen:
                    # token consumed: the attempt is discarded with it
                    self._generation += 1
                    self._attempt = None
                    self._state = RecoveryState.DONE
                    self._countdown.cancel()

        self.logger.info(f"Password reset completed (attempt {current.attempt_id}).")
        self._audit(trace_id, "password_reset", {"attempt_id": current.attempt_id})
        return Outcome.success(None)

    # ---------- teardown ----------
    def cancel(self) -> None:
        """
        Abandon the current attempt (if any) and stop its countdown. Returns at
        once; a step still waiting on the network drops its result.
        """
        with self._lock:
            had = self._attempt is not None
            self._generation += 1
            self._attempt = None
            self._state = RecoveryState.AWAITING_EMAIL
            self._countdown.cancel()
        if had:
            self._audit(uuid.uuid4().hex, "recovery_cancelled", {})

    def close(self) -> None:
        self.cancel()
        self._exec.shutdown(wait=False, cancel_futures=True)

    def _failed(self, trace_id: str, event: str, err: AuthError) -> Outcome[Any]:
        self.logger.warning(f"Recovery step failed: {err.code}")
        self._audit(trace_id, event, {"error_code": err.code, "attempts_left": err.context.get("attempts_left")})
        return Outcome.fail(err)

    def _audit(self, trace_id: str, event_type: str, details: Dict[str, Any]) -> None:
        try:
            self.event_logger.log(trace_id, event_type, details)
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Audit event {event_type} not written: {e}")

    # ---------- non-blocking variants ----------
    def request_code_async(self, email: str, service_scope: Optional[str] = None) -> "Future[Outcome[RecoveryAttempt]]":
        return self._exec.submit(self.request_code, email, service_scope)

    def verify_code_async(self, attempt: RecoveryAttempt, code: str) -> "Future[Outcome[ResetToken]]":
        return self._exec.submit(self.verify_code, attempt, code)

    def reset_password_async(self, token: ResetToken, new_password: str, confirmation: str) -> "Future[Outcome[None]]":
        return self._exec.submit(self.reset_password, token, new_password, confirmation)
