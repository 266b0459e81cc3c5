from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

import requests

from leadauth.core.errors import ErrorKind, IdentityServiceError
from leadauth.core.session.models import TokenPair


# Structured `code` values accepted from the service (plus every ErrorKind value).
SERVICE_CODES: Dict[str, ErrorKind] = {
    "INVALID_CREDENTIALS": ErrorKind.INVALID_CREDENTIALS,
    "ACCESS_DENIED": ErrorKind.ACCESS_DENIED,
    "ADMIN_REQUIRED": ErrorKind.ACCESS_DENIED,
    "ACCOUNT_LOCKED": ErrorKind.ACCOUNT_LOCKED,
    "VALIDATION_ERROR": ErrorKind.VALIDATION_ERROR,
    "OTP_INVALID": ErrorKind.CODE_INVALID,
    "CODE_INVALID": ErrorKind.CODE_INVALID,
    "OTP_EXPIRED": ErrorKind.CODE_EXPIRED,
    "CODE_EXPIRED": ErrorKind.CODE_EXPIRED,
    "OTP_ALREADY_USED": ErrorKind.CODE_EXPIRED,
    "OTP_MAX_ATTEMPTS": ErrorKind.TOO_MANY_ATTEMPTS,
    "TOO_MANY_ATTEMPTS": ErrorKind.TOO_MANY_ATTEMPTS,
    "RESET_TOKEN_INVALID": ErrorKind.TOKEN_EXPIRED_OR_USED,
    "RESET_TOKEN_EXPIRED": ErrorKind.TOKEN_EXPIRED_OR_USED,
    "TOKEN_EXPIRED_OR_USED": ErrorKind.TOKEN_EXPIRED_OR_USED,
    "REFRESH_TOKEN_INVALID": ErrorKind.NOT_AUTHENTICATED,
}
SERVICE_CODES.update({k.value.upper(): k for k in ErrorKind})

DEFAULT_STATUS_KINDS: Dict[int, ErrorKind] = {
    400: ErrorKind.VALIDATION_ERROR,
    401: ErrorKind.INVALID_CREDENTIALS,
    403: ErrorKind.ACCESS_DENIED,
    404: ErrorKind.VALIDATION_ERROR,
    422: ErrorKind.VALIDATION_ERROR,
    423: ErrorKind.ACCOUNT_LOCKED,
}


def classify_error(status: int, body: Mapping[str, Any], *, status_kinds: Optional[Mapping[int, ErrorKind]] = None) -> IdentityServiceError:
    """
    Map an error response to a typed error. The structured `code` field wins;
    HTTP status is the fallback. Message text is carried, never interpreted.
    """
    kinds = dict(DEFAULT_STATUS_KINDS)
    kinds.update(status_kinds or {})

    kind: Optional[ErrorKind] = None
    raw_code = body.get("code") or body.get("errorCode")
    if raw_code:
        kind = SERVICE_CODES.get(str(raw_code).strip().upper())
    if kind is None and body.get("accountLocked"):
        kind = ErrorKind.ACCOUNT_LOCKED
    if kind is None:
        if status >= 500:
            kind = ErrorKind.NETWORK_ERROR
        else:
            kind = kinds.get(int(status), ErrorKind.VALIDATION_ERROR)

    ctx: Dict[str, Any] = {"status": int(status)}
    if body.get("messageDE"):
        ctx["message_de"] = body.get("messageDE")
    if "remainingMinutes" in body:
        ctx["remaining_minutes"] = body.get("remainingMinutes")
    if "attemptsLeft" in body:
        ctx["attempts_left"] = body.get("attemptsLeft")
    message = str(body.get("message") or body.get("error") or "")
    return IdentityServiceError(kind, message, context=ctx)


@dataclass(frozen=True)
class LoginResponse:
    tokens: TokenPair
    user: Dict[str, Any]


@dataclass(frozen=True)
class OtpIssued:
    otp_request_id: str
    expires_in_seconds: Optional[float] = None
    max_attempts: Optional[int] = None


class IdentityClient:
    """
    HTTP boundary to the identity and notification services.

    Every method either returns parsed data or raises IdentityServiceError.
    The bearer credential comes from `credentials` (usually
    SessionManager.auth_headers); this client holds no session state.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        credentials: Optional[Callable[[], Dict[str, str]]] = None,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)
        self.credentials = credentials
        self._http = http or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def bind_credentials(self, credentials: Callable[[], Dict[str, str]]) -> None:
        self.credentials = credentials

    def close(self) -> None:
        try:
            self._http.close()
        except Exception:  # noqa: BLE001
            pass

    # ---------- transport ----------
    def call(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        authenticated: bool = True,
        status_kinds: Optional[Mapping[int, ErrorKind]] = None,
    ) -> Dict[str, Any]:
        hdrs: Dict[str, str] = {"Content-Type": "application/json", "Accept": "application/json"}
        if authenticated and self.credentials is not None:
            hdrs.update(self.credentials() or {})
        hdrs.update(headers or {})
        try:
            r = self._http.request(method.upper(), self._url(path), json=json, params=params, headers=hdrs, timeout=self.timeout_seconds)
        except requests.Timeout as e:
            raise IdentityServiceError(ErrorKind.NETWORK_ERROR, "The identity service timed out.", context={"path": path}) from e
        except requests.RequestException as e:
            raise IdentityServiceError(ErrorKind.NETWORK_ERROR, context={"path": path, "detail": type(e).__name__}) from e

        try:
            body = r.json() if r.content else {}
        except ValueError:
            body = None
        if not (200 <= int(r.status_code) < 300):
            raise classify_error(int(r.status_code), body if isinstance(body, dict) else {}, status_kinds=status_kinds)
        if not isinstance(body, dict):
            raise IdentityServiceError(ErrorKind.NETWORK_ERROR, "Malformed response from the identity service.", context={"path": path, "status": int(r.status_code)})
        return body

    # ---------- auth ----------
    def login(self, identifier: str, secret: str, *, service_scope: Optional[str] = None, admin_only: bool = False) -> LoginResponse:
        payload: Dict[str, Any] = {"email": identifier, "password": secret}
        if service_scope:
            payload["selectedService"] = service_scope
        if admin_only:
            payload["isAdminLogin"] = True
        data = self.call("POST", "/auth/login", json=payload, authenticated=False)
        return _parse_login(data, "Login")

    def register(self, profile: Dict[str, Any]) -> LoginResponse:
        # the profile is passed through as-is; the service owns its schema
        data = self.call("POST", "/auth/register", json=dict(profile), authenticated=False, status_kinds={409: ErrorKind.VALIDATION_ERROR})
        return _parse_login(data, "Registration")

    def refresh(self, refresh_token: str) -> TokenPair:
        data = self.call(
            "POST",
            "/auth/refresh",
            json={"refreshToken": refresh_token},
            authenticated=False,
            status_kinds={401: ErrorKind.NOT_AUTHENTICATED, 403: ErrorKind.NOT_AUTHENTICATED},
        )
        return _parse_tokens(data)

    # ---------- password recovery ----------
    def forgot_password(self, email: str, service_scope: Optional[str]) -> OtpIssued:
        payload: Dict[str, Any] = {"email": email}
        if service_scope:
            payload["service"] = service_scope
        data = self.call("POST", "/auth/forgot-password", json=payload, authenticated=False)
        otp_id = data.get("otpId") or data.get("otpRequestId")
        if not otp_id:
            raise IdentityServiceError(ErrorKind.NETWORK_ERROR, "Reset response carried no request id.")
        expires = data.get("expiresInSeconds")
        max_attempts = data.get("maxAttempts")
        return OtpIssued(
            otp_request_id=str(otp_id),
            expires_in_seconds=float(expires) if isinstance(expires, (int, float)) else None,
            max_attempts=int(max_attempts) if isinstance(max_attempts, int) else None,
        )

    def verify_otp(self, otp_request_id: str, code: str) -> str:
        data = self.call(
            "POST",
            "/auth/verify-otp",
            json={"otpId": otp_request_id, "otp": code},
            authenticated=False,
            status_kinds={400: ErrorKind.CODE_INVALID, 404: ErrorKind.CODE_EXPIRED, 410: ErrorKind.CODE_EXPIRED, 429: ErrorKind.TOO_MANY_ATTEMPTS},
        )
        token = data.get("resetToken")
        if not token:
            raise IdentityServiceError(ErrorKind.NETWORK_ERROR, "Verify response carried no reset token.")
        return str(token)

    def reset_password(self, reset_token: str, new_password: str) -> None:
        self.call(
            "POST",
            "/auth/reset-password",
            json={"resetToken": reset_token, "newPassword": new_password},
            authenticated=False,
            status_kinds={400: ErrorKind.TOKEN_EXPIRED_OR_USED, 404: ErrorKind.TOKEN_EXPIRED_OR_USED, 410: ErrorKind.TOKEN_EXPIRED_OR_USED},
        )


def _parse_login(data: Dict[str, Any], what: str) -> LoginResponse:
    tokens = _parse_tokens(data)
    user = data.get("user")
    if not isinstance(user, dict):
        raise IdentityServiceError(ErrorKind.NETWORK_ERROR, f"{what} response carried no user profile.")
    return LoginResponse(tokens=tokens, user=user)


def _parse_tokens(data: Dict[str, Any]) -> TokenPair:
    tokens = data.get("tokens") if isinstance(data.get("tokens"), dict) else {}
    access = tokens.get("accessToken") or tokens.get("token") or data.get("token")
    if not access:
        raise IdentityServiceError(ErrorKind.NETWORK_ERROR, "No token received from server.")
    return TokenPair(access_token=str(access), refresh_token=tokens.get("refreshToken") or None)
