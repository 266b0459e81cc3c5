from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar

from leadauth.core.events import redact


class ErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCESS_DENIED = "access_denied"
    ACCOUNT_LOCKED = "account_locked"
    VALIDATION_ERROR = "validation_error"
    NETWORK_ERROR = "network_error"
    CODE_INVALID = "code_invalid"
    CODE_EXPIRED = "code_expired"
    TOO_MANY_ATTEMPTS = "too_many_attempts"
    TOKEN_EXPIRED_OR_USED = "token_expired_or_used"
    NOT_AUTHENTICATED = "not_authenticated"


DEFAULT_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.INVALID_CREDENTIALS: "Invalid credentials.",
    ErrorKind.ACCESS_DENIED: "Access denied. Admin privileges required.",
    ErrorKind.ACCOUNT_LOCKED: "Account is temporarily locked.",
    ErrorKind.VALIDATION_ERROR: "Invalid request.",
    ErrorKind.NETWORK_ERROR: "The identity service is unreachable.",
    ErrorKind.CODE_INVALID: "Invalid code.",
    ErrorKind.CODE_EXPIRED: "The code has expired. Request a new one.",
    ErrorKind.TOO_MANY_ATTEMPTS: "Maximum attempts exceeded. Request a new code.",
    ErrorKind.TOKEN_EXPIRED_OR_USED: "Invalid or expired reset token.",
    ErrorKind.NOT_AUTHENTICATED: "Not logged in.",
}


@dataclass
class AuthError(Exception):
    kind: ErrorKind
    user_message: str = ""
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.user_message:
            self.user_message = DEFAULT_MESSAGES.get(self.kind, "Request failed.")
        super().__init__(self.kind.value)

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def remaining_minutes(self) -> Optional[Any]:
        # passed through exactly as the service sent it
        return self.context.get("remaining_minutes")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "context": redact(self.context or {}),
        }


class IdentityServiceError(AuthError):
    """Raised by the HTTP layer; converted to an Outcome by the components."""


def auth_error(kind: ErrorKind, user_message: str = "", **ctx: Any) -> AuthError:
    return AuthError(kind, user_message, context={k: v for k, v in ctx.items() if v is not None})


T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """
    Typed result of a core operation. Exactly one of `value` / `error` is meaningful:
    callers branch on `ok` and never need try/except around the core.
    """

    ok: bool
    value: Optional[T] = None
    error: Optional[AuthError] = None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(ok=True, value=value)

    @classmethod
    def fail(cls, error: AuthError) -> "Outcome[T]":
        return cls(ok=False, error=error)

    @property
    def kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error is not None else None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": self.ok}
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out
