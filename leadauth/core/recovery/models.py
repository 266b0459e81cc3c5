from __future__ import annotations

import uuid
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from leadauth.core.errors import ErrorKind


class RecoveryState(str, Enum):
    AWAITING_EMAIL = "AWAITING_EMAIL"
    AWAITING_CODE = "AWAITING_CODE"
    AWAITING_NEW_PASSWORD = "AWAITING_NEW_PASSWORD"
    DONE = "DONE"


class ResetToken(BaseModel):
    """Bound to exactly one attempt; the machine refuses it anywhere else."""

    model_config = ConfigDict(extra="forbid", frozen=True)
    value: str = Field(min_length=1)
    attempt_id: str
    issued_at: float

    def __repr__(self) -> str:
        return f"ResetToken(attempt_id={self.attempt_id!r})"

    __str__ = __repr__


class RecoveryAttempt(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    attempt_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    otp_request_id: str
    email: str
    service_scope: Optional[str] = None
    otp_expires_at: float
    attempts_remaining: int = Field(ge=0)
    state: RecoveryState = RecoveryState.AWAITING_CODE
    reset_token: Optional[ResetToken] = None
    # set once the attempt can no longer verify (CODE_EXPIRED / TOO_MANY_ATTEMPTS)
    dead_reason: Optional[ErrorKind] = None

    def seconds_left(self, now: float) -> float:
        return max(0.0, float(self.otp_expires_at) - float(now))
