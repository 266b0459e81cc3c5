from __future__ import annotations

import time
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class Role(str, Enum):
    guest = "guest"
    user = "user"
    partner = "partner"
    superadmin = "superadmin"


ADMIN_ROLES = frozenset({Role.superadmin})


def parse_role(value: Any) -> Role:
    try:
        return Role(str(value or "").strip().lower())
    except ValueError:
        return Role.guest


class TokenPair(BaseModel):
    model_config = ConfigDict(extra="ignore")
    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None


class Session(BaseModel):
    """
    The one active authenticated session. `user` is the profile exactly as the
    identity service returned it.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    user_id: str
    role: Role = Role.guest
    access_token: str
    refresh_token: Optional[str] = None
    issued_at: float = Field(default_factory=time.time)
    user: Dict[str, Any] = Field(default_factory=dict)

    def with_tokens(self, tokens: TokenPair, *, issued_at: Optional[float] = None) -> "Session":
        return self.model_copy(
            update={
                "access_token": tokens.access_token,
                # the service may rotate the refresh token or keep the old one
                "refresh_token": tokens.refresh_token or self.refresh_token,
                "issued_at": time.time() if issued_at is None else float(issued_at),
            }
        )

    def with_user(self, user: Dict[str, Any]) -> "Session":
        update: Dict[str, Any] = {"user": dict(user)}
        if "role" in user:
            update["role"] = parse_role(user.get("role"))
        return self.model_copy(update=update)

    def is_complete(self) -> bool:
        return bool(self.access_token) and bool(self.user_id)


def session_from_login(tokens: TokenPair, user: Dict[str, Any], *, issued_at: Optional[float] = None) -> Session:
    user_id = str(user.get("id") or user.get("_id") or user.get("userId") or "")
    return Session(
        user_id=user_id,
        role=parse_role(user.get("role")),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        issued_at=time.time() if issued_at is None else float(issued_at),
        user=dict(user),
    )
