from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


REDACTED = "***REDACTED***"

# compared after lowercasing and dropping "_" / "-", so refresh_token,
# refreshToken and Refresh-Token all match "refreshtoken"
REDACT_KEYS = frozenset(
    {
        "password",
        "newpassword",
        "secret",
        "token",
        "accesstoken",
        "refreshtoken",
        "resettoken",
        "authorization",
        "otp",
        "code",
    }
)


def _normalize_key(key: Any) -> str:
    return str(key).lower().replace("_", "").replace("-", "")


def redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {k: (REDACTED if _normalize_key(k) in REDACT_KEYS else redact(v)) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [redact(x) for x in obj]
    return obj


@dataclass(frozen=True)
class EventLogger:
    """
    Append-only JSONL audit trail for auth events (login, refresh, logout,
    recovery steps). Details are redacted before they reach disk.
    """

    path: str
    _lock: threading.Lock = field(default_factory=threading.Lock, compare=False, repr=False)

    def log(self, trace_id: str, event_type: str, details: Optional[Dict[str, Any]] = None) -> None:
        row = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "trace_id": trace_id,
            "event": event_type,
            "details": redact(details or {}),
        }
        line = json.dumps(row, ensure_ascii=False, default=str)
        with self._lock:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")


class NullEventLogger:
    def log(self, trace_id: str, event_type: str, details: Optional[Dict[str, Any]] = None) -> None:
        return
