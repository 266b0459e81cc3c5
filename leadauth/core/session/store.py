from __future__ import annotations

import base64
import json
import os
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from leadauth.core.config.io import atomic_write_json, best_effort_restrict_permissions, discard_file, ensure_dirs, read_json_file
from leadauth.core.session.models import Role, Session, parse_role


KEY_ACCESS_TOKEN = "access_token"
KEY_REFRESH_TOKEN = "refresh_token"
KEY_USER = "user"
KEY_ISSUED_AT = "issued_at"


def session_to_record(session: Session) -> Dict[str, Any]:
    """Flatten a Session into the persisted key/value set."""
    user = dict(session.user)
    user.setdefault("id", session.user_id)
    user.setdefault("role", session.role.value)
    return {
        KEY_ACCESS_TOKEN: session.access_token,
        KEY_REFRESH_TOKEN: session.refresh_token,
        KEY_USER: json.dumps(user, ensure_ascii=False, sort_keys=True),
        KEY_ISSUED_AT: float(session.issued_at),
    }


def session_from_record(record: Any) -> Optional[Session]:
    """Inverse of session_to_record; None for anything malformed."""
    if not isinstance(record, dict):
        return None
    access = record.get(KEY_ACCESS_TOKEN)
    raw_user = record.get(KEY_USER)
    if not isinstance(access, str) or not access or not isinstance(raw_user, str):
        return None
    try:
        user = json.loads(raw_user)
    except (TypeError, ValueError):
        return None
    if not isinstance(user, dict):
        return None
    user_id = str(user.get("id") or user.get("_id") or "")
    if not user_id:
        return None
    refresh = record.get(KEY_REFRESH_TOKEN)
    try:
        issued_at = float(record.get(KEY_ISSUED_AT) or 0.0)
    except (TypeError, ValueError):
        return None
    try:
        return Session(
            user_id=user_id,
            role=parse_role(user.get("role")) if user.get("role") else Role.guest,
            access_token=access,
            refresh_token=refresh if isinstance(refresh, str) and refresh else None,
            issued_at=issued_at,
            user=user,
        )
    except Exception:  # noqa: BLE001
        return None


class CredentialStore:
    """
    Persists the single active session.

    load() never raises: missing or malformed data means "no session".
    """

    def save(self, session: Session) -> None:
        raise NotImplementedError

    def load(self) -> Optional[Session]:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._record: Optional[Dict[str, Any]] = None

    def save(self, session: Session) -> None:
        with self._lock:
            self._record = session_to_record(session)

    def load(self) -> Optional[Session]:
        with self._lock:
            rec = dict(self._record) if self._record is not None else None
        return session_from_record(rec)

    def clear(self) -> None:
        with self._lock:
            self._record = None


@dataclass
class FileCredentialStore(CredentialStore):
    """Plain JSON key/value file, written atomically with 0600 permissions."""

    path: str
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def save(self, session: Session) -> None:
        with self._lock:
            atomic_write_json(self.path, session_to_record(session))
            best_effort_restrict_permissions(self.path)

    def load(self) -> Optional[Session]:
        with self._lock:
            rr = read_json_file(self.path)
        if not rr.ok:
            return None
        return session_from_record(rr.data)

    def clear(self) -> None:
        with self._lock:
            discard_file(self.path)


def _b64e(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii")


def _b64d(s: str) -> bytes:
    return base64.urlsafe_b64decode(s.encode("ascii"))


def generate_key_file(path: str) -> None:
    ensure_dirs(os.path.dirname(path))
    with open(path, "wb") as f:
        f.write(AESGCM.generate_key(bit_length=256))
    best_effort_restrict_permissions(path)


def read_key_file(path: str) -> bytes:
    with open(path, "rb") as f:
        b = f.read()
    if len(b) != 32:
        raise ValueError("Credential key must be 32 bytes (AES-256).")
    return b


@dataclass
class EncryptedCredentialStore(CredentialStore):
    """
    Same key/value set as FileCredentialStore, sealed with AES-GCM.

    File format: {"v": 1, "nonce": b64, "ciphertext": b64}
    """

    path: str
    key_path: str
    aad: bytes = b"leadauth.credentials.v1"
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def save(self, session: Session) -> None:
        key = read_key_file(self.key_path)
        pt = json.dumps(session_to_record(session), ensure_ascii=False, sort_keys=True).encode("utf-8")
        nonce = secrets.token_bytes(12)
        ct = AESGCM(key).encrypt(nonce, pt, self.aad)
        with self._lock:
            atomic_write_json(self.path, {"v": 1, "nonce": _b64e(nonce), "ciphertext": _b64e(ct)})
            best_effort_restrict_permissions(self.path)

    def load(self) -> Optional[Session]:
        with self._lock:
            rr = read_json_file(self.path)
        if not rr.ok or rr.data.get("v") != 1:
            return None
        try:
            key = read_key_file(self.key_path)
            pt = AESGCM(key).decrypt(_b64d(str(rr.data["nonce"])), _b64d(str(rr.data["ciphertext"])), self.aad)
            record = json.loads(pt.decode("utf-8"))
        except Exception:  # noqa: BLE001
            # wrong key, tampering, truncated file: all mean "no session"
            return None
        return session_from_record(record)

    def clear(self) -> None:
        with self._lock:
            discard_file(self.path)


def build_credential_store(cfg: Any, *, resolve=None) -> CredentialStore:
    """Build the store named by a CredentialStoreConfig."""
    resolve = resolve or (lambda p: p)
    backend = str(getattr(cfg.backend, "value", cfg.backend))
    if backend == "memory":
        return MemoryCredentialStore()
    if backend == "encrypted":
        if not cfg.key_path:
            raise ValueError("credential_store.key_path is required for the encrypted backend")
        return EncryptedCredentialStore(path=resolve(cfg.path), key_path=resolve(cfg.key_path))
    return FileCredentialStore(path=resolve(cfg.path))
