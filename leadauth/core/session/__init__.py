"""
Authenticated-session lifecycle: models, credential persistence and the
SessionManager that owns the one active Session.
"""

from __future__ import annotations

from leadauth.core.session.manager import SessionManager
from leadauth.core.session.models import ADMIN_ROLES, Role, Session, TokenPair, parse_role
from leadauth.core.session.store import (
    CredentialStore,
    EncryptedCredentialStore,
    FileCredentialStore,
    MemoryCredentialStore,
    build_credential_store,
)

__all__ = [
    "ADMIN_ROLES",
    "CredentialStore",
    "EncryptedCredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
    "Role",
    "Session",
    "SessionManager",
    "TokenPair",
    "build_credential_store",
    "parse_role",
]
