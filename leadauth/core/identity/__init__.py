from __future__ import annotations

from leadauth.core.identity.client import IdentityClient, LoginResponse, OtpIssued, classify_error

__all__ = ["IdentityClient", "LoginResponse", "OtpIssued", "classify_error"]
