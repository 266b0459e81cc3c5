from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class StoreBackend(str, Enum):
    memory = "memory"
    file = "file"
    encrypted = "encrypted"


class CredentialStoreConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    backend: StoreBackend = StoreBackend.file
    path: str = "secure/session.json"
    key_path: Optional[str] = None


class ClientConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    config_version: int = Field(default=1, ge=1)
    api_base_url: str = "http://localhost:5000/api"
    request_timeout_seconds: float = Field(default=30.0, gt=0, le=600)
    poll_interval_seconds: float = Field(default=30.0, ge=1.0, le=3600)
    otp_ttl_seconds: int = Field(default=900, ge=30, le=24 * 3600)
    otp_max_attempts: int = Field(default=5, ge=1, le=100)
    resend_cooldown_seconds: int = Field(default=900, ge=0, le=24 * 3600)
    min_password_length: int = Field(default=8, ge=1, le=256)
    credential_store: CredentialStoreConfig = Field(default_factory=CredentialStoreConfig)
    log_dir: str = "logs"
    events_path: str = "logs/auth_events.jsonl"

    @field_validator("api_base_url")
    @classmethod
    def _validate_base_url(cls, v: str) -> str:
        v = str(v or "").strip()
        if not (v.startswith("http://") or v.startswith("https://")):
            raise ValueError("api_base_url must be an http(s) URL")
        return v.rstrip("/")
