from __future__ import annotations

from leadauth.core.config.manager import ConfigError, ConfigManager
from leadauth.core.config.models import ClientConfig, CredentialStoreConfig, StoreBackend
from leadauth.core.config.paths import ConfigFsPaths

__all__ = [
    "ClientConfig",
    "ConfigError",
    "ConfigFsPaths",
    "ConfigManager",
    "CredentialStoreConfig",
    "StoreBackend",
]
