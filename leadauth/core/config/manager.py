from __future__ import annotations

import os
from typing import Any, Dict, Optional

from pydantic import ValidationError

from leadauth.core.config.io import atomic_write_json, ensure_dirs, quarantine_corrupt, read_json_file
from leadauth.core.config.models import ClientConfig
from leadauth.core.config.paths import ConfigFsPaths


ENV_API_URL = "LEADAUTH_API_URL"


class ConfigError(RuntimeError):
    pass


class ConfigManager:
    """
    Loads config/client.json.

    - missing file: defaults are written (unless read_only)
    - corrupt file: moved to config/backups/*.corrupt.json, defaults used
    - LEADAUTH_API_URL overrides api_base_url without being written back
    """

    def __init__(self, *, fs: Optional[ConfigFsPaths] = None, logger=None, read_only: bool = False, environ: Optional[Dict[str, str]] = None):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger
        self.read_only = read_only
        self._environ = environ if environ is not None else os.environ
        self._cfg: Optional[ClientConfig] = None

    def load_all(self) -> ClientConfig:
        if not self.read_only:
            ensure_dirs(self.fs.config_dir)
        rr = read_json_file(self.fs.client)
        raw: Dict[str, Any] = {}
        if rr.ok:
            raw = rr.data
        elif rr.error == "missing":
            if not self.read_only:
                atomic_write_json(self.fs.client, ClientConfig().model_dump(mode="json"))
        else:
            if self.logger:
                self.logger.warning(f"client.json unreadable ({rr.error}); using defaults.")
            if not self.read_only:
                quarantine_corrupt(self.fs.client, self.fs.backups_dir)
                atomic_write_json(self.fs.client, ClientConfig().model_dump(mode="json"))

        try:
            cfg = ClientConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigError(f"Invalid client.json: {e}") from e

        override = str(self._environ.get(ENV_API_URL) or "").strip()
        if override:
            try:
                cfg = ClientConfig.model_validate({**cfg.model_dump(mode="json"), "api_base_url": override})
            except ValidationError as e:
                raise ConfigError(f"Invalid {ENV_API_URL}: {e}") from e

        self._cfg = cfg
        return cfg

    def get(self) -> ClientConfig:
        if self._cfg is None:
            return self.load_all()
        return self._cfg

    def save(self, cfg: ClientConfig) -> None:
        if self.read_only:
            raise ConfigError("Config is read-only.")
        atomic_write_json(self.fs.client, cfg.model_dump(mode="json"))
        self._cfg = cfg
