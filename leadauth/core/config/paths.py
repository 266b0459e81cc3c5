from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ConfigFsPaths:
    root: str = "."

    @property
    def config_dir(self) -> str:
        return os.path.join(self.root, "config")

    @property
    def secure_dir(self) -> str:
        return os.path.join(self.root, "secure")

    @property
    def backups_dir(self) -> str:
        return os.path.join(self.config_dir, "backups")

    @property
    def client(self) -> str:
        return os.path.join(self.config_dir, "client.json")

    def resolve(self, path: str) -> str:
        """Relative paths in config are relative to the root."""
        if os.path.isabs(path):
            return path
        return os.path.join(self.root, path)
