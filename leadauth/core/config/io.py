from __future__ import annotations

import json
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class ReadResult:
    ok: bool
    data: Dict[str, Any]
    # missing | not_object | corrupt:<detail> | unreadable:<detail>
    error: Optional[str] = None

    @classmethod
    def failed(cls, error: str) -> "ReadResult":
        return cls(ok=False, data={}, error=error)


def ensure_dirs(*dirs: str) -> None:
    for d in filter(None, dirs):
        os.makedirs(d, exist_ok=True)


def read_json_file(path: str) -> ReadResult:
    """Read a JSON object; never raises."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError:
        return ReadResult.failed("missing")
    except OSError as e:
        return ReadResult.failed(f"unreadable:{e.__class__.__name__}")
    try:
        obj = json.loads(text)
    except ValueError as e:
        return ReadResult.failed(f"corrupt:{e}")
    if not isinstance(obj, dict):
        return ReadResult.failed("not_object")
    return ReadResult(ok=True, data=obj)


def atomic_write_json(path: str, data: Dict[str, Any]) -> None:
    """
    Write via temp file + fsync + rename, so readers see the old or the new
    content, never a torn file. mkstemp creates the temp file owner-only.
    """
    folder = os.path.dirname(path) or "."
    ensure_dirs(folder)
    fd, tmp = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=folder)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False, sort_keys=True)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            os.remove(tmp)
        except OSError:
            pass
        raise


def discard_file(path: str) -> None:
    """Delete `path`; if it cannot be removed, blank it instead."""
    try:
        os.remove(path)
    except FileNotFoundError:
        return
    except OSError:
        atomic_write_json(path, {})


def quarantine_corrupt(path: str, backups_dir: str) -> Optional[str]:
    """Move a corrupt file aside as backups/<name>.<ts>.corrupt.json."""
    if not os.path.exists(path):
        return None
    ensure_dirs(backups_dir)
    stamp = time.strftime("%Y%m%d_%H%M%S", time.gmtime())
    dst = os.path.join(backups_dir, f"{os.path.basename(path)}.{stamp}.corrupt.json")
    try:
        shutil.move(path, dst)
    except OSError:
        return None
    return dst


def best_effort_restrict_permissions(path: str) -> None:
    if os.name == "nt":
        return
    try:
        os.chmod(path, 0o600)
    except OSError:
        return
