from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional, Union


LOGGER_NAME = "leadauth"
ENV_LOG_LEVEL = "LEADAUTH_LOG_LEVEL"


def get_logger() -> logging.Logger:
    return logging.getLogger(LOGGER_NAME)


def _resolve_level(level: Union[int, str, None]) -> int:
    raw = level if level is not None else os.environ.get(ENV_LOG_LEVEL, "INFO")
    if isinstance(raw, int):
        return raw
    value = logging.getLevelName(str(raw).strip().upper())
    return value if isinstance(value, int) else logging.INFO


def setup_logging(log_dir: str = "logs", *, level: Union[int, str, None] = None, console: bool = True) -> logging.Logger:
    """
    Configure the package logger once: leadauth.log (rotating) plus an
    optional console handler. Safe to call repeatedly.
    """
    os.makedirs(log_dir, exist_ok=True)
    logger = get_logger()
    logger.setLevel(_resolve_level(level))
    logger.propagate = False

    file_handler: Optional[RotatingFileHandler] = next((h for h in logger.handlers if isinstance(h, RotatingFileHandler)), None)
    if file_handler is None:
        file_handler = RotatingFileHandler(os.path.join(log_dir, "leadauth.log"), maxBytes=1_000_000, backupCount=5, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(threadName)s | %(message)s"))
        logger.addHandler(file_handler)

    has_console = any(type(h) is logging.StreamHandler for h in logger.handlers)
    if console and not has_console:
        sh = logging.StreamHandler()
        sh.setLevel(logging.WARNING)
        sh.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        logger.addHandler(sh)

    # requests/urllib3 debug output would echo URLs and headers
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return logger
