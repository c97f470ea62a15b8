"""Centralised helpers for managing sheetlog application directories."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

_APP_ENV_VARS: Iterable[str] = ("SHEETLOG_HOME", "LOCALAPPDATA", "APPDATA")


def _detect_base_directory() -> Path:
    for env_var in _APP_ENV_VARS:
        value = os.environ.get(env_var)
        if value:
            base = Path(value).expanduser().resolve()
            return base if env_var == "SHEETLOG_HOME" else base / "sheetlog"
    return Path.home().resolve() / ".sheetlog"


APP_DIR: Path = _detect_base_directory()
TOKENS_DIR: Path = APP_DIR / "tokens"
LOG_DIR: Path = APP_DIR / "logs"


def ensure_directory(path: Path) -> Path:
    """Ensure that ``path`` exists, returning the :class:`~pathlib.Path`."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def logs_path(filename: str) -> Path:
    ensure_directory(LOG_DIR)
    return LOG_DIR / filename


__all__ = [
    "APP_DIR",
    "TOKENS_DIR",
    "LOG_DIR",
    "ensure_directory",
    "logs_path",
]
