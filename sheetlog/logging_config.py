"""File logging for the sheetlog command line."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from sheetlog import app_paths

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_LOG_PATH: Optional[Path] = None


def _has_handler_for(root: logging.Logger, target: Path) -> bool:
    return any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(target)
        for handler in root.handlers
    )


def configure_logging(level: int = logging.INFO, log_path: Optional[Path] = None) -> Path:
    """Send records at ``level`` and above to ``sheetlog.log`` (or ``log_path``).

    Calling it again for the same file does not add a second handler.
    """

    global _LOG_PATH

    target = Path(log_path) if log_path else app_paths.logs_path("sheetlog.log")
    target.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    if not _has_handler_for(root, target):
        handler = logging.FileHandler(target, encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)

    _LOG_PATH = target
    return target


def get_log_path() -> Path:
    if _LOG_PATH is None:
        return configure_logging()
    return _LOG_PATH


__all__ = ["LOG_FORMAT", "configure_logging", "get_log_path"]
