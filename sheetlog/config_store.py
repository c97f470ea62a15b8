"""Persistence of the spreadsheet identifier the user works against."""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from sheetlog import app_paths

logger = logging.getLogger(__name__)

STORE_ID_KEY = "spreadsheet_id"
DEFAULT_STORE_PATH = app_paths.APP_DIR / "store.json"


class ConfigStore(Protocol):
    def get(self) -> Optional[str]:
        ...

    def set(self, value: str) -> None:
        ...


class JsonConfigStore:
    """Keep the spreadsheet identifier in a small JSON document."""

    def __init__(self, path: Path = DEFAULT_STORE_PATH) -> None:
        self.path = Path(path)

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Store file %s could not be read: %s", self.path, exc)
            return {}
        return dict(payload) if isinstance(payload, Mapping) else {}

    def get(self) -> Optional[str]:
        value = self._load().get(STORE_ID_KEY)
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def set(self, value: str) -> None:
        payload = self._load()
        payload[STORE_ID_KEY] = value
        directory = self.path.parent
        if directory:
            os.makedirs(directory, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
        logger.info("Spreadsheet identifier saved to %s", self.path)


__all__ = ["ConfigStore", "DEFAULT_STORE_PATH", "JsonConfigStore", "STORE_ID_KEY"]
