"""Application configuration helpers for sheetlog."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from sheetlog import app_paths
from sheetlog.token_client import DEFAULT_SCOPES

logger = logging.getLogger(__name__)


DEFAULT_SETTINGS_PATH = str(app_paths.APP_DIR / "settings.json")
DEFAULT_TOKEN_PATH = str(app_paths.TOKENS_DIR / "token.json")

ENV_OVERRIDES: Mapping[str, str] = {
    "client_id": "SHEETLOG_CLIENT_ID",
    "client_secret": "SHEETLOG_CLIENT_SECRET",
    "api_key": "SHEETLOG_API_KEY",
    "store_id": "SHEETLOG_SPREADSHEET_ID",
}


@dataclass
class AppSettings:
    """Runtime configuration.

    ``store_id`` pins the spreadsheet; when empty the identifier is chosen by
    the user and kept in the config store instead.
    """

    client_id: str = ""
    client_secret: str = ""
    client_secrets_path: str = ""
    api_key: str = ""
    store_id: str = ""
    token_path: str = DEFAULT_TOKEN_PATH
    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    full_width_event_reads: bool = True
    compensate_failed_topic_creation: bool = True

    @property
    def fixed_store_id(self) -> Optional[str]:
        return self.store_id.strip() or None

    def to_json(self) -> Dict[str, object]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "client_secrets_path": self.client_secrets_path,
            "api_key": self.api_key,
            "store_id": self.store_id,
            "token_path": self.token_path,
            "scopes": list(self.scopes),
            "full_width_event_reads": self.full_width_event_reads,
            "compensate_failed_topic_creation": self.compensate_failed_topic_creation,
        }


def _default_payload() -> Dict[str, object]:
    return AppSettings().to_json()


def _ensure_settings(path: str) -> Dict[str, object]:
    defaults = _default_payload()
    if not os.path.exists(path):
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(defaults, handle, indent=2)
        return dict(defaults)

    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("Settings file %s could not be read, using defaults: %s", path, exc)
        return dict(defaults)
    if not isinstance(data, Mapping):
        return dict(defaults)

    merged: Dict[str, object] = dict(defaults)
    for key, value in data.items():
        if key not in defaults:
            continue
        if key == "scopes":
            if isinstance(value, list) and all(isinstance(scope, str) for scope in value):
                merged[key] = [scope for scope in value if scope.strip()]
        elif isinstance(defaults[key], bool):
            if isinstance(value, bool):
                merged[key] = value
        elif isinstance(value, str):
            merged[key] = value.strip()
    return merged


def load_app_settings(path: str = DEFAULT_SETTINGS_PATH, *, environ: Optional[Mapping[str, str]] = None) -> AppSettings:
    data = _ensure_settings(path)
    env = os.environ if environ is None else environ
    for key, variable in ENV_OVERRIDES.items():
        value = env.get(variable)
        if value and value.strip():
            data[key] = value.strip()

    return AppSettings(
        client_id=str(data.get("client_id", "")),
        client_secret=str(data.get("client_secret", "")),
        client_secrets_path=str(data.get("client_secrets_path", "")),
        api_key=str(data.get("api_key", "")),
        store_id=str(data.get("store_id", "")),
        token_path=str(data.get("token_path") or DEFAULT_TOKEN_PATH),
        scopes=list(data.get("scopes") or DEFAULT_SCOPES),  # type: ignore[arg-type]
        full_width_event_reads=bool(data.get("full_width_event_reads", True)),
        compensate_failed_topic_creation=bool(data.get("compensate_failed_topic_creation", True)),
    )


def save_app_settings(settings: AppSettings, path: str = DEFAULT_SETTINGS_PATH) -> None:
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    with open(path, "w", encoding="utf-8") as handle:
        json.dump(settings.to_json(), handle, indent=2)


__all__ = [
    "AppSettings",
    "DEFAULT_SETTINGS_PATH",
    "DEFAULT_TOKEN_PATH",
    "ENV_OVERRIDES",
    "load_app_settings",
    "save_app_settings",
]
