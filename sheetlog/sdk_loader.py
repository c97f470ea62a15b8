"""Dependency checks for the Google client libraries."""
from __future__ import annotations

import importlib
import logging
from typing import List, Protocol, Sequence

from sheetlog.errors import SheetlogError

logger = logging.getLogger(__name__)

GOOGLE_IMPORTS: Sequence[str] = (
    "googleapiclient.discovery",
    "googleapiclient.errors",
    "google.oauth2.credentials",
    "google.auth.transport.requests",
    "google_auth_oauthlib.flow",
    "httplib2",
    "oauthlib.oauth2",
)

DEPENDENCY_ERROR_MESSAGE = "The Google client libraries are missing; please reinstall sheetlog."


class SdkUnavailableError(SheetlogError):
    """Raised when the Google client libraries cannot be imported."""

    def __init__(self, missing: Sequence[str]) -> None:
        details = ", ".join(missing) if missing else "unknown"
        super().__init__(f"{DEPENDENCY_ERROR_MESSAGE} Missing packages: {details}")
        self.missing = tuple(missing)


class ScriptLoader(Protocol):
    def load(self) -> None:
        ...


def _try_import(module_name: str) -> bool:
    try:
        importlib.import_module(module_name)
    except ImportError as exc:
        logger.debug("[Deps] import error for %s: %s", module_name, exc, exc_info=True)
        return False
    return True


def check_imports(module_names: Sequence[str]) -> List[str]:
    """Return the modules from ``module_names`` that cannot be imported."""

    return [name for name in module_names if not _try_import(name)]


class GoogleSdkLoader:
    """Make sure the OAuth and API client libraries are importable."""

    def __init__(self, modules: Sequence[str] = GOOGLE_IMPORTS) -> None:
        self.modules = tuple(modules)
        self._loaded = False

    def load(self) -> None:
        if self._loaded:
            return
        missing = check_imports(self.modules)
        if missing:
            logger.error("[Deps] Google modules missing: %s", ", ".join(missing))
            raise SdkUnavailableError(missing)
        self._loaded = True
        logger.info("[Deps] Google client libraries ready.")


__all__ = [
    "GOOGLE_IMPORTS",
    "GoogleSdkLoader",
    "ScriptLoader",
    "SdkUnavailableError",
    "check_imports",
]
