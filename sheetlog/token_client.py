"""OAuth token acquisition for the Google APIs used by sheetlog.

The session layer only talks to the :class:`TokenClient` protocol: ask for a
token with ``prompt="none"`` (silent) or ``prompt="consent"`` (interactive),
and revoke a token.  A request either resolves to a :class:`TokenResponse`,
which carries a token or a protocol-level error code, or raises
:class:`TokenTransportError` when the flow itself could not run (browser not
available, flow aborted).  Both channels are classified by the session.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import webbrowser
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, Sequence
from urllib.parse import urlencode

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from oauthlib.oauth2.rfc6749.errors import OAuth2Error

from sheetlog.errors import SheetlogError

logger = logging.getLogger(__name__)

PROMPT_NONE = "none"
PROMPT_CONSENT = "consent"

DEFAULT_SCOPES: Sequence[str] = (
    "openid",
    "https://www.googleapis.com/auth/userinfo.email",
    "https://www.googleapis.com/auth/userinfo.profile",
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive.file",
)

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"
REVOKE_URI = "https://oauth2.googleapis.com/revoke"


@dataclass(frozen=True)
class TokenResponse:
    """Outcome of a token request.

    ``access_token`` is set on success.  ``error`` carries the OAuth error
    code (``interaction_required``, ``access_denied`` ...) on failure.
    """

    access_token: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    credentials: Any = None

    @property
    def ok(self) -> bool:
        return not self.error and bool(self.access_token)


class TokenTransportError(SheetlogError):
    """Raised when the sign-in flow could not run at all."""

    def __init__(self, type: str, message: str = "") -> None:
        super().__init__(message or type)
        self.type = type


class TokenRevocationError(SheetlogError):
    """Raised when the token endpoint refuses or cannot process a revocation."""


class TokenClient(Protocol):
    async def request_access_token(self, prompt: str) -> TokenResponse:
        ...

    async def revoke(self, token: str) -> None:
        ...


def _client_config(client_id: str, client_secret: str) -> Dict[str, Dict[str, Any]]:
    return {
        "installed": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
            "redirect_uris": ["http://localhost"],
        }
    }


class InstalledAppTokenClient:
    """Token client backed by ``google-auth`` and the installed-app OAuth flow."""

    def __init__(
        self,
        client_id: str,
        scopes: Sequence[str] = DEFAULT_SCOPES,
        *,
        client_secret: str = "",
        client_secrets_path: Optional[str] = None,
        token_path: Optional[Path] = None,
        open_browser: bool = True,
    ) -> None:
        self.client_id = client_id
        self.scopes = list(scopes)
        self._client_secret = client_secret
        self._client_secrets_path = client_secrets_path
        self._token_path = Path(token_path) if token_path else None
        self._open_browser = open_browser

    async def request_access_token(self, prompt: str) -> TokenResponse:
        return await asyncio.to_thread(self._acquire, prompt)

    async def revoke(self, token: str) -> None:
        await asyncio.to_thread(self._revoke, token)

    # ------------------------------------------------------------------
    # Blocking implementations
    # ------------------------------------------------------------------
    def _acquire(self, prompt: str) -> TokenResponse:
        if prompt == PROMPT_NONE:
            return self._acquire_silently()
        return self._acquire_interactively(prompt)

    def _load_cached(self) -> Optional[Credentials]:
        if not self._token_path or not self._token_path.exists():
            return None
        try:
            return Credentials.from_authorized_user_file(str(self._token_path), self.scopes)
        except (OSError, ValueError) as exc:
            logger.warning("Cached token %s could not be read: %s", self._token_path, exc)
            return None

    def _store(self, credentials: Credentials) -> None:
        if not self._token_path:
            return
        os.makedirs(self._token_path.parent, exist_ok=True)
        with open(self._token_path, "w", encoding="utf-8") as handle:
            handle.write(credentials.to_json())

    def _acquire_silently(self) -> TokenResponse:
        credentials = self._load_cached()
        if credentials is None:
            return TokenResponse(error="interaction_required")
        if not credentials.valid:
            if not (credentials.expired and credentials.refresh_token):
                return TokenResponse(error="interaction_required")
            try:
                credentials.refresh(Request())
            except RefreshError as exc:
                logger.info("Cached token could not be refreshed: %s", exc)
                return TokenResponse(error="interaction_required", error_description=str(exc))
            except TransportError as exc:
                raise TokenTransportError("immediate_failed", str(exc)) from exc
            self._store(credentials)
        return TokenResponse(access_token=credentials.token, credentials=credentials)

    def _build_flow(self) -> InstalledAppFlow:
        if self._client_secrets_path:
            return InstalledAppFlow.from_client_secrets_file(self._client_secrets_path, self.scopes)
        return InstalledAppFlow.from_client_config(
            _client_config(self.client_id, self._client_secret), self.scopes
        )

    def _acquire_interactively(self, prompt: str) -> TokenResponse:
        flow = self._build_flow()
        try:
            credentials = flow.run_local_server(
                port=0,
                open_browser=self._open_browser,
                prompt=prompt,
            )
        except webbrowser.Error as exc:
            raise TokenTransportError("popup_failed_to_open", str(exc)) from exc
        except OAuth2Error as exc:
            return TokenResponse(error=exc.error or "unknown_error", error_description=exc.description)
        self._store(credentials)
        return TokenResponse(access_token=credentials.token, credentials=credentials)

    def _revoke(self, token: str) -> None:
        request = Request()
        try:
            response = request(
                url=REVOKE_URI,
                method="POST",
                body=urlencode({"token": token}),
                headers={"content-type": "application/x-www-form-urlencoded"},
            )
        except TransportError as exc:
            raise TokenRevocationError(f"Token revocation failed: {exc}") from exc
        finally:
            self._forget_cached()
        if response.status != 200:
            detail = response.data.decode("utf-8", "replace") if response.data else ""
            try:
                detail = json.loads(detail).get("error_description", detail)
            except (ValueError, AttributeError):
                pass
            raise TokenRevocationError(f"Token revocation returned HTTP {response.status}: {detail}")

    def _forget_cached(self) -> None:
        if self._token_path and self._token_path.exists():
            try:
                self._token_path.unlink()
            except OSError as exc:
                logger.warning("Cached token %s could not be removed: %s", self._token_path, exc)


__all__ = [
    "DEFAULT_SCOPES",
    "PROMPT_CONSENT",
    "PROMPT_NONE",
    "REVOKE_URI",
    "InstalledAppTokenClient",
    "TokenClient",
    "TokenResponse",
    "TokenRevocationError",
    "TokenTransportError",
]
