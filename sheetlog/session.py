"""OAuth session state machine.

The :class:`SessionManager` owns the single :class:`Session` of a running
client.  Token acquisition is single-flight: while a silent or interactive
request is outstanding every further request is dropped.  Listeners
registered with :meth:`SessionManager.subscribe` are told about every status
transition; the synchronisation engine uses this to load data after sign-in
and to clear its state after sign-out.
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Mapping, Optional, Sequence, Union

from googleapiclient.discovery import build

from sheetlog.errors import (
    ConfigInvalidError,
    ErrorCategory,
    MessageBoard,
    RemoteOperation,
    RemoteStoreError,
    SessionError,
)
from sheetlog.models import Profile
from sheetlog.sheets_client import execute
from sheetlog.token_client import (
    DEFAULT_SCOPES,
    PROMPT_CONSENT,
    PROMPT_NONE,
    TokenClient,
    TokenResponse,
    TokenRevocationError,
    TokenTransportError,
)

logger = logging.getLogger(__name__)

CONFIG_ERROR_MESSAGE = (
    "Configuration Error: Ensure SHEETLOG_CLIENT_ID (or client_id in the settings file) is set."
)

# Protocol-level token errors that a silent attempt is expected to hit.
SILENT_TOKEN_ERRORS = frozenset({"interaction_required", "access_denied"})
# Flow failures reported out-of-band that are quiet for silent attempts.
SILENT_TRANSPORT_ERRORS = frozenset(
    {
        "popup_closed",
        "immediate_failed",
        "user_cancel",
        "opt_out_or_no_session",
        "suppressed_by_user",
        "popup_failed_to_open",
    }
)


class SessionStatus(Enum):
    SIGNED_OUT = "signed_out"
    AWAITING_SILENT_TOKEN = "awaiting_silent_token"
    AWAITING_INTERACTIVE_TOKEN = "awaiting_interactive_token"
    SIGNED_IN = "signed_in"
    CONFIG_INVALID = "config_invalid"


@dataclass
class Session:
    status: SessionStatus = SessionStatus.SIGNED_OUT
    access_token: Optional[str] = None
    profile: Optional[Profile] = None


SessionListener = Callable[[Session], Union[None, Awaitable[None]]]
TokenClientFactory = Callable[[str, Sequence[str]], TokenClient]


def build_people_service(credentials, *, api_key: Optional[str] = None):
    """Construct a People v1 service for ``credentials``."""

    return build(
        "people",
        "v1",
        credentials=credentials,
        developerKey=api_key or None,
        cache_discovery=False,
    )


def _primary(entries: Any, key: str, default: str) -> str:
    if not isinstance(entries, list) or not entries:
        return default
    for entry in entries:
        if isinstance(entry, Mapping) and (entry.get("metadata") or {}).get("primary"):
            value = entry.get(key)
            if value:
                return str(value)
    first = entries[0]
    if isinstance(first, Mapping) and first.get(key):
        return str(first[key])
    return default


def profile_from_person(person: Mapping[str, Any]) -> Profile:
    """Extract the primary display name and e-mail from a People API person."""

    return Profile(
        name=_primary(person.get("names"), "displayName", "User"),
        email=_primary(person.get("emailAddresses"), "value", "No email"),
    )


class SessionManager:
    """Drive silent/interactive sign-in, revocation and profile retrieval."""

    def __init__(
        self,
        token_client_factory: TokenClientFactory,
        *,
        messages: Optional[MessageBoard] = None,
        people_service_factory: Callable[..., Any] = build_people_service,
        api_key: Optional[str] = None,
    ) -> None:
        self._token_client_factory = token_client_factory
        self._people_service_factory = people_service_factory
        self._api_key = api_key
        self.messages = messages or MessageBoard()
        self._session = Session()
        self._token_client: Optional[TokenClient] = None
        self._credentials: Any = None
        self._in_flight = False
        self._attempt_id = 0
        self._listeners: List[SessionListener] = []

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------
    @property
    def session(self) -> Session:
        return self._session

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    @property
    def is_signed_in(self) -> bool:
        return self._session.status is SessionStatus.SIGNED_IN

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def credentials(self) -> Any:
        return self._credentials

    def subscribe(self, listener: SessionListener) -> None:
        self._listeners.append(listener)

    async def _set_status(self, status: SessionStatus) -> None:
        previous = self._session.status
        self._session.status = status
        logger.info("Session status %s -> %s", previous.value, status.value)
        for listener in list(self._listeners):
            result = listener(self._session)
            if inspect.isawaitable(result):
                await result

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    async def initialize(self, client_id: Optional[str], scopes: Sequence[str] = DEFAULT_SCOPES) -> None:
        """Prepare token acquisition for ``client_id``.

        Raises :class:`ConfigInvalidError` (and parks the session in
        ``CONFIG_INVALID``) when no client identifier is configured.
        """

        if not client_id or not client_id.strip():
            self._token_client = None
            self.messages.report(CONFIG_ERROR_MESSAGE)
            await self._set_status(SessionStatus.CONFIG_INVALID)
            raise ConfigInvalidError(CONFIG_ERROR_MESSAGE)
        self._token_client = self._token_client_factory(client_id.strip(), list(scopes))
        await self._set_status(SessionStatus.SIGNED_OUT)

    async def attempt_silent_sign_in(self) -> None:
        """Try to obtain a token without user interaction.

        Only valid from ``SIGNED_OUT``; ignored while another attempt runs.
        """

        if not self._can_start():
            logger.debug("Silent sign-in skipped (status=%s, in_flight=%s)", self.status.value, self._in_flight)
            return
        await self._request_token(silent=True)

    async def request_interactive_sign_in(self) -> None:
        """Ask the user for consent and obtain a token."""

        if self._token_client is None:
            if self.status is not SessionStatus.CONFIG_INVALID:
                self.messages.report("Google Sign-In is not ready yet.")
            return
        if not self._can_start():
            logger.debug("Interactive sign-in skipped (status=%s, in_flight=%s)", self.status.value, self._in_flight)
            return
        self.messages.clear()
        await self._request_token(silent=False)

    def _can_start(self) -> bool:
        return (
            self._token_client is not None
            and not self._in_flight
            and self.status is SessionStatus.SIGNED_OUT
        )

    async def _request_token(self, *, silent: bool) -> None:
        assert self._token_client is not None
        self._in_flight = True
        self._attempt_id += 1
        attempt = self._attempt_id
        await self._set_status(
            SessionStatus.AWAITING_SILENT_TOKEN if silent else SessionStatus.AWAITING_INTERACTIVE_TOKEN
        )
        prompt = PROMPT_NONE if silent else PROMPT_CONSENT
        try:
            response = await self._token_client.request_access_token(prompt)
        except TokenTransportError as exc:
            if attempt != self._attempt_id:
                return
            self._in_flight = False
            await self._handle_failure(
                silent=silent,
                quiet=silent and exc.type in SILENT_TRANSPORT_ERRORS,
                reason=exc.type,
            )
            return
        except Exception as exc:
            logger.error("Token request failed unexpectedly", exc_info=True)
            if attempt != self._attempt_id:
                return
            self._in_flight = False
            await self._handle_failure(silent=silent, quiet=False, reason=str(exc) or exc.__class__.__name__)
            return
        if attempt != self._attempt_id:
            logger.info("Dropping token response for superseded attempt %s", attempt)
            return
        self._in_flight = False
        await self._handle_response(response, silent=silent)

    async def _handle_response(self, response: TokenResponse, *, silent: bool) -> None:
        if response.error:
            await self._handle_failure(
                silent=silent,
                quiet=silent and response.error in SILENT_TOKEN_ERRORS,
                reason=response.error,
            )
            return
        if not response.ok:
            logger.error("Token response missing access token")
            await self._handle_failure(silent=silent, quiet=False, reason=None)
            return
        self._session.access_token = response.access_token
        self._credentials = response.credentials
        logger.info("Access token obtained (%s)", "silent" if silent else "interactive")
        await self._set_status(SessionStatus.SIGNED_IN)

    async def _handle_failure(self, *, silent: bool, quiet: bool, reason: Optional[str]) -> None:
        if quiet:
            logger.info("Silent sign-in requires user interaction (%s)", reason)
        elif reason is None:
            self.messages.report("Failed to obtain access token from Google.")
        else:
            logger.warning("%s sign-in failed: %s", "Silent" if silent else "Interactive", reason)
            self.messages.report(f"Google Sign-In Error: {reason}")
        self._session.access_token = None
        self._credentials = None
        await self._set_status(SessionStatus.SIGNED_OUT)

    async def sign_out(self) -> None:
        """Revoke the current token (best effort) and reset the session.

        Always ends in ``SIGNED_OUT``; revocation failures are only logged.
        """

        token = self._session.access_token
        self._attempt_id += 1
        self._in_flight = False
        if token and self._token_client is not None:
            try:
                await self._token_client.revoke(token)
            except TokenRevocationError as exc:
                logger.warning("Access token revocation failed: %s", exc)
            else:
                logger.info("Access token revoked")
        else:
            logger.info("Sign-out without a token; resetting state")
        self._session.access_token = None
        self._session.profile = None
        self._credentials = None
        self.messages.clear()
        await self._set_status(SessionStatus.SIGNED_OUT)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------
    async def fetch_profile(self) -> Profile:
        """Fetch the signed-in user's name and e-mail.

        On an authorisation failure the session is signed out before the
        error is re-raised.
        """

        if not self.is_signed_in:
            raise SessionError("Profile is only available while signed in")
        try:
            service = self._people_service_factory(self._credentials, api_key=self._api_key)
            request = service.people().get(resourceName="people/me", personFields="names,emailAddresses")
            person = await execute(request, RemoteOperation.FETCH_PROFILE)
        except RemoteStoreError as exc:
            if exc.category is ErrorCategory.AUTH_EXPIRED:
                logger.warning("Auth error fetching profile, signing out (%s)", exc.status)
                await self.sign_out()
                self.messages.report(f"Auth error fetching profile ({exc.status}).")
            else:
                self.messages.report(f"Could not fetch profile: {exc.message}")
            raise
        profile = profile_from_person(person)
        self._session.profile = profile
        return profile


__all__ = [
    "CONFIG_ERROR_MESSAGE",
    "SILENT_TOKEN_ERRORS",
    "SILENT_TRANSPORT_ERRORS",
    "Session",
    "SessionManager",
    "SessionStatus",
    "build_people_service",
    "profile_from_person",
]
