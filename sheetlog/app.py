"""Wire settings, Google SDK loading, session and sync engine together."""
from __future__ import annotations

import functools
import logging
from pathlib import Path
from typing import Optional

from sheetlog.config_store import ConfigStore, JsonConfigStore
from sheetlog.errors import ConfigInvalidError, MessageBoard
from sheetlog.sdk_loader import GoogleSdkLoader, ScriptLoader
from sheetlog.session import SessionManager, build_people_service
from sheetlog.settings import AppSettings
from sheetlog.sheets_client import SheetsStoreClient, build_sheets_service
from sheetlog.sync_engine import SyncEngine
from sheetlog.token_client import InstalledAppTokenClient

logger = logging.getLogger(__name__)


class EventLogApp:
    """Composition root used by the command line (and any other front end)."""

    def __init__(
        self,
        settings: AppSettings,
        *,
        config_store: Optional[ConfigStore] = None,
        loader: Optional[ScriptLoader] = None,
        session: Optional[SessionManager] = None,
    ) -> None:
        self.settings = settings
        self.loader = loader or GoogleSdkLoader()
        self.config_store = config_store or JsonConfigStore()
        api_key = settings.api_key or None
        self.session = session or SessionManager(
            functools.partial(
                InstalledAppTokenClient,
                client_secret=settings.client_secret,
                client_secrets_path=settings.client_secrets_path or None,
                token_path=Path(settings.token_path),
            ),
            messages=MessageBoard(),
            people_service_factory=build_people_service,
            api_key=api_key,
        )
        self.messages = self.session.messages
        self.engine = SyncEngine(
            self.session,
            self.config_store,
            lambda credentials: SheetsStoreClient(build_sheets_service(credentials, api_key=api_key)),
            messages=self.messages,
            fixed_store_id=settings.fixed_store_id,
            full_width_event_reads=settings.full_width_event_reads,
            compensate_failed_topic_creation=settings.compensate_failed_topic_creation,
        )

    async def start(self) -> bool:
        """Load the SDKs, initialise the session and try a silent sign-in.

        Returns ``True`` when the session ended up signed in.
        """

        self.loader.load()
        try:
            await self.session.initialize(self.settings.client_id, self.settings.scopes)
        except ConfigInvalidError:
            logger.error("OAuth client id missing; sign-in disabled")
            return False
        await self.session.attempt_silent_sign_in()
        return self.session.is_signed_in


__all__ = ["EventLogApp"]
