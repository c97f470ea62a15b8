"""Keep topics, header schema and events in step with the spreadsheet.

The :class:`SyncEngine` reacts to three kinds of change:

* the session becoming signed in (load the profile and the topic list),
* the selected topic changing (load its header row and its events),
* user edits (create a topic, append an event, delete an event).

Independent remote reads are launched together and joined with
``asyncio.gather(..., return_exceptions=True)`` so that one failure never
cancels or rolls back the other.  Every selection change bumps a generation
counter and every reset bumps a store epoch; responses that come back for an
older generation or epoch are dropped instead of overwriting newer state.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import tzinfo
from typing import Any, Callable, Iterable, List, Optional, Sequence, Union

from sheetlog.config_store import ConfigStore
from sheetlog.errors import (
    NOT_FOUND_MESSAGE,
    ErrorCategory,
    MessageBoard,
    RemoteStoreError,
    SheetlogError,
    ValidationError,
)
from sheetlog.models import (
    DEFAULT_EVENT_COLUMN,
    FIRST_DATA_ROW,
    TIMESTAMP_HEADER,
    Event,
    PendingEventDraft,
    Profile,
    Topic,
    build_events,
)
from sheetlog.session import Session, SessionManager, SessionStatus
from sheetlog.sheets_client import LEGACY_EVENT_COLUMNS, SheetsStoreClient
from sheetlog.timestamps import resolve_timestamp

logger = logging.getLogger(__name__)

StoreClientFactory = Callable[[Any], SheetsStoreClient]
ConfirmCallback = Callable[[Event], bool]


@dataclass
class LoadingFlags:
    initial: bool = False
    topics: bool = False
    headers: bool = False
    events: bool = False
    mutating: bool = False

    @property
    def busy(self) -> bool:
        return any(dataclasses.astuple(self))

    def clear(self) -> None:
        self.initial = self.topics = self.headers = self.events = self.mutating = False


def parse_columns(columns: Union[str, Sequence[str], None]) -> List[str]:
    """Split user supplied column names; blank input means one description column."""

    if columns is None:
        raw: Iterable[str] = []
    elif isinstance(columns, str):
        raw = columns.split(",")
    else:
        raw = columns
    parsed = [column.strip() for column in raw if column and column.strip()]
    return parsed or [DEFAULT_EVENT_COLUMN]


def _raise_unexpected(results: Sequence[Any]) -> None:
    for result in results:
        if isinstance(result, BaseException) and not isinstance(result, SheetlogError):
            raise result


class SyncEngine:
    """Orchestrate the session and the Sheets client for one spreadsheet."""

    def __init__(
        self,
        session: SessionManager,
        config_store: ConfigStore,
        client_factory: StoreClientFactory,
        *,
        messages: Optional[MessageBoard] = None,
        fixed_store_id: Optional[str] = None,
        full_width_event_reads: bool = True,
        compensate_failed_topic_creation: bool = True,
        timezone: Optional[tzinfo] = None,
    ) -> None:
        self.session = session
        self.messages = messages or session.messages
        self._config_store = config_store
        self._client_factory = client_factory
        self._fixed_store_id = fixed_store_id or None
        self._store_id: Optional[str] = self._fixed_store_id or config_store.get()
        self.full_width_event_reads = full_width_event_reads
        self.compensate_failed_topic_creation = compensate_failed_topic_creation
        self._timezone = timezone

        self.topics: List[Topic] = []
        self.selected_topic = ""
        self.header_schema: List[str] = []
        self.events: List[Event] = []
        self.draft = PendingEventDraft()
        self.loading = LoadingFlags()

        self._client: Optional[SheetsStoreClient] = None
        self._raw_rows: Optional[List[List[str]]] = None
        self._generation = 0
        self._epoch = 0
        session.subscribe(self._on_session_change)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def store_id(self) -> Optional[str]:
        return self._store_id

    @property
    def profile(self) -> Optional[Profile]:
        return self.session.session.profile

    @property
    def selected_topic_entry(self) -> Optional[Topic]:
        for topic in self.topics:
            if topic.title == self.selected_topic:
                return topic
        return None

    def _ready(self) -> bool:
        return self.session.is_signed_in and bool(self._store_id)

    def _store_client(self) -> SheetsStoreClient:
        if self._client is None:
            self._client = self._client_factory(self.session.credentials)
        return self._client

    def _reject(self, message: str) -> None:
        self.messages.report(message)
        raise ValidationError(message)

    # ------------------------------------------------------------------
    # Session reactions
    # ------------------------------------------------------------------
    async def _on_session_change(self, session: Session) -> None:
        if session.status is SessionStatus.SIGNED_IN:
            await self.load_initial()
        elif session.status in (SessionStatus.SIGNED_OUT, SessionStatus.CONFIG_INVALID):
            self.reset()

    def reset(self) -> None:
        """Drop every piece of derived state (topics, selection, schema, events, draft)."""

        self._clear_store_state()
        self._client = None
        self.loading.clear()

    def _clear_store_state(self) -> None:
        self._epoch += 1
        self._generation += 1
        self.topics = []
        self.selected_topic = ""
        self.header_schema = []
        self.events = []
        self._raw_rows = None
        self.draft.clear()
        self.loading.headers = self.loading.events = False

    async def load_initial(self) -> None:
        """Fetch the profile and the topic list side by side after sign-in."""

        if not self._ready():
            logger.info("Initial load skipped (signed_in=%s, store configured=%s)", self.session.is_signed_in, bool(self._store_id))
            return
        self.loading.initial = True
        try:
            results = await asyncio.gather(
                self.session.fetch_profile(),
                self._fetch_topics(),
                return_exceptions=True,
            )
        finally:
            self.loading.initial = False
        _raise_unexpected(results)

    async def refresh_topics(self) -> bool:
        if not self._ready():
            logger.info("Topic refresh skipped: not signed in or no spreadsheet configured")
            return False
        self.loading.topics = True
        try:
            return await self._fetch_topics()
        finally:
            self.loading.topics = False

    async def _fetch_topics(self) -> bool:
        epoch = self._epoch
        store_id = self._store_id
        self.messages.clear()
        try:
            topics = await self._store_client().list_topics(store_id)
        except RemoteStoreError as exc:
            if epoch == self._epoch:
                await self._handle_remote_error(exc, "fetching topics")
            return False
        if epoch != self._epoch:
            logger.info("Discarding topic list for a superseded spreadsheet/session")
            return False
        self.topics = topics
        logger.info("Loaded %d topics", len(topics))
        if not topics:
            await self.select_topic("")
        elif self.selected_topic_entry is None:
            await self.select_topic(topics[0].title)
        return True

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    async def select_topic(self, title: str, *, force: bool = False) -> None:
        """Make ``title`` the current topic and load its header and events.

        An empty title clears the header schema and the events locally.
        """

        title = title or ""
        if title and not any(topic.title == title for topic in self.topics):
            self._reject(f'Topic "{title}" does not exist.')
        if title == self.selected_topic and not force:
            return
        self.selected_topic = title
        self._generation += 1
        generation = self._generation
        self.draft.clear()
        self._raw_rows = None
        self.header_schema = []
        self.events = []
        if not title or not self._ready():
            self.loading.headers = self.loading.events = False
            return
        results = await asyncio.gather(
            self._fetch_header(title, generation),
            self._fetch_events(title, generation),
            return_exceptions=True,
        )
        _raise_unexpected(results)

    def _current(self, generation: int) -> bool:
        return generation == self._generation

    def _read_width(self) -> int:
        topic = self.selected_topic_entry
        if self.full_width_event_reads and topic is not None and topic.column_count:
            return topic.column_count
        return LEGACY_EVENT_COLUMNS

    async def _fetch_header(self, title: str, generation: int) -> None:
        self.loading.headers = True
        try:
            headers = await self._store_client().get_header_row(self._store_id, title)
        except RemoteStoreError as exc:
            if self._current(generation):
                self.header_schema = []
                self._apply_rows(title)
                await self._handle_remote_error(exc, "fetching headers")
            return
        finally:
            if self._current(generation):
                self.loading.headers = False
        if not self._current(generation):
            logger.info("Discarding stale header row for %r", title)
            return
        self.header_schema = headers
        self._apply_rows(title)

    async def _fetch_events(self, title: str, generation: int) -> None:
        self.loading.events = True
        try:
            rows = await self._store_client().get_event_rows(
                self._store_id, title, columns=self._read_width()
            )
        except RemoteStoreError as exc:
            if self._current(generation):
                self._raw_rows = None
                self.events = []
                await self._handle_remote_error(exc, "fetching events")
            return
        finally:
            if self._current(generation):
                self.loading.events = False
        if not self._current(generation):
            logger.info("Discarding stale events for %r", title)
            return
        self._raw_rows = rows
        self._apply_rows(title)

    def _apply_rows(self, title: str) -> None:
        if self._raw_rows is None:
            return
        headers = self.header_schema
        if not self.full_width_event_reads:
            headers = headers[:LEGACY_EVENT_COLUMNS]
        self.events = build_events(title, self._raw_rows, headers)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def create_topic(self, name: str, columns: Union[str, Sequence[str], None] = None) -> bool:
        """Create a worksheet whose header is ``Timestamp`` plus ``columns``."""

        title = (name or "").strip()
        if not title:
            self._reject("Topic name cannot be empty.")
        if not self._ready():
            self._reject("Cannot add topic: not signed in or no spreadsheet configured.")
        if any(topic.title == title for topic in self.topics):
            self._reject(f'Topic "{title}" already exists.')
        header_row = [TIMESTAMP_HEADER, *parse_columns(columns)]
        if len(set(header_row)) != len(header_row):
            self._reject("Column names must be unique and must not repeat Timestamp.")

        epoch = self._epoch
        self.messages.clear()
        self.loading.mutating = True
        try:
            sheet_id = await self._store_client().create_topic(
                self._store_id,
                title,
                header_row,
                compensate=self.compensate_failed_topic_creation,
            )
        except RemoteStoreError as exc:
            if epoch == self._epoch:
                await self._handle_remote_error(exc, "adding topic")
            return False
        finally:
            self.loading.mutating = False
        if epoch != self._epoch:
            return False
        self.topics.append(Topic(title=title, sheet_id=sheet_id, column_count=len(header_row)))
        await self.select_topic(title)
        return True

    def update_draft_field(self, header: str, value: str) -> None:
        self.draft.fields[header] = value

    def set_draft_timestamp(self, value: str) -> None:
        self.draft.custom_timestamp = value

    def cancel_draft(self) -> None:
        self.draft.clear()

    async def append_event(self) -> bool:
        """Submit the pending draft as a new row of the selected topic.

        The event list is re-read afterwards; row numbers come from the store.
        """

        schema = list(self.header_schema)
        if not schema:
            self._reject("Topic headers not loaded. Cannot determine event structure.")
        if not self.selected_topic or not self._ready():
            self._reject("Cannot add event: Not signed in, no topic selected, or no spreadsheet configured.")
        values = [self.draft.fields.get(header, "") or "" for header in schema[1:]]
        if len(schema) > 1 and not any(value.strip() for value in values):
            self._reject("Please fill in at least one event detail.")
        try:
            timestamp = resolve_timestamp(self.draft.custom_timestamp, tz=self._timezone)
        except ValueError as exc:
            self._reject(str(exc))

        title = self.selected_topic
        generation = self._generation
        self.messages.clear()
        self.loading.mutating = True
        try:
            await self._store_client().append_event_row(self._store_id, title, [timestamp, *values])
        except RemoteStoreError as exc:
            if self._current(generation):
                await self._handle_remote_error(exc, "adding event")
            return False
        finally:
            self.loading.mutating = False
        if not self._current(generation):
            return True
        self.draft.clear()
        await self._fetch_events(title, generation)
        return True

    async def delete_event(self, event_id: str, confirm: ConfirmCallback) -> bool:
        """Delete the row behind ``event_id`` once ``confirm(event)`` agrees."""

        event = next((item for item in self.events if item.id == event_id), None)
        topic = self.selected_topic_entry
        if event is None or topic is None or not self._ready():
            self._reject("Cannot delete event: missing required data or not signed in/ready.")
        if not confirm(event):
            logger.info("Deletion of %s cancelled by the user", event_id)
            return False

        generation = self._generation
        self.messages.clear()
        self.loading.mutating = True
        try:
            await self._store_client().delete_event_row(self._store_id, topic.sheet_id, event.row_number)
        except RemoteStoreError as exc:
            if self._current(generation):
                await self._handle_remote_error(exc, "deleting event")
            return False
        finally:
            self.loading.mutating = False
        if self._current(generation):
            self.events = [
                dataclasses.replace(
                    item,
                    id=f"{topic.title}-{item.row_number - 1 - FIRST_DATA_ROW}",
                    row_number=item.row_number - 1,
                )
                if item.row_number > event.row_number
                else item
                for item in self.events
                if item.id != event.id
            ]
        return True

    # ------------------------------------------------------------------
    # Spreadsheet identifier
    # ------------------------------------------------------------------
    async def set_store_id(self, value: str) -> None:
        """Persist a new spreadsheet identifier and reload its topics."""

        if self._fixed_store_id:
            self._reject("The spreadsheet is fixed by configuration and cannot be changed.")
        store_id = (value or "").strip()
        if not store_id:
            self._reject("Please enter a valid Spreadsheet ID.")
        self._config_store.set(store_id)
        self._store_id = store_id
        self._clear_store_state()
        self.messages.clear()
        if self.session.is_signed_in:
            await self._fetch_topics()

    def begin_store_change(self) -> None:
        """Forget everything derived from the current spreadsheet."""

        self._clear_store_state()
        self.messages.clear()

    # ------------------------------------------------------------------
    # Error handling
    # ------------------------------------------------------------------
    async def _handle_remote_error(self, exc: RemoteStoreError, action: str) -> None:
        category = exc.category
        if category is ErrorCategory.AUTH_EXPIRED:
            logger.warning("Auth error %s (HTTP %s), signing out", action, exc.status)
            await self.session.sign_out()
            self.messages.report(f"Auth error {action}.")
        elif category is ErrorCategory.STORE_NOT_FOUND:
            logger.warning("Spreadsheet %s not found", self._store_id)
            self.messages.report(NOT_FOUND_MESSAGE)
        elif category is ErrorCategory.EMPTY_RANGE_BENIGN:
            logger.info("Worksheet %r is empty or new (%s)", self.selected_topic, exc.message)
        else:
            logger.warning("Error %s: %s", action, exc)
            self.messages.report(f"Error {action}: {exc.message}")


__all__ = ["LoadingFlags", "SyncEngine", "parse_columns"]
