"""Error taxonomy shared by the session and synchronisation layers.

Remote failures are normalised into :class:`RemoteStoreError` at the client
boundary and then mapped onto a small set of categories by :func:`classify`.
The categories decide what happens next:

``AUTH_EXPIRED``
    The session is forcibly signed out and a terse message is shown.
``STORE_NOT_FOUND``
    The spreadsheet identifier is most likely wrong; the session is untouched.
``EMPTY_RANGE_BENIGN``
    A read against a brand new worksheet; treated as "no data yet".
``OTHER``
    Surfaced verbatim.

``CONFIG_INVALID`` never comes out of :func:`classify`; it is raised during
initialisation when the OAuth client identifier is missing.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)

BENIGN_RANGE_MARKERS = ("Unable to parse range", "exceeds grid limits")
NOT_FOUND_MESSAGE = "Spreadsheet not found or permission denied. Check ID."


class ErrorCategory(Enum):
    CONFIG_INVALID = "config_invalid"
    AUTH_EXPIRED = "auth_expired"
    STORE_NOT_FOUND = "store_not_found"
    EMPTY_RANGE_BENIGN = "empty_range_benign"
    OTHER = "other"


class RemoteOperation(Enum):
    """Remote calls the classifier can distinguish between."""

    LIST_TOPICS = "list_topics"
    READ_HEADER = "read_header"
    READ_EVENTS = "read_events"
    APPEND_EVENT = "append_event"
    DELETE_EVENT = "delete_event"
    CREATE_TOPIC = "create_topic"
    FETCH_PROFILE = "fetch_profile"

    @property
    def is_read(self) -> bool:
        return self in (RemoteOperation.READ_HEADER, RemoteOperation.READ_EVENTS)


class SheetlogError(Exception):
    """Base error for the sheetlog package."""


class ConfigInvalidError(SheetlogError):
    """Raised when the OAuth client configuration is unusable."""


class ValidationError(SheetlogError):
    """Raised when user input is rejected before any network call."""


class SessionError(SheetlogError):
    """Raised when an operation is not valid in the current session state."""


class RemoteStoreError(SheetlogError):
    """Raised when a call against a Google API fails."""

    def __init__(
        self,
        operation: RemoteOperation,
        message: str,
        *,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.status = status
        self.message = message

    @property
    def category(self) -> ErrorCategory:
        return classify_error(self)

    def __str__(self) -> str:
        if self.status is None:
            return self.message
        return f"{self.message} (HTTP {self.status})"


class TopicCreationError(RemoteStoreError):
    """Raised when a worksheet was created but its header row could not be written.

    ``remnant_sheet_id`` identifies the headerless worksheet left in the store.
    """

    def __init__(
        self,
        message: str,
        *,
        remnant_sheet_id: int,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(RemoteOperation.CREATE_TOPIC, message, status=status)
        self.remnant_sheet_id = remnant_sheet_id


def classify(operation: RemoteOperation, status: Optional[int], message: str) -> ErrorCategory:
    """Map a failed remote call onto an :class:`ErrorCategory`.

    The checks run in priority order; the first match wins.
    """

    if status in (401, 403):
        return ErrorCategory.AUTH_EXPIRED
    if status == 404 and operation is RemoteOperation.LIST_TOPICS:
        return ErrorCategory.STORE_NOT_FOUND
    if (
        status == 400
        and operation.is_read
        and any(marker in (message or "") for marker in BENIGN_RANGE_MARKERS)
    ):
        return ErrorCategory.EMPTY_RANGE_BENIGN
    return ErrorCategory.OTHER


def classify_error(error: RemoteStoreError) -> ErrorCategory:
    return classify(error.operation, error.status, error.message)


class MessageBoard:
    """Holds the single dismissible message shown to the user.

    A new report overwrites the previous one; :meth:`clear` dismisses it.
    """

    def __init__(self) -> None:
        self._message: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return self._message

    def report(self, message: str) -> None:
        logger.info("User message: %s", message)
        self._message = message

    def clear(self) -> None:
        self._message = None


__all__ = [
    "BENIGN_RANGE_MARKERS",
    "NOT_FOUND_MESSAGE",
    "ConfigInvalidError",
    "ErrorCategory",
    "MessageBoard",
    "RemoteOperation",
    "RemoteStoreError",
    "SessionError",
    "SheetlogError",
    "TopicCreationError",
    "ValidationError",
    "classify",
    "classify_error",
]
