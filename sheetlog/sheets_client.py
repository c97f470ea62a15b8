"""Google Sheets client helpers with robust A1 range handling.

This module centralises every direct interaction with the Google Sheets API
used by sheetlog.  Each worksheet of the configured spreadsheet is a *topic*;
row 1 of a worksheet holds its header and every following row is an event.
The client is deliberately unaware of the session: callers hand it a built
``sheets`` service and are responsible for only calling it while signed in.

All public operations are coroutines.  The blocking ``request.execute()``
calls of ``googleapiclient`` run through :func:`asyncio.to_thread` so that
independent reads can be awaited concurrently.  Failures are raised as
:class:`~sheetlog.errors.RemoteStoreError` tagged with the operation that
failed, which is what the error classifier keys on.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httplib2
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from sheetlog.errors import RemoteOperation, RemoteStoreError, TopicCreationError
from sheetlog.models import FIRST_DATA_ROW, Topic, column_letter

logger = logging.getLogger(__name__)

LEGACY_EVENT_COLUMNS = 2
TOPIC_FIELDS = "sheets(properties(title,sheetId,gridProperties(columnCount)))"


def build_sheets_service(credentials, *, api_key: Optional[str] = None):
    """Construct a Sheets v4 service for ``credentials``."""

    return build(
        "sheets",
        "v4",
        credentials=credentials,
        developerKey=api_key or None,
        cache_discovery=False,
    )


def quote_title(title: str) -> str:
    """Return a worksheet title quoted according to A1 notation rules."""

    safe = title or ""
    if not safe.strip():
        raise ValueError("Worksheet title must not be empty")
    return "'" + safe.replace("'", "''") + "'"


def a1_range(title: str, cells: Optional[str] = None) -> str:
    if cells is None:
        return quote_title(title)
    return f"{quote_title(title)}!{cells}"


def header_range(title: str) -> str:
    """Return the A1 range covering the whole first row of ``title``."""

    return a1_range(title, "1:1")


def event_range(title: str, *, columns: int = LEGACY_EVENT_COLUMNS) -> str:
    """Return the A1 range holding events, from row 2 down, ``columns`` wide."""

    last_column = column_letter(max(1, columns))
    return a1_range(title, f"A{FIRST_DATA_ROW}:{last_column}")


def _status_from_http_error(exc: HttpError) -> Optional[int]:
    status = getattr(getattr(exc, "resp", None), "status", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _message_from_http_error(exc: HttpError) -> str:
    reason = getattr(exc, "reason", None)
    if isinstance(reason, str) and reason.strip():
        return reason.strip()
    return str(exc)


def remote_error(operation: RemoteOperation, exc: Exception) -> RemoteStoreError:
    """Convert a Google client failure into a :class:`RemoteStoreError`."""

    if isinstance(exc, HttpError):
        return RemoteStoreError(
            operation,
            _message_from_http_error(exc),
            status=_status_from_http_error(exc),
        )
    return RemoteStoreError(operation, str(exc) or exc.__class__.__name__)


async def execute(request, operation: RemoteOperation) -> Dict[str, Any]:
    """Run a prepared ``googleapiclient`` request without blocking the loop."""

    try:
        result = await asyncio.to_thread(request.execute)
    except (HttpError, httplib2.HttpLib2Error, OSError) as exc:
        logger.warning("Google API call %s failed: %s", operation.value, exc)
        raise remote_error(operation, exc) from exc
    return result if isinstance(result, dict) else {}


class SheetsStoreClient:
    """Typed wrapper over the spreadsheet operations sheetlog relies on."""

    def __init__(self, service) -> None:
        self._service = service

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def list_topics(self, store_id: str) -> List[Topic]:
        """Return the worksheets of ``store_id`` in spreadsheet order."""

        request = self._service.spreadsheets().get(spreadsheetId=store_id, fields=TOPIC_FIELDS)
        response = await execute(request, RemoteOperation.LIST_TOPICS)
        topics: List[Topic] = []
        for sheet in response.get("sheets", []) or []:
            properties: Mapping[str, Any] = sheet.get("properties", {}) or {}
            title = properties.get("title")
            if not isinstance(title, str):
                continue
            grid: Mapping[str, Any] = properties.get("gridProperties", {}) or {}
            column_count = grid.get("columnCount")
            topics.append(
                Topic(
                    title=title,
                    sheet_id=int(properties.get("sheetId", 0)),
                    column_count=int(column_count) if column_count is not None else None,
                )
            )
        return topics

    async def get_header_row(self, store_id: str, topic_title: str) -> List[str]:
        request = (
            self._service.spreadsheets()
            .values()
            .get(spreadsheetId=store_id, range=header_range(topic_title))
        )
        response = await execute(request, RemoteOperation.READ_HEADER)
        values = response.get("values") or []
        if not values:
            return []
        return [str(cell) for cell in values[0]]

    async def get_event_rows(
        self,
        store_id: str,
        topic_title: str,
        *,
        columns: int = LEGACY_EVENT_COLUMNS,
    ) -> List[List[str]]:
        """Return the raw rows from row 2 onwards, ``columns`` columns wide."""

        request = (
            self._service.spreadsheets()
            .values()
            .get(spreadsheetId=store_id, range=event_range(topic_title, columns=columns))
        )
        response = await execute(request, RemoteOperation.READ_EVENTS)
        return [[str(cell) for cell in row] for row in response.get("values") or []]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    async def append_event_row(self, store_id: str, topic_title: str, values: Sequence[str]) -> None:
        """Append ``values`` after the last row that holds data."""

        request = (
            self._service.spreadsheets()
            .values()
            .append(
                spreadsheetId=store_id,
                range=a1_range(topic_title),
                valueInputOption="USER_ENTERED",
                insertDataOption="INSERT_ROWS",
                body={"values": [list(values)]},
            )
        )
        await execute(request, RemoteOperation.APPEND_EVENT)

    async def delete_event_row(self, store_id: str, sheet_id: int, row_number: int) -> None:
        """Delete exactly the physical row ``row_number`` (1-based)."""

        if row_number < FIRST_DATA_ROW:
            raise ValueError("Only data rows (row 2 and below) can be deleted")
        body = {
            "requests": [
                {
                    "deleteDimension": {
                        "range": {
                            "sheetId": sheet_id,
                            "dimension": "ROWS",
                            "startIndex": row_number - 1,
                            "endIndex": row_number,
                        }
                    }
                }
            ]
        }
        request = self._service.spreadsheets().batchUpdate(spreadsheetId=store_id, body=body)
        await execute(request, RemoteOperation.DELETE_EVENT)

    async def add_table(self, store_id: str, title: str, *, column_count: int) -> int:
        """Create an empty worksheet and return its generated ``sheetId``."""

        body = {
            "requests": [
                {
                    "addSheet": {
                        "properties": {
                            "title": title,
                            "gridProperties": {"rowCount": 1, "columnCount": max(1, column_count)},
                        }
                    }
                }
            ]
        }
        request = self._service.spreadsheets().batchUpdate(spreadsheetId=store_id, body=body)
        response = await execute(request, RemoteOperation.CREATE_TOPIC)
        replies = response.get("replies") or [{}]
        properties = (replies[0].get("addSheet") or {}).get("properties") or {}
        sheet_id = properties.get("sheetId")
        if sheet_id is None:
            raise RemoteStoreError(
                RemoteOperation.CREATE_TOPIC, "Could not get sheetId for new sheet."
            )
        return int(sheet_id)

    async def write_header_row(self, store_id: str, title: str, header_row: Sequence[str]) -> None:
        request = (
            self._service.spreadsheets()
            .values()
            .update(
                spreadsheetId=store_id,
                range=a1_range(title, "A1"),
                valueInputOption="USER_ENTERED",
                body={"values": [list(header_row)]},
            )
        )
        await execute(request, RemoteOperation.CREATE_TOPIC)

    async def delete_table(self, store_id: str, sheet_id: int) -> None:
        body = {"requests": [{"deleteSheet": {"sheetId": sheet_id}}]}
        request = self._service.spreadsheets().batchUpdate(spreadsheetId=store_id, body=body)
        await execute(request, RemoteOperation.CREATE_TOPIC)

    async def create_topic(
        self,
        store_id: str,
        title: str,
        header_row: Sequence[str],
        *,
        compensate: bool = True,
    ) -> int:
        """Create worksheet ``title`` with ``header_row`` and return its ``sheetId``.

        The worksheet is created first and the header written second.  When
        the header write fails and ``compensate`` is set, the new worksheet is
        deleted again before the header error is re-raised.  If it cannot be
        removed (or ``compensate`` is off) a :class:`TopicCreationError`
        naming the headerless worksheet is raised instead.
        """

        if not header_row:
            raise ValueError("A topic needs at least one header column")
        sheet_id = await self.add_table(store_id, title, column_count=len(header_row))
        try:
            await self.write_header_row(store_id, title, header_row)
        except RemoteStoreError as header_error:
            if compensate:
                try:
                    await self.delete_table(store_id, sheet_id)
                except RemoteStoreError as cleanup_error:
                    logger.error(
                        "Could not remove headerless worksheet %r (sheetId=%s): %s",
                        title,
                        sheet_id,
                        cleanup_error,
                    )
                else:
                    logger.info("Removed worksheet %r after header write failed", title)
                    raise
            raise TopicCreationError(
                f"Worksheet '{title}' was created without a header row: {header_error.message}",
                remnant_sheet_id=sheet_id,
                status=header_error.status,
            ) from header_error
        logger.info("Created worksheet %r (sheetId=%s) with %d columns", title, sheet_id, len(header_row))
        return sheet_id


__all__ = [
    "LEGACY_EVENT_COLUMNS",
    "SheetsStoreClient",
    "a1_range",
    "build_sheets_service",
    "event_range",
    "execute",
    "header_range",
    "quote_title",
    "remote_error",
]
