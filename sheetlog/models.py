"""Plain data containers for topics, events and user profiles."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sheetlog.timestamps import sort_events

TIMESTAMP_HEADER = "Timestamp"
DEFAULT_EVENT_COLUMN = "Event Description"
FIRST_DATA_ROW = 2


def column_letter(index: int) -> str:
    """Return the spreadsheet column letter for a 1-indexed column index."""

    if index < 1:
        raise ValueError("Column index must be >= 1")
    letters: List[str] = []
    while index:
        index, remainder = divmod(index - 1, 26)
        letters.append(chr(65 + remainder))
    return "".join(reversed(letters))


@dataclass(frozen=True)
class Topic:
    """A worksheet inside the spreadsheet; ``title`` is the unique key."""

    title: str
    sheet_id: int
    column_count: Optional[int] = None


@dataclass(frozen=True)
class Profile:
    name: str
    email: str


@dataclass(frozen=True)
class Event:
    """One data row of a topic.

    ``row_number`` is the 1-based physical row in the worksheet; row 1 always
    holds the header so the first event lives on row 2.
    """

    id: str
    timestamp: str
    fields: Dict[str, str]
    row_number: int

    @property
    def summary(self) -> str:
        for value in self.fields.values():
            if value and value.strip():
                return value
        return self.timestamp


@dataclass
class PendingEventDraft:
    custom_timestamp: str = ""
    fields: Dict[str, str] = field(default_factory=dict)

    def clear(self) -> None:
        self.custom_timestamp = ""
        self.fields = {}


def _field_names(headers: Sequence[str], width: int) -> List[str]:
    names: List[str] = []
    for index in range(1, width):
        header = headers[index] if index < len(headers) else ""
        names.append(header or f"Column {column_letter(index + 1)}")
    return names


def build_events(topic_title: str, rows: Sequence[Sequence[str]], headers: Sequence[str]) -> List[Event]:
    """Turn raw worksheet rows (starting at row 2) into sorted events.

    Cells past the header width are ignored and missing cells become ``""``.
    Without a header the row width decides the columns and the field names
    fall back to ``"Column <letter>"``.
    """

    width = len(headers) if headers else max((len(row) for row in rows), default=1)
    names = _field_names(headers, max(width, 1))
    events: List[Event] = []
    for offset, row in enumerate(rows):
        cells = [str(cell) for cell in row]
        fields = {
            name: cells[index] if index < len(cells) else ""
            for index, name in enumerate(names, start=1)
        }
        events.append(
            Event(
                id=f"{topic_title}-{offset}",
                timestamp=cells[0] if cells else "",
                fields=fields,
                row_number=offset + FIRST_DATA_ROW,
            )
        )
    return sort_events(events)


__all__ = [
    "DEFAULT_EVENT_COLUMN",
    "FIRST_DATA_ROW",
    "TIMESTAMP_HEADER",
    "Event",
    "PendingEventDraft",
    "Profile",
    "Topic",
    "build_events",
    "column_letter",
]
