"""Timestamp helpers for the ``YYYY-MM-DD HH:MM:SS`` wire format."""
from __future__ import annotations

import re
from datetime import datetime, timezone, tzinfo
from typing import List, Optional, Sequence, Tuple, TypeVar

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"
TIMESTAMP_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")

T = TypeVar("T")


def format_timestamp(value: Optional[datetime] = None) -> str:
    """Return ``value`` (default: now) normalised to UTC and truncated to seconds."""

    if value is None:
        value = datetime.now(timezone.utc)
    elif value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).replace(microsecond=0).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp, returning ``None`` when it is not a date.

    The wire format is tried first; ISO-8601 variants written by other tools
    are accepted as well. Naive values are taken to be UTC.
    """

    text = (value or "").strip()
    if not text:
        return None
    try:
        parsed = datetime.strptime(text, TIMESTAMP_FORMAT)
    except ValueError:
        candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def resolve_timestamp(
    custom: Optional[str],
    *,
    now: Optional[datetime] = None,
    tz: Optional[tzinfo] = None,
) -> str:
    """Return the timestamp to write for a new event.

    A blank ``custom`` value resolves to ``now``. Otherwise it must match
    ``YYYY-MM-DD HH:MM:SS`` literally and be a real calendar date; it is read
    in ``tz`` (default: the local zone) and normalised to UTC.

    Raises :class:`ValueError` with a user-facing message when rejected.
    """

    text = (custom or "").strip()
    if not text:
        return format_timestamp(now)
    if not TIMESTAMP_PATTERN.match(text):
        raise ValueError("Invalid custom date format. Please use YYYY-MM-DD HH:MM:SS.")
    try:
        parsed = datetime.strptime(text, TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise ValueError(
            "Invalid custom date format (parsed as invalid date). Please use YYYY-MM-DD HH:MM:SS."
        ) from exc
    if tz is not None:
        parsed = parsed.replace(tzinfo=tz)
    return format_timestamp(parsed)


def sort_by_timestamp(items: Sequence[T], key) -> List[T]:
    """Sort ``items`` newest first by ``key(item)``.

    Items whose timestamp does not parse keep their relative order and are
    placed after every dated item.
    """

    dated: List[Tuple[datetime, T]] = []
    undated: List[T] = []
    for item in items:
        parsed = parse_timestamp(key(item))
        if parsed is None:
            undated.append(item)
        else:
            dated.append((parsed, item))
    dated.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in dated] + undated


def sort_events(events):
    """Return ``events`` sorted newest first; see :func:`sort_by_timestamp`."""

    return sort_by_timestamp(events, lambda event: event.timestamp)


__all__ = [
    "TIMESTAMP_FORMAT",
    "TIMESTAMP_PATTERN",
    "format_timestamp",
    "parse_timestamp",
    "resolve_timestamp",
    "sort_by_timestamp",
    "sort_events",
]
