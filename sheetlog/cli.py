"""Command line front end for sheetlog."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Awaitable, Callable, Dict, List, Optional

from sheetlog import __version__
from sheetlog.app import EventLogApp
from sheetlog.errors import SheetlogError, ValidationError
from sheetlog.logging_config import configure_logging
from sheetlog.models import Event
from sheetlog.sdk_loader import SdkUnavailableError
from sheetlog.session import SessionStatus
from sheetlog.settings import DEFAULT_SETTINGS_PATH, load_app_settings

logger = logging.getLogger(__name__)

Command = Callable[[EventLogApp, argparse.Namespace], Awaitable[int]]


def _report(app: EventLogApp) -> int:
    message = app.messages.message
    if message:
        print(f"Error: {message}", file=sys.stderr)
        return 1
    return 0


def _require_signed_in(app: EventLogApp) -> bool:
    if app.session.is_signed_in:
        return True
    if app.messages.message:
        print(f"Error: {app.messages.message}", file=sys.stderr)
    print("Not signed in. Run 'sheetlog sign-in' first.", file=sys.stderr)
    return False


async def _select(app: EventLogApp, topic: Optional[str]) -> None:
    if topic:
        await app.engine.select_topic(topic)


def _print_events(events: List[Event]) -> None:
    for event in events:
        details = ", ".join(f"{name}={value}" for name, value in event.fields.items() if value)
        print(f"{event.row_number:>5}  {event.timestamp:<19}  {details}")


async def command_sign_in(app: EventLogApp, args: argparse.Namespace) -> int:
    if not app.session.is_signed_in:
        await app.session.request_interactive_sign_in()
    if not app.session.is_signed_in:
        return _report(app) or 1
    profile = app.engine.profile
    if profile:
        print(f"Signed in as {profile.name} <{profile.email}>")
    else:
        print("Signed in.")
    return _report(app)


async def command_sign_out(app: EventLogApp, args: argparse.Namespace) -> int:
    await app.session.sign_out()
    print("Signed out.")
    return 0


async def command_whoami(app: EventLogApp, args: argparse.Namespace) -> int:
    if not _require_signed_in(app):
        return 1
    profile = app.engine.profile
    if profile is None:
        return _report(app) or 1
    print(f"{profile.name} <{profile.email}>")
    return 0


async def command_store(app: EventLogApp, args: argparse.Namespace) -> int:
    if args.store_id:
        await app.engine.set_store_id(args.store_id)
        print(f"Spreadsheet set to {app.engine.store_id}")
        return _report(app)
    if app.engine.store_id:
        print(app.engine.store_id)
        return 0
    print("No spreadsheet configured. Run 'sheetlog store <ID>'.", file=sys.stderr)
    return 1


async def command_topics(app: EventLogApp, args: argparse.Namespace) -> int:
    if not _require_signed_in(app):
        return 1
    for topic in app.engine.topics:
        marker = "*" if topic.title == app.engine.selected_topic else " "
        print(f"{marker} {topic.title}")
    return _report(app)


async def command_events(app: EventLogApp, args: argparse.Namespace) -> int:
    if not _require_signed_in(app):
        return 1
    await _select(app, args.topic)
    engine = app.engine
    if not engine.selected_topic:
        print("No topics yet. Create one with 'sheetlog add-topic'.")
        return _report(app)
    print(f"Topic: {engine.selected_topic}  Columns: {', '.join(engine.header_schema)}")
    _print_events(engine.events)
    return _report(app)


async def command_add_topic(app: EventLogApp, args: argparse.Namespace) -> int:
    if not _require_signed_in(app):
        return 1
    if await app.engine.create_topic(args.name, args.columns):
        print(f"Topic '{app.engine.selected_topic}' created with columns: {', '.join(app.engine.header_schema)}")
    return _report(app)


def _parse_fields(pairs: List[str]) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for pair in pairs:
        header, separator, value = pair.partition("=")
        if not separator or not header.strip():
            raise ValidationError(f"Fields must look like HEADER=VALUE, got {pair!r}")
        fields[header.strip()] = value
    return fields


async def command_add_event(app: EventLogApp, args: argparse.Namespace) -> int:
    if not _require_signed_in(app):
        return 1
    await _select(app, args.topic)
    engine = app.engine
    fields = _parse_fields(args.field or [])
    if args.text is not None and len(engine.header_schema) > 1:
        fields.setdefault(engine.header_schema[1], args.text)
    for header, value in fields.items():
        engine.update_draft_field(header, value)
    engine.set_draft_timestamp(args.time or "")
    if await engine.append_event():
        print(f"Event added to '{engine.selected_topic}'.")
    return _report(app)


async def command_delete_event(app: EventLogApp, args: argparse.Namespace) -> int:
    if not _require_signed_in(app):
        return 1
    await _select(app, args.topic)
    engine = app.engine
    event = next((item for item in engine.events if item.row_number == args.row), None)
    if event is None:
        print(f"No event on row {args.row} of '{engine.selected_topic}'.", file=sys.stderr)
        return 1

    def confirm(candidate: Event) -> bool:
        if args.yes:
            return True
        answer = input(f'Are you sure you want to delete the event: "{candidate.summary}"? [y/N] ')
        return answer.strip().lower() in {"y", "yes"}

    if await engine.delete_event(event.id, confirm):
        print(f"Deleted row {args.row}.")
    return _report(app)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Keep event logs in Google Sheets topics")
    parser.add_argument("--version", action="version", version=f"sheetlog {__version__}")
    parser.add_argument("--settings", default=DEFAULT_SETTINGS_PATH, help="Path to the settings JSON file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    sign_in = subparsers.add_parser("sign-in", help="Sign in with Google (opens a browser)")
    sign_in.set_defaults(func=command_sign_in)

    sign_out = subparsers.add_parser("sign-out", help="Revoke the token and forget the session")
    sign_out.set_defaults(func=command_sign_out)

    whoami = subparsers.add_parser("whoami", help="Show the signed-in user")
    whoami.set_defaults(func=command_whoami)

    store = subparsers.add_parser("store", help="Show or set the spreadsheet identifier")
    store.add_argument("store_id", nargs="?", help="New spreadsheet identifier")
    store.set_defaults(func=command_store)

    topics = subparsers.add_parser("topics", help="List topics")
    topics.set_defaults(func=command_topics)

    events = subparsers.add_parser("events", help="List the events of a topic, newest first")
    events.add_argument("--topic", help="Topic title (defaults to the first topic)")
    events.set_defaults(func=command_events)

    add_topic = subparsers.add_parser("add-topic", help="Create a topic")
    add_topic.add_argument("name", help="Topic title")
    add_topic.add_argument(
        "--columns",
        default=None,
        help="Comma separated column names (default: 'Event Description')",
    )
    add_topic.set_defaults(func=command_add_topic)

    add_event = subparsers.add_parser("add-event", help="Append an event to a topic")
    add_event.add_argument("text", nargs="?", help="Value for the first column after Timestamp")
    add_event.add_argument("--topic", help="Topic title (defaults to the first topic)")
    add_event.add_argument("--time", help="Custom timestamp, YYYY-MM-DD HH:MM:SS")
    add_event.add_argument(
        "--field",
        action="append",
        metavar="HEADER=VALUE",
        help="Value for a named column; may be repeated",
    )
    add_event.set_defaults(func=command_add_event)

    delete_event = subparsers.add_parser("delete-event", help="Delete an event by row number")
    delete_event.add_argument("row", type=int, help="Row number as shown by 'events'")
    delete_event.add_argument("--topic", help="Topic title (defaults to the first topic)")
    delete_event.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    delete_event.set_defaults(func=command_delete_event)

    return parser


async def _run(app: EventLogApp, args: argparse.Namespace) -> int:
    try:
        await app.start()
    except SdkUnavailableError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if app.session.status is SessionStatus.CONFIG_INVALID:
        return _report(app) or 1
    command: Command = args.func
    try:
        return await command(app, args)
    except ValidationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except SheetlogError as exc:
        logger.error("Command %s failed: %s", args.command, exc, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    settings = load_app_settings(args.settings)
    app = EventLogApp(settings)
    return asyncio.run(_run(app, args))


if __name__ == "__main__":
    sys.exit(main())
