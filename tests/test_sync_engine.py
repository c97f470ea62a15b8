from __future__ import annotations

import asyncio
import sys
from datetime import timezone
from pathlib import Path
from typing import Optional

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fake_google import (
    FakePeopleService,
    FakeSheetsService,
    FakeTokenClient,
    MemoryConfigStore,
    granted,
    http_error,
)
from sheetlog.errors import NOT_FOUND_MESSAGE, MessageBoard, ValidationError
from sheetlog.models import Topic
from sheetlog.session import SessionManager, SessionStatus
from sheetlog.sheets_client import SheetsStoreClient
from sheetlog.sync_engine import SyncEngine, parse_columns
from sheetlog.timestamps import format_timestamp


class Harness:
    def __init__(self, service: FakeSheetsService, store_id: Optional[str] = "sheet-1", **engine_kwargs) -> None:
        self.service = service
        self.tokens = FakeTokenClient([granted("abc")])
        self.people = FakePeopleService()
        self.store = MemoryConfigStore(store_id)
        messages = MessageBoard()
        self.session = SessionManager(
            lambda client_id, scopes: self.tokens,
            messages=messages,
            people_service_factory=lambda credentials, api_key=None: self.people,
        )
        engine_kwargs.setdefault("timezone", timezone.utc)
        self.engine = SyncEngine(
            self.session,
            self.store,
            lambda credentials: SheetsStoreClient(service),
            messages=messages,
            **engine_kwargs,
        )

    async def sign_in(self) -> None:
        await self.session.initialize("client-id")
        await self.session.attempt_silent_sign_in()


def _service() -> FakeSheetsService:
    service = FakeSheetsService("sheet-1")
    service.add_worksheet(
        "Work",
        [
            ["Timestamp", "Description", "Duration"],
            ["2024-01-01 10:00:00", "Standup", "15m"],
            ["2024-01-03 10:00:00", "Deploy", "2h"],
            ["2024-01-02 10:00:00", "Review", "1h"],
        ],
        column_count=3,
    )
    service.add_worksheet("Home", [["Timestamp", "Event Description"]], column_count=2)
    return service


def test_parse_columns():
    assert parse_columns(None) == ["Event Description"]
    assert parse_columns(" , ") == ["Event Description"]
    assert parse_columns("Description, Duration ") == ["Description", "Duration"]
    assert parse_columns(["A", " ", "B"]) == ["A", "B"]


def test_sign_in_loads_profile_topics_and_first_topic():
    harness = Harness(_service())

    asyncio.run(harness.sign_in())

    engine = harness.engine
    assert engine.profile.email == "ada@example.com"
    assert [topic.title for topic in engine.topics] == ["Work", "Home"]
    assert engine.selected_topic == "Work"
    assert engine.header_schema == ["Timestamp", "Description", "Duration"]
    assert [event.fields["Description"] for event in engine.events] == ["Deploy", "Review", "Standup"]
    assert [event.row_number for event in engine.events] == [3, 4, 2]
    assert not engine.loading.busy
    assert engine.messages.message is None


def test_event_reads_cover_full_topic_width():
    harness = Harness(_service())

    asyncio.run(harness.sign_in())

    ranges = [call["range"] for call in harness.service.calls_of("values.get")]
    assert "'Work'!A2:C" in ranges
    assert harness.engine.events[0].fields == {"Description": "Deploy", "Duration": "2h"}


def test_legacy_event_reads_use_two_columns():
    harness = Harness(_service(), full_width_event_reads=False)

    asyncio.run(harness.sign_in())

    ranges = [call["range"] for call in harness.service.calls_of("values.get")]
    assert "'Work'!A2:B" in ranges
    assert harness.engine.events[0].fields == {"Description": "Deploy"}


def test_no_store_configured_skips_remote_loads():
    harness = Harness(_service(), store_id=None)

    asyncio.run(harness.sign_in())

    assert harness.session.is_signed_in
    assert harness.engine.topics == []
    assert harness.service.calls == []


def test_empty_spreadsheet_selects_nothing():
    harness = Harness(FakeSheetsService("sheet-1"))

    asyncio.run(harness.sign_in())

    assert harness.engine.topics == []
    assert harness.engine.selected_topic == ""
    assert harness.engine.events == []


def test_unknown_spreadsheet_reports_not_found_and_stays_signed_in():
    harness = Harness(_service(), store_id="wrong-id")

    asyncio.run(harness.sign_in())

    assert harness.session.is_signed_in
    assert harness.engine.messages.message == NOT_FOUND_MESSAGE
    assert harness.engine.topics == []


def test_auth_error_on_topics_signs_out_and_clears_state():
    service = _service()
    service.fail("get", http_error(401, "Request had invalid authentication credentials."))
    harness = Harness(service)

    asyncio.run(harness.sign_in())

    assert harness.session.status is SessionStatus.SIGNED_OUT
    assert harness.engine.messages.message == "Auth error fetching topics."
    assert harness.engine.topics == []
    assert harness.tokens.revoked == ["abc"]


def test_empty_range_on_new_topic_is_silent():
    service = _service()
    service.fail("values.get", http_error(400, "Unable to parse range: 'Work'!1:1"), match="!1:1")
    harness = Harness(service)

    asyncio.run(harness.sign_in())

    assert harness.engine.messages.message is None
    assert harness.engine.header_schema == []
    assert harness.session.is_signed_in


def test_select_topic_loads_other_topic_and_clears_draft():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        harness.engine.update_draft_field("Description", "half typed")
        await harness.engine.select_topic("Home")

    asyncio.run(scenario())

    engine = harness.engine
    assert engine.selected_topic == "Home"
    assert engine.header_schema == ["Timestamp", "Event Description"]
    assert engine.events == []
    assert engine.draft.fields == {}


def test_select_unknown_topic_is_rejected():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        await harness.engine.select_topic("Nope")

    with pytest.raises(ValidationError):
        asyncio.run(scenario())
    assert harness.engine.selected_topic == "Work"


class _GatedClient(SheetsStoreClient):
    def __init__(self, service: FakeSheetsService) -> None:
        super().__init__(service)
        self.held: dict = {}
        self.held_headers: dict = {}

    async def get_header_row(self, store_id, topic_title):
        gate = self.held_headers.get(topic_title)
        if gate is not None:
            await gate.wait()
        return await super().get_header_row(store_id, topic_title)

    async def get_event_rows(self, store_id, topic_title, *, columns=2):
        gate = self.held.get(topic_title)
        if gate is not None:
            await gate.wait()
        return await super().get_event_rows(store_id, topic_title, columns=columns)


def test_stale_events_for_previous_selection_are_discarded():
    service = _service()
    service.worksheet("Home").rows.append(["2024-02-01 08:00:00", "Groceries"])
    harness = Harness(service)
    client = _GatedClient(service)
    harness.engine._client_factory = lambda credentials: client

    async def scenario():
        await harness.sign_in()
        gate = asyncio.Event()
        client.held["Home"] = gate
        pending = asyncio.ensure_future(harness.engine.select_topic("Home"))
        for _ in range(5):
            await asyncio.sleep(0)
        await harness.engine.select_topic("Work")
        gate.set()
        await pending

    asyncio.run(scenario())

    engine = harness.engine
    assert engine.selected_topic == "Work"
    assert engine.header_schema == ["Timestamp", "Description", "Duration"]
    assert [event.fields["Description"] for event in engine.events] == ["Deploy", "Review", "Standup"]
    assert not engine.loading.events


def test_create_topic_writes_header_and_selects_it():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        return await harness.engine.create_topic("  Health ", "Weight, Mood")

    assert asyncio.run(scenario()) is True

    engine = harness.engine
    assert harness.service.worksheet("Health").rows == [["Timestamp", "Weight", "Mood"]]
    assert engine.topics[-1] == Topic(title="Health", sheet_id=102, column_count=3)
    assert engine.selected_topic == "Health"
    assert engine.header_schema == ["Timestamp", "Weight", "Mood"]


def test_create_topic_defaults_to_description_column():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        await harness.engine.create_topic("Notes")

    asyncio.run(scenario())

    assert harness.service.worksheet("Notes").rows == [["Timestamp", "Event Description"]]


@pytest.mark.parametrize(
    "name, columns, message",
    [
        ("", None, "Topic name cannot be empty."),
        ("Work", None, 'Topic "Work" already exists.'),
        ("Dup", "A, A", "Column names must be unique and must not repeat Timestamp."),
        ("Dup", "Timestamp", "Column names must be unique and must not repeat Timestamp."),
    ],
)
def test_create_topic_validation_happens_before_network(name, columns, message):
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        harness.service.calls.clear()
        await harness.engine.create_topic(name, columns)

    with pytest.raises(ValidationError):
        asyncio.run(scenario())

    assert harness.engine.messages.message == message
    assert harness.service.calls == []


def test_create_topic_failure_leaves_topics_untouched():
    service = _service()
    service.fail("values.update", http_error(500, "Backend error"))
    harness = Harness(service)

    async def scenario():
        await harness.sign_in()
        return await harness.engine.create_topic("Health")

    assert asyncio.run(scenario()) is False
    assert [topic.title for topic in harness.engine.topics] == ["Work", "Home"]
    assert harness.engine.messages.message == "Error adding topic: Backend error"
    assert service.worksheet("Health") is None


def test_append_event_writes_row_and_refreshes():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        harness.engine.update_draft_field("Description", "Wrote tests")
        harness.engine.set_draft_timestamp("2024-03-01 09:30:00")
        return await harness.engine.append_event()

    assert asyncio.run(scenario()) is True

    payload = harness.service.calls_of("values.append")[0]
    assert payload["body"] == {"values": [["2024-03-01 09:30:00", "Wrote tests", ""]]}
    engine = harness.engine
    assert engine.events[0].fields == {"Description": "Wrote tests", "Duration": ""}
    assert engine.events[0].row_number == 5
    assert engine.draft.fields == {}


def test_append_event_requires_a_detail():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        harness.engine.update_draft_field("Description", "   ")
        await harness.engine.append_event()

    with pytest.raises(ValidationError):
        asyncio.run(scenario())
    assert harness.engine.messages.message == "Please fill in at least one event detail."
    assert harness.service.calls_of("values.append") == []


def test_append_event_rejects_malformed_timestamp_without_network():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        harness.engine.update_draft_field("Description", "Something")
        harness.engine.set_draft_timestamp("2024-13-40 99:99:99")
        await harness.engine.append_event()

    with pytest.raises(ValidationError, match="parsed as invalid date"):
        asyncio.run(scenario())
    assert harness.service.calls_of("values.append") == []
    assert harness.engine.draft.fields == {"Description": "Something"}


def test_append_event_without_headers_is_rejected():
    service = _service()
    service.fail("values.get", http_error(400, "Unable to parse range: 'Work'!1:1"), match="!1:1")
    harness = Harness(service)

    async def scenario():
        await harness.sign_in()
        harness.engine.update_draft_field("Description", "x")
        await harness.engine.append_event()

    with pytest.raises(ValidationError):
        asyncio.run(scenario())
    assert harness.engine.messages.message == "Topic headers not loaded. Cannot determine event structure."


def test_delete_event_removes_row_and_shifts_row_numbers():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        target = next(event for event in harness.engine.events if event.row_number == 3)
        return await harness.engine.delete_event(target.id, lambda event: True)

    assert asyncio.run(scenario()) is True

    request = harness.service.calls_of("batchUpdate")[0]["body"]["requests"][0]["deleteDimension"]
    assert request["range"] == {"sheetId": 100, "dimension": "ROWS", "startIndex": 2, "endIndex": 3}
    events = harness.engine.events
    assert [(event.fields["Description"], event.row_number) for event in events] == [
        ("Review", 3),
        ("Standup", 2),
    ]
    assert [event.id for event in events] == ["Work-1", "Work-0"]
    assert [row[1] for row in harness.service.worksheet("Work").rows[1:]] == ["Standup", "Review"]


def test_delete_event_cancelled_makes_no_call():
    harness = Harness(_service())
    asked = []

    async def scenario():
        await harness.sign_in()
        target = harness.engine.events[0]
        return await harness.engine.delete_event(target.id, lambda event: asked.append(event.summary) or False)

    assert asyncio.run(scenario()) is False
    assert asked == ["Deploy"]
    assert harness.service.calls_of("batchUpdate") == []
    assert len(harness.engine.events) == 3


def test_set_store_id_persists_and_reloads():
    service = _service()
    harness = Harness(service, store_id="wrong-id")

    async def scenario():
        await harness.sign_in()
        assert harness.engine.messages.message == NOT_FOUND_MESSAGE
        await harness.engine.set_store_id("  sheet-1 ")

    asyncio.run(scenario())

    assert harness.store.writes == ["sheet-1"]
    assert harness.engine.store_id == "sheet-1"
    assert harness.engine.messages.message is None
    assert harness.engine.selected_topic == "Work"


def test_set_store_id_rejects_blank_and_fixed():
    harness = Harness(_service())
    with pytest.raises(ValidationError):
        asyncio.run(harness.engine.set_store_id("  "))
    assert harness.engine.messages.message == "Please enter a valid Spreadsheet ID."

    fixed = Harness(_service(), fixed_store_id="sheet-1")
    with pytest.raises(ValidationError):
        asyncio.run(fixed.engine.set_store_id("other"))
    assert fixed.store.writes == []


def test_sign_out_resets_engine_state():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        harness.engine.update_draft_field("Description", "draft")
        await harness.session.sign_out()

    asyncio.run(scenario())

    engine = harness.engine
    assert engine.topics == []
    assert engine.selected_topic == ""
    assert engine.header_schema == []
    assert engine.events == []
    assert engine.draft.fields == {}
    assert engine.profile is None


def test_refresh_topics_picks_up_new_worksheets_and_keeps_selection():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        await harness.engine.select_topic("Home")
        harness.service.add_worksheet("Travel", [["Timestamp", "Where"]], column_count=2)
        return await harness.engine.refresh_topics()

    assert asyncio.run(scenario()) is True
    assert [topic.title for topic in harness.engine.topics] == ["Work", "Home", "Travel"]
    assert harness.engine.selected_topic == "Home"
    assert not harness.engine.loading.topics


def test_refresh_topics_when_signed_out_does_nothing():
    harness = Harness(_service())

    assert asyncio.run(harness.engine.refresh_topics()) is False
    assert harness.service.calls == []


def test_begin_store_change_clears_derived_state():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        harness.engine.set_draft_timestamp("2024-01-01 00:00:00")
        harness.engine.begin_store_change()

    asyncio.run(scenario())

    engine = harness.engine
    assert engine.topics == [] and engine.events == [] and engine.header_schema == []
    assert engine.draft.custom_timestamp == ""
    assert engine.store_id == "sheet-1"
    assert harness.session.is_signed_in


def test_cancel_draft():
    harness = Harness(_service())
    harness.engine.update_draft_field("Description", "x")
    harness.engine.set_draft_timestamp("2024-01-01 00:00:00")

    harness.engine.cancel_draft()

    assert harness.engine.draft.fields == {}
    assert harness.engine.draft.custom_timestamp == ""


def _gated_harness():
    service = _service()
    service.worksheet("Home").rows.append(["2024-02-01 08:00:00", "Groceries"])
    harness = Harness(service)
    client = _GatedClient(service)
    harness.engine._client_factory = lambda credentials: client
    return harness, client


@pytest.mark.parametrize("interrupt", ["begin_store_change", "clear_selection"])
def test_loading_flags_settle_when_selection_is_abandoned(interrupt):
    harness, client = _gated_harness()

    async def scenario():
        await harness.sign_in()
        gate = asyncio.Event()
        client.held["Home"] = gate
        client.held_headers["Home"] = gate
        pending = asyncio.ensure_future(harness.engine.select_topic("Home"))
        for _ in range(5):
            await asyncio.sleep(0)
        assert harness.engine.loading.headers and harness.engine.loading.events
        if interrupt == "begin_store_change":
            harness.engine.begin_store_change()
        else:
            await harness.engine.select_topic("")
        gate.set()
        await pending

    asyncio.run(scenario())

    assert not harness.engine.loading.busy
    assert harness.engine.events == []


def test_failed_header_read_leaves_generic_field_names():
    harness, client = _gated_harness()
    harness.service.fail("values.get", http_error(500, "Backend error"), match="'Home'!1:1")

    async def scenario():
        await harness.sign_in()
        gate = asyncio.Event()
        client.held_headers["Home"] = gate
        pending = asyncio.ensure_future(harness.engine.select_topic("Home"))
        for _ in range(5):
            await asyncio.sleep(0)
        while harness.engine.loading.events:
            await asyncio.sleep(0.01)
        events_before_header = [dict(event.fields) for event in harness.engine.events]
        gate.set()
        await pending
        return events_before_header

    events_before_header = asyncio.run(scenario())

    engine = harness.engine
    assert events_before_header == [{"Column B": "Groceries"}]
    assert engine.header_schema == []
    assert [event.fields for event in engine.events] == [{"Column B": "Groceries"}]
    assert engine.messages.message == "Error fetching headers: Backend error"


def test_delete_first_row_renumbers_like_a_fresh_read():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        target = next(event for event in harness.engine.events if event.row_number == 2)
        await harness.engine.delete_event(target.id, lambda event: True)
        local = [(event.id, event.row_number, event.fields) for event in harness.engine.events]
        await harness.engine.select_topic("Work", force=True)
        fresh = [(event.id, event.row_number, event.fields) for event in harness.engine.events]
        return local, fresh

    local, fresh = asyncio.run(scenario())

    assert local == fresh
    assert [(event_id, row) for event_id, row, _ in local] == [("Work-0", 2), ("Work-1", 3)]


def test_append_without_custom_time_uses_now():
    harness = Harness(_service())

    async def scenario():
        await harness.sign_in()
        await harness.engine.select_topic("Home")
        harness.engine.update_draft_field("Event Description", "Walked the dog")
        return await harness.engine.append_event()

    before = format_timestamp()
    assert asyncio.run(scenario()) is True
    after = format_timestamp()

    row = harness.service.calls_of("values.append")[0]["body"]["values"][0]
    assert row[1:] == ["Walked the dog"]
    assert before <= row[0] <= after
    assert harness.engine.events[0].fields == {"Event Description": "Walked the dog"}


def test_timestamp_only_topic_accepts_empty_draft():
    service = _service()
    service.add_worksheet("Pulse", [["Timestamp"]], column_count=1)
    harness = Harness(service)

    async def scenario():
        await harness.sign_in()
        await harness.engine.select_topic("Pulse")
        harness.engine.set_draft_timestamp("2024-04-01 06:00:00")
        return await harness.engine.append_event()

    assert asyncio.run(scenario()) is True

    assert service.worksheet("Pulse").rows[1:] == [["2024-04-01 06:00:00"]]
    assert "'Pulse'!A2:A" in [call["range"] for call in service.calls_of("values.get")]
    assert [(event.timestamp, event.fields) for event in harness.engine.events] == [("2024-04-01 06:00:00", {})]
