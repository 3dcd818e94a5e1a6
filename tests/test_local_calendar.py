"""Tests for the in-process calendar of record."""

from __future__ import annotations

import json

import pytest

from calendar_assistant.errors import InvalidRequest
from calendar_assistant.local_calendar import LocalCalendarGateway
from calendar_assistant.models import EventSpec, EventUpdate

from .conftest import at


async def test_unsupported_rule_is_rejected(gateway):
    with pytest.raises(InvalidRequest):
        await gateway.create_event(
            EventSpec(title="Odd", start=at(9), recurrence="FREQ=YEARLY"))


async def test_editing_an_occurrence_splits_it_off(gateway):
    master = await gateway.create_event(
        EventSpec(title="Standup", start=at(9), duration_minutes=15, recurrence="FREQ=DAILY"))
    first = (await gateway.list_events(at(0), at(23)))[0]

    moved = await gateway.update_event(first.id, EventUpdate(start=at(9, 30)))

    assert moved.id != first.id
    assert moved.recurring_event_id == master.id
    today = await gateway.list_events(at(0), at(23))
    assert [(ev.id, ev.start) for ev in today] == [(moved.id, at(9, 30))]
    tomorrow = await gateway.list_events(at(0, day=7), at(23, day=7))
    assert [ev.start for ev in tomorrow] == [at(9, day=7)]


async def test_count_limits_expansion(gateway):
    await gateway.create_event(
        EventSpec(title="Course", start=at(18), recurrence="FREQ=DAILY;COUNT=3"))

    events = await gateway.list_events(at(0), at(23, day=20))

    assert [ev.start.day for ev in events] == [6, 7, 8]


async def test_persists_to_disk(tmp_path):
    path = tmp_path / "events.json"
    gateway = LocalCalendarGateway(persist_path=path, timezone_name="UTC")
    created = await gateway.create_event(EventSpec(title="Lunch", start=at(12)))

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert payload["version"] == 1

    reloaded = LocalCalendarGateway(persist_path=path, timezone_name="UTC")
    stored = await reloaded.get_event(created.id)
    assert stored.title == "Lunch"
    assert stored.start == at(12)


async def test_corrupt_file_starts_empty(tmp_path):
    path = tmp_path / "events.json"
    path.write_text("{not json", encoding="utf-8")

    gateway = LocalCalendarGateway(persist_path=path, timezone_name="UTC")

    assert await gateway.list_events(at(0), at(23)) == []
