"""Tests for the Google Calendar gateway: error mapping, body conversion and
request handling against a fake discovery service."""

from __future__ import annotations

from types import SimpleNamespace

import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from calendar_assistant.errors import AuthRequired, RemoteUnavailable
from calendar_assistant.gcal import (
    GoogleCalendarGateway,
    build_event_body,
    build_patch_body,
    event_from_google,
    map_google_error,
)
from calendar_assistant.models import EventSpec, EventUpdate
from calendar_assistant.state import AuthStatusCache

from .conftest import at


def _http_error(status: int) -> HttpError:
    return HttpError(SimpleNamespace(status=status, reason="error"), b"{}")


class FakeRequest:

    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def execute(self):
        if self.error is not None:
            raise self.error
        return self.result


class FakeEvents:

    def __init__(self, pages=None, get_error=None, delete_error=None):
        self.pages = list(pages or [])
        self.get_error = get_error
        self.delete_error = delete_error
        self.list_calls = []
        self.inserted = []

    def list(self, **kwargs):
        self.list_calls.append(kwargs)
        return FakeRequest(self.pages.pop(0))

    def get(self, **kwargs):
        return FakeRequest(error=self.get_error)

    def insert(self, calendarId, body, sendUpdates):
        self.inserted.append(body)
        return FakeRequest({"id": "created-1", **body})

    def delete(self, **kwargs):
        return FakeRequest(error=self.delete_error)


class FakeService:

    def __init__(self, events: FakeEvents, freebusy=None):
        self._events = events
        self._freebusy = freebusy or {}

    def events(self):
        return self._events

    def freebusy(self):
        return SimpleNamespace(query=lambda body: FakeRequest(self._freebusy))


def _gateway(service, cache=None) -> GoogleCalendarGateway:
    gateway = GoogleCalendarGateway("session-1", auth_cache=cache,
                                    calendar_id="primary", timezone_name="UTC")
    gateway._service = service
    return gateway


def _raw(event_id, hour, **extra):
    return {
        "id": event_id,
        "summary": f"Event {event_id}",
        "start": {"dateTime": at(hour).isoformat()},
        "end": {"dateTime": at(hour, 30).isoformat()},
        **extra,
    }


class TestErrorMapping:

    def test_unauthorized_needs_reauth(self):
        assert isinstance(map_google_error(_http_error(401)), AuthRequired)

    def test_refresh_failure_needs_reauth(self):
        assert isinstance(map_google_error(RefreshError("invalid_grant")), AuthRequired)

    @pytest.mark.parametrize("status", [403, 429, 500, 503])
    def test_other_statuses_are_remote_failures(self, status):
        mapped = map_google_error(_http_error(status))
        assert isinstance(mapped, RemoteUnavailable)
        assert mapped.status_code == status

    def test_transport_errors_are_remote_failures(self):
        mapped = map_google_error(OSError("connection reset"))
        assert isinstance(mapped, RemoteUnavailable)
        assert mapped.status_code is None


class TestConversion:

    def test_event_from_google(self):
        event = event_from_google(_raw("abc_20250306T150000Z", 15, recurringEventId="abc",
                                       attendees=[{"email": "sam@example.com"}]))

        assert event.start == at(15)
        assert event.end == at(15, 30)
        assert event.recurring
        assert event.recurring_event_id == "abc"
        assert event.attendees == ["sam@example.com"]

    def test_all_day_event(self):
        event = event_from_google({"id": "x", "start": {"date": "2025-03-06"},
                                   "end": {"date": "2025-03-07"}}, "UTC")
        assert event.start == at(0)
        assert event.end == at(0, day=7)

    def test_event_body(self):
        body = build_event_body(
            EventSpec(title="Sync", start=at(15), duration_minutes=45,
                      attendees=["sam@example.com"], recurrence="FREQ=WEEKLY"),
            "UTC")

        assert body["summary"] == "Sync"
        assert body["end"]["dateTime"] == at(15, 45).isoformat()
        assert body["recurrence"] == ["RRULE:FREQ=WEEKLY"]
        assert body["attendees"] == [{"email": "sam@example.com"}]
        assert body["transparency"] == "opaque"

    def test_patch_body_keeps_duration_when_moving(self):
        current = event_from_google(_raw("abc", 15))

        body = build_patch_body(current, EventUpdate(start=at(16)), "UTC")

        assert body["start"]["dateTime"] == at(16).isoformat()
        assert body["end"]["dateTime"] == at(16, 30).isoformat()
        assert "summary" not in body


class TestGateway:

    async def test_list_follows_pages_and_skips_cancelled(self):
        events = FakeEvents(pages=[
            {"items": [_raw("a", 9)], "nextPageToken": "p2"},
            {"items": [_raw("b", 10, status="cancelled"), _raw("c", 11)]},
        ])
        cache = AuthStatusCache()

        found = await _gateway(FakeService(events), cache).list_events(at(0), at(23))

        assert [ev.id for ev in found] == ["a", "c"]
        assert events.list_calls[0]["singleEvents"] is True
        assert events.list_calls[1]["pageToken"] == "p2"
        assert cache.get("session-1").authenticated

    async def test_missing_event_is_none(self):
        service = FakeService(FakeEvents(get_error=_http_error(404)))
        assert await _gateway(service).get_event("gone") is None

    async def test_delete_of_missing_event_succeeds(self):
        service = FakeService(FakeEvents(delete_error=_http_error(410)))
        await _gateway(service).delete_event("gone")

    async def test_unauthorized_marks_cache(self):
        service = FakeService(FakeEvents(get_error=_http_error(401)))
        cache = AuthStatusCache()

        with pytest.raises(AuthRequired):
            await _gateway(service, cache).get_event("x")

        assert cache.get("session-1").authenticated is False

    async def test_server_error_is_remote_failure(self):
        service = FakeService(FakeEvents(delete_error=_http_error(500)))

        with pytest.raises(RemoteUnavailable) as info:
            await _gateway(service).delete_event("x")

        assert info.value.status_code == 500

    async def test_create_sends_body(self):
        events = FakeEvents()

        event = await _gateway(FakeService(events)).create_event(
            EventSpec(title="Sync", start=at(15)))

        assert event.id == "created-1"
        assert event.end == at(15, 30)
        assert events.inserted[0]["reminders"]["overrides"][1] == {"method": "popup", "minutes": 30}

    async def test_free_busy(self):
        service = FakeService(FakeEvents(), freebusy={
            "calendars": {"primary": {"busy": [{"start": "x", "end": "y"}]}}})
        assert not await _gateway(service).query_free_busy(at(9), at(10))

    async def test_without_configuration_auth_is_required(self, monkeypatch):
        monkeypatch.setattr("calendar_assistant.gcal.ENABLE_GCAL", False)
        gateway = GoogleCalendarGateway("session-1", timezone_name="UTC")

        with pytest.raises(AuthRequired):
            await gateway.list_events(at(0), at(23))
