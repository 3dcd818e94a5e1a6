from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import pathlib
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, TypeVar
from zoneinfo import ZoneInfo

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request as GoogleRequest
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .config import (
    DEFAULT_TIMEZONE,
    ENABLE_GCAL,
    GCAL_SCOPES,
    GOOGLE_CALENDAR_ID,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
    GOOGLE_TOKEN_DIR,
)
from .errors import AssistantError, AuthRequired, RemoteUnavailable
from .gateway import CalendarGateway
from .intervals import minutes_between
from .models import CalendarEvent, EventSpec, EventUpdate
from .state import AuthStatusCache
from .utils import _log_debug

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_REMINDERS: Dict[str, Any] = {
    "useDefault": False,
    "overrides": [
        {"method": "email", "minutes": 24 * 60},
        {"method": "popup", "minutes": 30},
    ],
}


# -------------------------
# Token storage
# -------------------------
def is_gcal_configured() -> bool:
  return bool(ENABLE_GCAL and GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET
              and GOOGLE_REDIRECT_URI)


def _session_key(session_id: str) -> str:
  return hashlib.sha256(session_id.encode("utf-8")).hexdigest()


def _session_token_path(session_id: str) -> pathlib.Path:
  return GOOGLE_TOKEN_DIR / f"token_{_session_key(session_id)}.json"


def load_gcal_token_for_session(session_id: Optional[str]) -> Optional[Dict[str, Any]]:
  if not session_id:
    return None
  path = _session_token_path(session_id)
  if not path.exists():
    return None
  try:
    with path.open("r", encoding="utf-8") as f:
      return json.load(f)
  except (OSError, ValueError) as exc:
    _log_debug(f"[GCAL] token load failed: {exc}")
    return None


def save_gcal_token_for_session(session_id: str, data: Dict[str, Any]) -> None:
  if not session_id:
    return
  GOOGLE_TOKEN_DIR.mkdir(parents=True, exist_ok=True)
  path = _session_token_path(session_id)
  path.write_text(json.dumps(data, ensure_ascii=False, indent=2),
                  encoding="utf-8")


def clear_gcal_token_for_session(session_id: Optional[str]) -> None:
  if not session_id:
    return
  path = _session_token_path(session_id)
  if path.exists():
    path.unlink()


def has_gcal_token(session_id: Optional[str]) -> bool:
  return is_gcal_configured() and load_gcal_token_for_session(session_id) is not None


# -------------------------
# Error mapping
# -------------------------
def map_google_error(exc: Exception) -> AssistantError:
  if isinstance(exc, AssistantError):
    return exc
  if isinstance(exc, RefreshError):
    return AuthRequired(f"Google credential refresh failed: {exc}")
  if isinstance(exc, HttpError):
    status = getattr(exc.resp, "status", None)
    try:
      status = int(status) if status is not None else None
    except (TypeError, ValueError):
      status = None
    if status == 401:
      return AuthRequired("Google rejected the calendar credential.")
    return RemoteUnavailable(str(exc), status_code=status)
  return RemoteUnavailable(str(exc) or exc.__class__.__name__)


def _http_status(exc: HttpError) -> Optional[int]:
  try:
    return int(getattr(exc.resp, "status", None))
  except (TypeError, ValueError):
    return None


# -------------------------
# Conversion
# -------------------------
def _parse_google_time(obj: Dict[str, Any], timezone_name: str) -> Optional[datetime]:
  if not isinstance(obj, dict):
    return None
  dt_value = obj.get("dateTime")
  if isinstance(dt_value, str):
    try:
      return datetime.fromisoformat(dt_value.replace("Z", "+00:00"))
    except ValueError:
      return None
  date_value = obj.get("date")
  if isinstance(date_value, str):
    tz_name = obj.get("timeZone") or timezone_name
    try:
      parsed = datetime.strptime(date_value, "%Y-%m-%d")
    except ValueError:
      return None
    return parsed.replace(tzinfo=ZoneInfo(tz_name))
  return None


def event_from_google(raw: Dict[str, Any],
                      timezone_name: str = DEFAULT_TIMEZONE) -> Optional[CalendarEvent]:
  start = _parse_google_time(raw.get("start") or {}, timezone_name)
  end = _parse_google_time(raw.get("end") or {}, timezone_name)
  if start is None:
    return None
  if end is None or end <= start:
    end = start + timedelta(hours=1)

  attendees: List[str] = []
  for item in raw.get("attendees") or []:
    if not isinstance(item, dict):
      continue
    email = item.get("email")
    if isinstance(email, str) and email.strip():
      attendees.append(email.strip())

  recurrence = raw.get("recurrence")
  tz_value = (raw.get("start") or {}).get("timeZone")
  return CalendarEvent(
      id=str(raw.get("id") or ""),
      title=raw.get("summary") or "(No title)",
      start=start,
      end=end,
      location=raw.get("location"),
      description=raw.get("description"),
      attendees=attendees,
      recurring=bool(raw.get("recurringEventId") or recurrence),
      recurring_event_id=raw.get("recurringEventId"),
      recurrence=recurrence if isinstance(recurrence, list) else None,
      timezone=tz_value if isinstance(tz_value, str) else None,
  )


def _rrule_line(rule: str) -> str:
  value = rule.strip()
  if value.upper().startswith("RRULE:"):
    value = value[len("RRULE:"):]
  return f"RRULE:{value}"


def _time_body(value: datetime, timezone_name: str) -> Dict[str, str]:
  return {"dateTime": value.isoformat(), "timeZone": timezone_name}


def build_event_body(spec: EventSpec, timezone_name: str) -> Dict[str, Any]:
  tz_value = spec.timezone or timezone_name
  body: Dict[str, Any] = {
      "summary": spec.title,
      "start": _time_body(spec.start, tz_value),
      "end": _time_body(spec.end, tz_value),
      "reminders": DEFAULT_REMINDERS,
      "transparency": "opaque",
  }
  if spec.description:
    body["description"] = spec.description
  if spec.location:
    body["location"] = spec.location
  if spec.attendees:
    body["attendees"] = [{"email": email} for email in spec.attendees]
  if spec.recurrence:
    body["recurrence"] = [_rrule_line(spec.recurrence)]
  return body


def build_patch_body(current: CalendarEvent,
                     updates: EventUpdate,
                     timezone_name: str) -> Dict[str, Any]:
  tz_value = updates.timezone or current.timezone or timezone_name
  body: Dict[str, Any] = {}
  if updates.title is not None:
    body["summary"] = updates.title
  if updates.description is not None:
    body["description"] = updates.description
  if updates.location is not None:
    body["location"] = updates.location
  if updates.attendees is not None:
    body["attendees"] = [{"email": email} for email in updates.attendees]
  if updates.recurrence is not None:
    body["recurrence"] = [_rrule_line(updates.recurrence)]
  if updates.changes_time():
    start = updates.start or current.start
    duration = updates.duration_minutes or minutes_between(current.start,
                                                           current.end)
    body["start"] = _time_body(start, tz_value)
    body["end"] = _time_body(start + timedelta(minutes=duration), tz_value)
  return body


# -------------------------
# Gateway
# -------------------------
class GoogleCalendarGateway(CalendarGateway):
  """Google Calendar v3 behind the gateway contract.

  The discovery client is blocking, so every request runs in a worker
  thread. Auth outcomes are written to the shared auth status cache.
  """

  def __init__(self,
               session_id: str,
               auth_cache: Optional[AuthStatusCache] = None,
               calendar_id: Optional[str] = None,
               timezone_name: str = DEFAULT_TIMEZONE,
               service_factory: Optional[Callable[[Credentials], Any]] = None) -> None:
    self.session_id = session_id
    self.auth_cache = auth_cache
    self.calendar_id = calendar_id or GOOGLE_CALENDAR_ID
    self.timezone_name = timezone_name
    self._service_factory = service_factory or (
        lambda creds: build("calendar", "v3", credentials=creds,
                            cache_discovery=False))
    self._service: Any = None

  def _credentials(self) -> Credentials:
    if not is_gcal_configured():
      raise AuthRequired("Google Calendar is not configured.")
    token_data = load_gcal_token_for_session(self.session_id)
    if not token_data:
      raise AuthRequired("Google OAuth token not found. Sign in again.")

    creds = Credentials.from_authorized_user_info(token_data, GCAL_SCOPES)
    if creds.expired and creds.refresh_token:
      creds.refresh(GoogleRequest())
      save_gcal_token_for_session(self.session_id, json.loads(creds.to_json()))
    elif not creds.valid:
      raise AuthRequired("Google OAuth token expired and cannot be refreshed.")
    return creds

  def _get_service(self) -> Any:
    if self._service is None:
      self._service = self._service_factory(self._credentials())
    return self._service

  def _record(self, authenticated: bool, error: Optional[str] = None) -> None:
    if self.auth_cache is not None:
      self.auth_cache.set(self.session_id, authenticated, error)

  async def _call(self, op: Callable[[Any], T]) -> T:

    def run() -> T:
      return op(self._get_service())

    try:
      result = await asyncio.to_thread(run)
    except (AssistantError, RefreshError, HttpError, TransportError,
            OSError) as exc:
      mapped = map_google_error(exc)
      if isinstance(mapped, AuthRequired):
        self._record(False, str(mapped))
        self._service = None
        if isinstance(exc, RefreshError):
          # Revoked refresh token; the stored copy can never work again.
          clear_gcal_token_for_session(self.session_id)
      else:
        logger.warning("Google Calendar call failed: %s", mapped)
      if mapped is exc:
        raise
      raise mapped from exc
    self._record(True)
    return result

  async def list_events(self, range_start: datetime,
                        range_end: datetime) -> List[CalendarEvent]:

    def op(service) -> List[Dict[str, Any]]:
      items: List[Dict[str, Any]] = []
      page_token: Optional[str] = None
      while True:
        response = service.events().list(
            calendarId=self.calendar_id,
            timeMin=range_start.isoformat(),
            timeMax=range_end.isoformat(),
            singleEvents=True,
            orderBy="startTime",
            pageToken=page_token,
        ).execute()
        batch = response.get("items", [])
        if isinstance(batch, list):
          items.extend(batch)
        page_token = response.get("nextPageToken")
        if not page_token:
          return items

    raw_items = await self._call(op)
    events: List[CalendarEvent] = []
    for raw in raw_items:
      if raw.get("status") == "cancelled":
        continue
      event = event_from_google(raw, self.timezone_name)
      if event is not None:
        events.append(event)
    return events

  async def get_event(self, event_id: str) -> Optional[CalendarEvent]:

    def op(service) -> Optional[Dict[str, Any]]:
      try:
        return service.events().get(calendarId=self.calendar_id,
                                    eventId=event_id).execute()
      except HttpError as exc:
        if _http_status(exc) in (404, 410):
          return None
        raise

    raw = await self._call(op)
    if not raw or raw.get("status") == "cancelled":
      return None
    return event_from_google(raw, self.timezone_name)

  async def create_event(self, spec: EventSpec) -> CalendarEvent:
    body = build_event_body(spec, self.timezone_name)
    created = await self._call(lambda service: service.events().insert(
        calendarId=self.calendar_id, body=body, sendUpdates="all").execute())
    event = event_from_google(created, self.timezone_name)
    if event is None:
      raise RemoteUnavailable("Google returned an event without a start time.")
    return event

  async def update_event(self, event_id: str,
                         updates: EventUpdate) -> CalendarEvent:
    current = await self.get_event(event_id)
    if current is None:
      raise RemoteUnavailable(f"Event {event_id} not found.", status_code=404)
    body = build_patch_body(current, updates, self.timezone_name)
    updated = await self._call(lambda service: service.events().patch(
        calendarId=self.calendar_id, eventId=event_id, body=body,
        sendUpdates="all").execute())
    event = event_from_google(updated, self.timezone_name)
    if event is None:
      raise RemoteUnavailable("Google returned an event without a start time.")
    return event

  async def delete_event(self, event_id: str) -> None:

    def op(service) -> None:
      try:
        service.events().delete(calendarId=self.calendar_id,
                                eventId=event_id,
                                sendUpdates="all").execute()
      except HttpError as exc:
        # Already gone counts as deleted.
        if _http_status(exc) not in (404, 410):
          raise

    await self._call(op)

  async def query_free_busy(self, start: datetime, end: datetime) -> bool:
    body = {
        "timeMin": start.isoformat(),
        "timeMax": end.isoformat(),
        "timeZone": self.timezone_name,
        "items": [{"id": self.calendar_id}],
    }
    response = await self._call(
        lambda service: service.freebusy().query(body=body).execute())
    calendar = (response.get("calendars") or {}).get(self.calendar_id) or {}
    errors = calendar.get("errors")
    if errors:
      raise RemoteUnavailable(f"Free/busy lookup failed: {errors}")
    busy = calendar.get("busy") or []
    return len(busy) == 0
