from __future__ import annotations

import json
import pathlib
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import DEFAULT_TIMEZONE
from .errors import InvalidRequest, RemoteUnavailable
from .gateway import CalendarGateway
from .intervals import minutes_between, overlaps
from .models import CalendarEvent, EventSpec, EventUpdate
from .recurrence import expand_occurrences, parse_rrule
from .utils import _log_debug, ensure_aware


def _instance_stamp(start: datetime) -> str:
  return start.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _split_instance_id(event_id: str) -> Tuple[str, Optional[datetime]]:
  if "_" not in event_id:
    return (event_id, None)
  series_id, stamp = event_id.rsplit("_", 1)
  try:
    start = datetime.strptime(stamp, "%Y%m%dT%H%M%SZ").replace(tzinfo=timezone.utc)
  except ValueError:
    return (event_id, None)
  return (series_id, start)


class LocalCalendarGateway(CalendarGateway):
  """In-process calendar of record.

  Used when Google Calendar is not connected. Recurring series are stored
  once and expanded into instances on read, with instance ids shaped like
  Google's (``<series>_<UTC stamp>``).
  """

  def __init__(self,
               persist_path: Optional[pathlib.Path] = None,
               timezone_name: str = DEFAULT_TIMEZONE) -> None:
    self.persist_path = persist_path
    self.timezone_name = timezone_name
    self._events: Dict[str, CalendarEvent] = {}
    self._cancelled: Dict[str, Set[str]] = {}
    if persist_path is not None:
      self._load_from_disk()

  # -------------------------
  # persistence
  # -------------------------
  def _serialize_payload(self) -> Dict[str, Any]:
    return {
        "version": 1,
        "events": [ev.model_dump(mode="json") for ev in self._events.values()],
        "cancelled": {k: sorted(v) for k, v in self._cancelled.items() if v},
    }

  def _save_to_disk(self) -> None:
    if self.persist_path is None:
      return
    try:
      payload = self._serialize_payload()
      self.persist_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2),
                                   encoding="utf-8")
    except (OSError, TypeError, ValueError) as exc:
      _log_debug(f"[EVENT STORE] save failed: {exc}")

  def _load_from_disk(self) -> None:
    self._events.clear()
    self._cancelled.clear()
    if self.persist_path is None or not self.persist_path.exists():
      return
    try:
      data = json.loads(self.persist_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
      _log_debug(f"[EVENT STORE] load failed: {exc}")
      return
    if not isinstance(data, dict):
      return
    for raw in data.get("events") or []:
      if not isinstance(raw, dict):
        continue
      try:
        event = CalendarEvent.model_validate(raw)
      except ValueError as exc:
        _log_debug(f"[EVENT STORE] skipped event: {exc}")
        continue
      self._events[event.id] = event
    cancelled = data.get("cancelled") or {}
    if isinstance(cancelled, dict):
      for series_id, ids in cancelled.items():
        if isinstance(ids, list):
          self._cancelled[series_id] = {str(i) for i in ids}

  # -------------------------
  # expansion
  # -------------------------
  def _instance(self, master: CalendarEvent, start: datetime) -> CalendarEvent:
    duration = master.end - master.start
    local_start = start.astimezone(master.start.tzinfo)
    return master.model_copy(update={
        "id": f"{master.id}_{_instance_stamp(local_start)}",
        "start": local_start,
        "end": local_start + duration,
        "recurring_event_id": master.id,
        "recurrence": None,
    })

  def _expand(self, master: CalendarEvent, range_start: datetime,
              range_end: datetime) -> List[CalendarEvent]:
    rule = parse_rrule((master.recurrence or [None])[0])
    if rule is None:
      return [master] if overlaps(master.start, master.end, range_start,
                                  range_end) else []
    cancelled = self._cancelled.get(master.id, set())
    starts = expand_occurrences(master.start, rule, range_start, range_end,
                                master.end - master.start)
    instances = [self._instance(master, start) for start in starts]
    return [inst for inst in instances if inst.id not in cancelled]

  def _aware(self, value: datetime) -> datetime:
    return ensure_aware(value, self.timezone_name)

  # -------------------------
  # gateway contract
  # -------------------------
  async def list_events(self, range_start: datetime,
                        range_end: datetime) -> List[CalendarEvent]:
    range_start, range_end = self._aware(range_start), self._aware(range_end)
    if range_end < range_start:
      raise RemoteUnavailable("Invalid time range.", status_code=400)
    results: List[CalendarEvent] = []
    for event in self._events.values():
      if event.recurrence:
        results.extend(self._expand(event, range_start, range_end))
      elif overlaps(event.start, event.end, range_start, range_end):
        results.append(event.model_copy(deep=True))
    results.sort(key=lambda ev: ev.start)
    return results

  async def get_event(self, event_id: str) -> Optional[CalendarEvent]:
    stored = self._events.get(event_id)
    if stored is not None:
      return stored.model_copy(deep=True)
    series_id, start = _split_instance_id(event_id)
    master = self._events.get(series_id)
    if master is None or start is None or not master.recurrence:
      return None
    if event_id in self._cancelled.get(series_id, set()):
      return None
    candidates = self._expand(master, start, start + timedelta(seconds=1))
    for inst in candidates:
      if inst.id == event_id:
        return inst
    return None

  async def create_event(self, spec: EventSpec) -> CalendarEvent:
    recurrence: Optional[List[str]] = None
    if spec.recurrence:
      if parse_rrule(spec.recurrence) is None:
        raise InvalidRequest(f"Unsupported recurrence rule: {spec.recurrence}")
      rule = spec.recurrence.strip()
      if not rule.upper().startswith("RRULE:"):
        rule = f"RRULE:{rule}"
      recurrence = [rule]
    start = self._aware(spec.start)
    event = CalendarEvent(
        id=uuid.uuid4().hex,
        title=spec.title,
        start=start,
        end=start + timedelta(minutes=spec.duration_minutes),
        location=spec.location,
        description=spec.description,
        attendees=list(spec.attendees),
        recurring=recurrence is not None,
        recurrence=recurrence,
        timezone=spec.timezone or self.timezone_name,
    )
    self._events[event.id] = event
    self._save_to_disk()
    return event.model_copy(deep=True)

  def _apply_updates(self, current: CalendarEvent,
                     updates: EventUpdate) -> Dict[str, Any]:
    patch: Dict[str, Any] = {}
    for name in ("title", "description", "location", "timezone"):
      value = getattr(updates, name)
      if value is not None:
        patch[name] = value
    if updates.attendees is not None:
      patch["attendees"] = list(updates.attendees)
    if updates.changes_time():
      start = self._aware(updates.start or current.start)
      duration = updates.duration_minutes or minutes_between(current.start,
                                                             current.end)
      patch["start"] = start
      patch["end"] = start + timedelta(minutes=duration)
    return patch

  async def update_event(self, event_id: str,
                         updates: EventUpdate) -> CalendarEvent:
    stored = self._events.get(event_id)
    if stored is not None:
      patch = self._apply_updates(stored, updates)
      if updates.recurrence is not None and stored.recurrence:
        patch["recurrence"] = [f"RRULE:{updates.recurrence.removeprefix('RRULE:')}"]
      updated = stored.model_copy(update=patch)
      self._events[event_id] = updated
      self._save_to_disk()
      return updated.model_copy(deep=True)

    instance = await self.get_event(event_id)
    if instance is None:
      raise RemoteUnavailable(f"Event {event_id} not found.", status_code=404)
    # An edited occurrence becomes a standalone exception of its series.
    series_id = instance.recurring_event_id or ""
    self._cancelled.setdefault(series_id, set()).add(event_id)
    override = instance.model_copy(update=self._apply_updates(instance, updates))
    override = override.model_copy(update={"id": uuid.uuid4().hex})
    self._events[override.id] = override
    self._save_to_disk()
    return override.model_copy(deep=True)

  async def delete_event(self, event_id: str) -> None:
    if self._events.pop(event_id, None) is not None:
      self._cancelled.pop(event_id, None)
      self._save_to_disk()
      return
    series_id, start = _split_instance_id(event_id)
    if start is not None and series_id in self._events:
      self._cancelled.setdefault(series_id, set()).add(event_id)
      self._save_to_disk()

  async def query_free_busy(self, start: datetime, end: datetime) -> bool:
    start, end = self._aware(start), self._aware(end)
    events = await self.list_events(start, end)
    return not any(overlaps(ev.start, ev.end, start, end) for ev in events)
