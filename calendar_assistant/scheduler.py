from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from .config import SchedulerSettings, default_scheduler_settings
from .errors import InvalidRequest
from .gateway import CalendarGateway
from .intervals import minutes_between, overlaps, step_forward, within_business_hours
from .models import (
    CalendarEvent,
    ConflictReport,
    EventSpec,
    EventUpdate,
    SchedulingRequest,
    SchedulingResult,
)
from .utils import ensure_aware

logger = logging.getLogger(__name__)

DISAMBIGUATION_MESSAGE = (
    "This is a recurring event. Should I change just this occurrence or the "
    "whole series?")
CREATE_DISAMBIGUATION_MESSAGE = (
    "That sounds like a repeating event. Should I set up the whole series, or "
    "just a single event at that time?")


class ConflictAwareScheduler:
  """Checks a requested interval against the calendar before writing it.

  Every decision is read-then-write: the conflict check and the following
  create/update are separate gateway calls. A writer that lands between the
  two can still double-book the slot. Callers get no transactional
  guarantee, and creates are never retried here.
  """

  def __init__(self,
               gateway: CalendarGateway,
               settings: Optional[SchedulerSettings] = None) -> None:
    self.gateway = gateway
    self.settings = settings or default_scheduler_settings()

  def _aware(self, value: datetime) -> datetime:
    return ensure_aware(value, self.settings.timezone)

  # -------------------------
  # Reads
  # -------------------------
  async def check_availability(self, start: datetime, end: datetime) -> bool:
    start, end = self._aware(start), self._aware(end)
    if end <= start:
      raise InvalidRequest("Availability window must end after it starts.")
    return await self.gateway.query_free_busy(start, end)

  async def find_conflicts(self,
                           start: datetime,
                           end: datetime,
                           exclude_id: Optional[str] = None) -> List[CalendarEvent]:
    start, end = self._aware(start), self._aware(end)
    skew = timedelta(minutes=self.settings.clock_skew_minutes)
    events = await self.gateway.list_events(start - skew, end + skew)
    conflicts: List[CalendarEvent] = []
    for ev in events:
      if exclude_id and exclude_id in (ev.id, ev.recurring_event_id):
        continue
      if overlaps(ev.start, ev.end, start, end):
        conflicts.append(ev)
    return conflicts

  async def check_request(self, request: SchedulingRequest) -> ConflictReport:
    self._validate_duration(request.duration_minutes)
    start = self._aware(request.desired_start)
    end = self._aware(request.desired_end)
    conflicts = await self.find_conflicts(start, end, request.exclude_event_id)
    if not conflicts:
      return ConflictReport(available=True)
    alternatives = await self.propose_alternatives(start,
                                                   request.duration_minutes)
    return ConflictReport(available=False,
                          conflicts=conflicts,
                          alternatives=alternatives)

  async def propose_alternatives(self,
                                 preferred_start: datetime,
                                 duration_minutes: int,
                                 count: Optional[int] = None) -> List[datetime]:
    """Walk forward from preferred_start one step at a time.

    Candidates outside business hours are skipped without a calendar read;
    the rest get one sequential conflict check each. Stops after ``count``
    hits or when the horizon runs out, returning what it found.
    """
    self._validate_duration(duration_minutes)
    if count is None:
      count = self.settings.max_alternatives
    if count <= 0:
      return []

    s = self.settings
    candidate = self._aware(preferred_start)
    horizon_end = candidate + timedelta(days=s.horizon_days)
    duration = timedelta(minutes=duration_minutes)
    found: List[datetime] = []

    while len(found) < count and candidate < horizon_end:
      candidate_end = candidate + duration
      if within_business_hours(candidate, candidate_end,
                               s.business_start_hour, s.business_end_hour,
                               s.timezone, s.working_days):
        conflicts = await self.find_conflicts(candidate, candidate_end)
        if not conflicts:
          found.append(candidate)
      candidate = step_forward(candidate, s.step_minutes)

    return found

  async def list_events(self, start: datetime,
                        end: datetime) -> List[CalendarEvent]:
    start, end = self._aware(start), self._aware(end)
    events = await self.gateway.list_events(start, end)
    return sorted(events, key=lambda ev: ev.start)

  async def search_events(self,
                          start: datetime,
                          end: datetime,
                          title: Optional[str] = None) -> List[CalendarEvent]:
    events = await self.list_events(start, end)
    if not title:
      return events
    needle = title.strip().lower()
    return [ev for ev in events if needle in (ev.title or "").lower()]

  # -------------------------
  # Writes
  # -------------------------
  async def create_with_conflict_check(self, spec: EventSpec) -> SchedulingResult:
    self._validate_spec(spec)
    if spec.is_recurring and spec.series_scope is None:
      return SchedulingResult(success=False,
                              needs_disambiguation=True,
                              message=CREATE_DISAMBIGUATION_MESSAGE)

    spec = spec.model_copy(update={"start": self._aware(spec.start)})
    if spec.series_scope == "instance":
      spec = spec.model_copy(update={"recurrence": None})

    # A recurring series is checked against its first occurrence only.
    conflicts = await self.find_conflicts(spec.start, spec.end)
    if conflicts:
      alternatives = await self.propose_alternatives(spec.start,
                                                     spec.duration_minutes)
      logger.info("Create blocked by %d conflict(s); %d alternative(s)",
                  len(conflicts), len(alternatives))
      return SchedulingResult(success=False,
                              available=False,
                              conflicts=conflicts,
                              alternatives=alternatives)

    event = await self.gateway.create_event(spec)
    return SchedulingResult(success=True, available=True, event=event)

  async def update_with_conflict_check(self,
                                       event_id: str,
                                       updates: EventUpdate) -> SchedulingResult:
    if updates.duration_minutes is not None:
      self._validate_duration(updates.duration_minutes)
    current = await self._require_event(event_id)
    if current.recurring and updates.series_scope is None:
      return SchedulingResult(success=False,
                              needs_disambiguation=True,
                              event=current,
                              message=DISAMBIGUATION_MESSAGE)
    target_id = self._target_id(current, updates.series_scope)

    if updates.start is not None:
      updates = updates.model_copy(update={"start": self._aware(updates.start)})
    if updates.changes_time():
      # Conflicts are checked for the occurrence the user asked to move.
      start = updates.start or current.start
      duration = updates.duration_minutes or minutes_between(current.start,
                                                             current.end)
      self._validate_duration(duration)
      end = start + timedelta(minutes=duration)
      conflicts = await self.find_conflicts(start, end, exclude_id=target_id)
      if conflicts:
        alternatives = await self.propose_alternatives(start, duration)
        return SchedulingResult(success=False,
                                available=False,
                                event=current,
                                conflicts=conflicts,
                                alternatives=alternatives)

    if target_id != current.id and updates.start is not None:
      updates = await self._shift_series_start(target_id, current, updates)
    event = await self.gateway.update_event(target_id, updates)
    return SchedulingResult(success=True, available=True, event=event)

  async def delete_event(self,
                         event_id: str,
                         series_scope: Optional[str] = None) -> SchedulingResult:
    current = await self._require_event(event_id)
    if current.recurring and series_scope is None:
      return SchedulingResult(success=False,
                              needs_disambiguation=True,
                              event=current,
                              message=DISAMBIGUATION_MESSAGE)
    await self.gateway.delete_event(self._target_id(current, series_scope))
    return SchedulingResult(success=True, event=current)

  # -------------------------
  # Helpers
  # -------------------------
  async def _require_event(self, event_id: str) -> CalendarEvent:
    if not event_id:
      raise InvalidRequest("An event id is required.")
    current = await self.gateway.get_event(event_id)
    if current is None:
      raise InvalidRequest(f"Event {event_id} was not found.")
    return current

  async def _shift_series_start(self, series_id: str, occurrence: CalendarEvent,
                                updates: EventUpdate) -> EventUpdate:
    """Move the series by the same offset as the chosen occurrence.

    The master keeps its own first date, so earlier occurrences stay put.
    """
    master = await self._require_event(series_id)
    offset = updates.start - self._aware(occurrence.start)
    return updates.model_copy(update={"start": self._aware(master.start) + offset})

  @staticmethod
  def _target_id(current: CalendarEvent, series_scope: Optional[str]) -> str:
    if series_scope == "series" and current.recurring_event_id:
      return current.recurring_event_id
    return current.id

  @staticmethod
  def _validate_duration(duration_minutes: int) -> None:
    if duration_minutes is None or duration_minutes <= 0:
      raise InvalidRequest("Duration must be a positive number of minutes.")

  def _validate_spec(self, spec: EventSpec) -> None:
    if not (spec.title or "").strip():
      raise InvalidRequest("An event title is required.")
    self._validate_duration(spec.duration_minutes)
