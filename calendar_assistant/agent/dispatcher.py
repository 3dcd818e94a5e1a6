from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from ..config import DEFAULT_EVENT_DURATION_MINUTES, DEFAULT_QUERY_WINDOW_MINUTES
from ..errors import AuthRequired, InvalidRequest, RemoteUnavailable
from ..models import (
    CalendarEvent,
    ConversationAction,
    EventSpec,
    EventUpdate,
    Intent,
    SchedulingResult,
)
from ..scheduler import ConflictAwareScheduler
from ..utils import format_date_time, format_time, format_time_range, now_in_timezone
from .intent_router import needs_clarification

logger = logging.getLogger(__name__)

TARGET_LOOKBACK_DAYS = 1
TARGET_LOOKAHEAD_DAYS = 30

# -------------------------
# Fixed prompt lists
# -------------------------
CREATE_SUGGESTIONS = [
    "Would you like to add attendees to this event?",
    "Do you want to make this a recurring event?",
]
QUERY_SUGGESTIONS = [
    "Would you like to see more details about any of these events?",
]
CREATE_FOLLOW_UPS = [
    "Would you like me to send a notification?",
]
UPDATE_FOLLOW_UPS = [
    "Do you want to notify the attendees about this change?",
]

GENERAL_REPLY = "I understand you want to chat. How can I help you with your calendar today?"
REAUTH_REPLY = ("I can't reach your calendar because the connection has expired. "
                "Please reconnect your Google Calendar and try again.")
REMOTE_FAILURE_REPLY = ("I'm sorry, I couldn't reach your calendar right now. "
                        "Please try again in a moment.")
NOT_FOUND_REPLY = "I couldn't find the event you mean. Which event should I {verb}?"


@dataclass
class DispatchResult:
  content: str
  intent: Intent
  action: Optional[ConversationAction] = None
  suggestions: List[str] = field(default_factory=list)
  follow_up_questions: List[str] = field(default_factory=list)
  needs_clarification: bool = False
  needs_reauth: bool = False
  scheduling: Optional[SchedulingResult] = None


def _event_details(event: Optional[CalendarEvent]) -> Dict[str, Any]:
  if event is None:
    return {}
  return {
      "eventId": event.id,
      "title": event.title,
      "startTime": event.start.isoformat(),
      "endTime": event.end.isoformat(),
  }


def _conflict_details(result: SchedulingResult) -> Dict[str, Any]:
  return {
      "available": result.available,
      "conflicts": [ev.id for ev in result.conflicts],
      "alternatives": [alt.isoformat() for alt in result.alternatives],
  }


def clarification_request(intent: Intent) -> DispatchResult:
  entities = intent.entities
  content = "I'm not quite sure what you mean. "
  if entities.title and entities.start_time is None:
    content += f'When would you like to schedule "{entities.title}"?'
  elif entities.start_time is not None and not entities.title:
    content += f"What would you like to schedule for {format_date_time(entities.start_time)}?"
  else:
    content += "Could you please provide more details about what you'd like to do?"
  return DispatchResult(
      content=content,
      intent=intent.model_copy(update={"primary_intent": "clarify"}),
      needs_clarification=True,
  )


class ActionDispatcher:
  """Routes a recognized intent to the scheduler and words the reply.

  Scheduler and gateway errors stop here. They come back as a plain
  message, never as an exception.
  """

  def __init__(self,
               scheduler: ConflictAwareScheduler,
               default_duration_minutes: int = DEFAULT_EVENT_DURATION_MINUTES,
               clock: Optional[Callable[[str], datetime]] = None) -> None:
    self.scheduler = scheduler
    self.default_duration_minutes = default_duration_minutes
    self._clock = clock or now_in_timezone

  @property
  def timezone_name(self) -> str:
    return self.scheduler.settings.timezone

  def _now(self) -> datetime:
    return self._clock(self.timezone_name)

  def _local(self, value: datetime) -> datetime:
    return value.astimezone(self._now().tzinfo)

  async def dispatch(self, intent: Intent) -> DispatchResult:
    if needs_clarification(intent):
      return clarification_request(intent)

    kind = intent.primary_intent
    try:
      if kind == "create":
        return await self._handle_create(intent)
      if kind == "update":
        return await self._handle_update(intent)
      if kind == "delete":
        return await self._handle_delete(intent)
      if kind == "query":
        return await self._handle_query(intent)
    except AuthRequired as exc:
      logger.info("Calendar auth required: %s", exc)
      return DispatchResult(
          content=REAUTH_REPLY,
          intent=intent,
          action=ConversationAction(type=kind, status="failed",
                                    details={"error": "auth_required"}),
          needs_reauth=True,
      )
    except InvalidRequest as exc:
      return DispatchResult(
          content=f"I need a bit more information: {exc}",
          intent=intent.model_copy(update={"primary_intent": "clarify"}),
          needs_clarification=True,
      )
    except RemoteUnavailable as exc:
      logger.warning("Calendar unavailable during %s: %s", kind, exc)
      return DispatchResult(
          content=REMOTE_FAILURE_REPLY,
          intent=intent,
          action=ConversationAction(type=kind, status="failed",
                                    details={"error": str(exc)}),
      )
    return DispatchResult(content=GENERAL_REPLY, intent=intent)

  # -------------------------
  # create / update / delete
  # -------------------------
  def _disambiguation(self, intent: Intent, result: SchedulingResult) -> DispatchResult:
    return DispatchResult(
        content=result.message or "Should this apply to one occurrence or the whole series?",
        intent=intent,
        action=ConversationAction(type=intent.primary_intent,
                                  status="pending",
                                  event_id=result.event.id if result.event else None,
                                  details={"needsDisambiguation": True}),
        needs_clarification=True,
        scheduling=result,
    )

  def _conflict_reply(self, verb: str, title: str,
                      result: SchedulingResult) -> str:
    content = f'I\'m sorry, I couldn\'t {verb} "{title}" because the time slot is not available.'
    if result.alternatives:
      content += f" Would {format_date_time(self._local(result.alternatives[0]))} work instead?"
    return content

  async def _handle_create(self, intent: Intent) -> DispatchResult:
    entities = intent.entities
    if not entities.title or entities.start_time is None:
      return clarification_request(intent)

    spec = EventSpec(
        title=entities.title,
        start=entities.start_time,
        duration_minutes=entities.duration or self.default_duration_minutes,
        description=entities.description,
        location=entities.location,
        attendees=list(entities.attendees),
        recurrence=entities.recurrence,
        timezone=self.timezone_name,
        series_scope=entities.series_scope,
    )
    result = await self.scheduler.create_with_conflict_check(spec)
    if result.needs_disambiguation:
      return self._disambiguation(intent, result)
    if not result.success:
      return DispatchResult(
          content=self._conflict_reply("schedule", spec.title, result),
          intent=intent,
          action=ConversationAction(type="create", status="failed",
                                    details=_conflict_details(result)),
          scheduling=result,
      )

    event = result.event
    return DispatchResult(
        content=f'Great! I\'ve scheduled "{event.title}" for {format_date_time(self._local(event.start))}.',
        intent=intent,
        action=ConversationAction(type="create", status="success",
                                  event_id=event.id,
                                  details=_event_details(event)),
        suggestions=list(CREATE_SUGGESTIONS),
        follow_up_questions=list(CREATE_FOLLOW_UPS),
        scheduling=result,
    )

  async def _resolve_target(self, intent: Intent) -> Optional[str]:
    entities = intent.entities
    if entities.event_id:
      return entities.event_id
    refs = entities.references or {}
    if refs.get("lastEventId"):
      return str(refs["lastEventId"])
    title = refs.get("lastEventTitle") or entities.title
    if not title:
      return None
    now = self._now()
    matches = await self.scheduler.search_events(
        now - timedelta(days=TARGET_LOOKBACK_DAYS),
        now + timedelta(days=TARGET_LOOKAHEAD_DAYS),
        str(title))
    if not matches:
      return None
    upcoming = [ev for ev in matches if ev.end >= now]
    return (upcoming or matches)[0].id

  def _not_found(self, intent: Intent, verb: str) -> DispatchResult:
    return DispatchResult(
        content=NOT_FOUND_REPLY.format(verb=verb),
        intent=intent.model_copy(update={"primary_intent": "clarify"}),
        needs_clarification=True,
    )

  async def _handle_update(self, intent: Intent) -> DispatchResult:
    target_id = await self._resolve_target(intent)
    if not target_id:
      return self._not_found(intent, "change")

    entities = intent.entities
    updates = EventUpdate(
        start=entities.start_time,
        duration_minutes=entities.duration,
        description=entities.description,
        location=entities.location,
        attendees=list(entities.attendees) or None,
        recurrence=entities.recurrence,
        series_scope=entities.series_scope,
    )
    result = await self.scheduler.update_with_conflict_check(target_id, updates)
    if result.needs_disambiguation:
      return self._disambiguation(intent, result)
    if not result.success:
      title = result.event.title if result.event else (entities.title or "the event")
      return DispatchResult(
          content=self._conflict_reply("move", title, result),
          intent=intent,
          action=ConversationAction(type="update", status="failed",
                                    event_id=target_id,
                                    details=_conflict_details(result)),
          scheduling=result,
      )
    return DispatchResult(
        content="I've updated the event as requested.",
        intent=intent,
        action=ConversationAction(type="update", status="success",
                                  event_id=result.event.id if result.event else target_id,
                                  details=_event_details(result.event)),
        follow_up_questions=list(UPDATE_FOLLOW_UPS),
        scheduling=result,
    )

  async def _handle_delete(self, intent: Intent) -> DispatchResult:
    target_id = await self._resolve_target(intent)
    if not target_id:
      return self._not_found(intent, "cancel")
    result = await self.scheduler.delete_event(target_id,
                                               intent.entities.series_scope)
    if result.needs_disambiguation:
      return self._disambiguation(intent, result)
    return DispatchResult(
        content="I've canceled the event as requested.",
        intent=intent,
        action=ConversationAction(type="delete", status="success",
                                  details={"deleted": True, "eventId": target_id}),
        scheduling=result,
    )

  # -------------------------
  # query
  # -------------------------
  async def _handle_query(self, intent: Intent) -> DispatchResult:
    if intent.sub_intent == "availability":
      return await self._handle_availability(intent)

    entities = intent.entities
    start = entities.start_time or self._now()
    if entities.end_time is not None and entities.end_time > start:
      end = entities.end_time
    else:
      end = start + timedelta(minutes=entities.duration or DEFAULT_QUERY_WINDOW_MINUTES)
    events = await self.scheduler.search_events(start, end, entities.title)
    action = ConversationAction(type="query", status="success",
                                details={"events": [_event_details(ev) for ev in events]})
    if not events:
      return DispatchResult(content="I don't see any events matching your query.",
                            intent=intent, action=action)
    listing = "\n".join(
        f"- {ev.title} at {format_date_time(self._local(ev.start))}" for ev in events)
    return DispatchResult(content=f"Here's what I found:\n{listing}",
                          intent=intent,
                          action=action,
                          suggestions=list(QUERY_SUGGESTIONS))

  async def _handle_availability(self, intent: Intent) -> DispatchResult:
    entities = intent.entities
    start = entities.start_time or self._now()
    end = entities.end_time or start + timedelta(minutes=DEFAULT_QUERY_WINDOW_MINUTES)
    range_text = format_time_range(self._local(start), self._local(end))

    available = await self.scheduler.check_availability(start, end)
    if available:
      return DispatchResult(
          content=f"You're available {range_text}. No events scheduled during this time.",
          intent=intent,
          action=ConversationAction(type="query", status="success",
                                    details={"available": True, "events": []}),
      )

    events = await self.scheduler.list_events(start, end)
    details = {"available": False, "events": [_event_details(ev) for ev in events]}
    if not events:
      content = f"You're not available {range_text}."
    else:
      summaries = ", ".join(
          f"{ev.title} at {format_time(self._local(ev.start))}" for ev in events)
      plural = "s" if len(events) > 1 else ""
      content = f"You have {len(events)} event{plural} {range_text}: {summaries}."
    return DispatchResult(
        content=content,
        intent=intent,
        action=ConversationAction(type="query", status="success", details=details),
        suggestions=list(QUERY_SUGGESTIONS) if events else [],
    )
