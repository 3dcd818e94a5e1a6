from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..config import (
    GOAL_CONFIDENCE_THRESHOLD,
    MAX_HISTORY_TURNS,
    MAX_REFERENCED_EVENTS,
    SESSION_IDLE_EXPIRY_HOURS,
)
from ..models import (
    ConversationAction,
    ConversationContext,
    ConversationSession,
    Intent,
    Turn,
    UserPreferences,
)
from ..store import ConversationStore
from ..utils import now_in_timezone

logger = logging.getLogger(__name__)

CALENDAR_MANAGEMENT_GOAL = "calendar_management"


def _touch(context: ConversationContext, key: str, value) -> None:
  # Re-insert so the key moves to the end (most recent).
  context.active_entities.pop(key, None)
  context.active_entities[key] = value


class ConversationContextManager:
  """Owns session lookup, turn history and context merging for a user."""

  def __init__(self,
               store: ConversationStore,
               clock: Optional[Callable[[], datetime]] = None,
               idle_expiry: timedelta = timedelta(hours=SESSION_IDLE_EXPIRY_HOURS),
               max_referenced_events: int = MAX_REFERENCED_EVENTS,
               goal_threshold: float = GOAL_CONFIDENCE_THRESHOLD) -> None:
    self.store = store
    self._clock = clock or now_in_timezone
    self.idle_expiry = idle_expiry
    self.max_referenced_events = max_referenced_events
    self.goal_threshold = goal_threshold

  def now(self) -> datetime:
    return self._clock()

  def is_expired(self, session: ConversationSession,
                 now: Optional[datetime] = None) -> bool:
    now = now or self._clock()
    return (now - session.last_activity_time) > self.idle_expiry

  async def get_or_create(self,
                          user_id: str,
                          preferences: Optional[UserPreferences] = None,
                          timezone_name: Optional[str] = None) -> ConversationSession:
    latest = await self.store.find_latest_active(user_id)
    if latest is not None and not self.is_expired(latest):
      return latest
    if latest is not None:
      logger.info("Conversation %s idle past expiry; starting a new one",
                  latest.id)
      await self.store.deactivate(latest.id)

    prefs = preferences or UserPreferences()
    context = ConversationContext(
        preferences=prefs.model_dump(),
        environment={"timezone": timezone_name or prefs.timezone},
    )
    return await self.store.create(user_id, context)

  async def get(self, conversation_id: str,
                user_id: str) -> Optional[ConversationSession]:
    return await self.store.find_by_id(conversation_id, user_id)

  async def save(self, session: ConversationSession) -> None:
    await self.store.save(session)

  def append_turn(self,
                  session: ConversationSession,
                  speaker: str,
                  content: str,
                  intent: Optional[Intent] = None,
                  action: Optional[ConversationAction] = None) -> Turn:
    now = self._clock()
    turn = Turn(speaker=speaker,
                content=content,
                timestamp=now,
                intent=intent,
                action=action)
    session.turns.append(turn)
    session.last_activity_time = now
    return turn

  @staticmethod
  def backfill_intent(turn: Turn, intent: Intent) -> None:
    if turn.intent is None:
      turn.intent = intent

  def history(self, session: ConversationSession,
              exclude_last: bool = False) -> List[Turn]:
    turns = session.turns[:-1] if exclude_last else session.turns
    return list(turns[-MAX_HISTORY_TURNS:])

  def update_context(self,
                     context: ConversationContext,
                     intent: Intent,
                     action: Optional[ConversationAction] = None) -> ConversationContext:
    entities = intent.entities
    if entities.title:
      _touch(context, "lastEventTitle", entities.title)
    if entities.start_time is not None:
      _touch(context, "lastEventTime", entities.start_time.isoformat())
    if action is not None and action.event_id:
      _touch(context, "lastEventId", action.event_id)
      context.referenced_events.append(action.event_id)
    if len(context.referenced_events) > self.max_referenced_events:
      context.referenced_events = context.referenced_events[-self.max_referenced_events:]

    if (intent.primary_intent == "create" and
        intent.confidence > self.goal_threshold and
        CALENDAR_MANAGEMENT_GOAL not in context.goals):
      context.goals.append(CALENDAR_MANAGEMENT_GOAL)
    return context
