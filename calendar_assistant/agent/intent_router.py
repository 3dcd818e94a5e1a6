from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..config import CLARIFY_CONFIDENCE_THRESHOLD, DEFAULT_QUERY_WINDOW_MINUTES
from ..intervals import minutes_between
from ..models import ConversationContext, Intent, IntentEntities, Turn
from ..utils import _log_debug, end_of_day, now_in_timezone, start_of_day
from .nlp import CommandParser
from .normalizer import coerce_datetime, normalize_input_as_text
from .schemas import ParseContext, ParsedCommand

logger = logging.getLogger(__name__)

AVAILABILITY_CONFIDENCE = 0.9
FAILED_PARSE_CONFIDENCE = 0.1

_AVAILABILITY_WORDS = ("availability", "available", "check my")
_CALENDAR_QUESTION_RE = re.compile(r"what['’]?s\s+(?:on|in)\s+(?:my\s+)?calendar", re.I)
_PRONOUN_RE = re.compile(r"\b(it|that|this|them|these|those)\b", re.I)
_AMPM_RE = re.compile(r"(\d{1,2})(?::(\d{1,2}))?\s*(am|pm)", re.I)
_RANGE_END_PREFIX_RE = re.compile(r"(?:\bto|\buntil|\btill|\bthrough|-)\s*$", re.I)


def needs_clarification(intent: Intent) -> bool:
  return intent.confidence < CLARIFY_CONFIDENCE_THRESHOLD


# -------------------------
# Availability phrases
# -------------------------
def is_availability_request(text: str) -> bool:
  lowered = (text or "").lower()
  if any(word in lowered for word in _AVAILABILITY_WORDS):
    return True
  return bool(_CALENDAR_QUESTION_RE.search(lowered))


def availability_window(text: str, now: datetime) -> Tuple[datetime, datetime]:
  """Window for an availability question; the first matching phrase wins."""
  lowered = (text or "").lower()
  if "today" in lowered:
    return now, end_of_day(now)
  if "tomorrow" in lowered:
    day = now + timedelta(days=1)
    return start_of_day(day), end_of_day(day)
  if "this week" in lowered:
    # Weeks run Sunday..Saturday here.
    days_to_saturday = (5 - now.weekday()) % 7
    return now, end_of_day(now + timedelta(days=days_to_saturday))
  if "next week" in lowered:
    monday = start_of_day(now + timedelta(days=7 - now.weekday()))
    return monday, end_of_day(monday + timedelta(days=6))
  if "afternoon" in lowered:
    return (now.replace(hour=12, minute=0, second=0, microsecond=0),
            now.replace(hour=18, minute=0, second=0, microsecond=0))
  if "morning" in lowered:
    return (now.replace(hour=8, minute=0, second=0, microsecond=0),
            now.replace(hour=12, minute=0, second=0, microsecond=0))
  if "evening" in lowered:
    return (now.replace(hour=18, minute=0, second=0, microsecond=0),
            now.replace(hour=22, minute=0, second=0, microsecond=0))
  return now, now + timedelta(minutes=DEFAULT_QUERY_WINDOW_MINUTES)


def availability_intent(text: str, now: datetime) -> Intent:
  start, end = availability_window(text, now)
  return Intent(
      primary_intent="query",
      sub_intent="availability",
      confidence=AVAILABILITY_CONFIDENCE,
      original_text=text,
      entities=IntentEntities(
          title="Availability Check",
          start_time=start,
          end_time=end,
          duration=minutes_between(start, end),
      ),
  )


# -------------------------
# Time-of-day correction
# -------------------------
def _explicit_clock_time(text: str) -> Optional[Tuple[int, int]]:
  for match in _AMPM_RE.finditer(text or ""):
    if _RANGE_END_PREFIX_RE.search(text[:match.start()]):
      continue
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    marker = match.group(3).lower()
    if hour > 12 or minute > 59:
      continue
    if marker == "pm" and hour < 12:
      hour += 12
    elif marker == "am" and hour == 12:
      hour = 0
    return hour, minute
  return None


def correct_time_of_day(start: datetime, text: str) -> datetime:
  """Snap start to the literal "h[:mm] am|pm" in text when they disagree."""
  explicit = _explicit_clock_time(text)
  if explicit is None:
    return start
  hour, minute = explicit
  if abs(start.hour - hour) > 1 or abs(start.minute - minute) > 5:
    _log_debug(f"[INTENT] time correction {start.hour}:{start.minute:02d} -> {hour}:{minute:02d}")
    return start.replace(hour=hour, minute=minute, second=0, microsecond=0)
  return start


# -------------------------
# References
# -------------------------
def resolve_references(text: str, context: ConversationContext) -> Dict[str, Any]:
  if not _PRONOUN_RE.search(text or ""):
    return {}
  if not context.active_entities:
    return {}
  key, value = list(context.active_entities.items())[-1]
  return {key: value}


def _history_messages(history: Sequence[Turn]) -> List[Dict[str, str]]:
  return [{"role": turn.speaker, "content": turn.content} for turn in history]


def intent_from_command(command: ParsedCommand, text: str,
                        timezone_name: str) -> Intent:
  start = coerce_datetime(command.start_time, timezone_name)
  end = coerce_datetime(command.end_time, timezone_name)
  duration = command.duration
  if duration is None and start is not None and end is not None and end > start:
    duration = minutes_between(start, end)
  return Intent(
      primary_intent=command.action,
      sub_intent=command.query_type,
      confidence=command.confidence,
      original_text=text,
      entities=IntentEntities(
          title=(command.title or "").strip() or None,
          start_time=start,
          end_time=end,
          duration=duration,
          description=command.description,
          location=command.location,
          attendees=list(command.attendees),
          recurrence=command.recurrence,
          event_id=command.event_id,
          series_scope=command.series_scope,
      ),
  )


class IntentRecognizer:
  """Free text plus conversation history to an Intent.

  Availability questions never reach the parser. Everything else goes
  through it, then gets its clock time checked against the literal text
  and any pronoun bound to the most recently touched entity.
  """

  def __init__(self, parser: CommandParser,
               clock: Optional[Callable[[str], datetime]] = None) -> None:
    self.parser = parser
    self._clock = clock or now_in_timezone

  async def parse(self,
                  text: str,
                  history: Sequence[Turn],
                  context: ConversationContext,
                  *,
                  user_id: str,
                  timezone_name: str,
                  conversation_id: Optional[str] = None) -> Intent:
    text = normalize_input_as_text(text)
    now = self._clock(timezone_name)

    if is_availability_request(text):
      return availability_intent(text, now)

    parse_context = ParseContext(
        user_id=user_id,
        conversation_id=conversation_id,
        timezone=timezone_name,
        now_iso=now.isoformat(timespec="seconds"),
        previous_messages=_history_messages(history),
        active_entities={k: str(v) for k, v in context.active_entities.items()},
    )
    try:
      command = await self.parser.parse_command(text, parse_context)
    except Exception:
      logger.exception("Intent recognition failed")
      return Intent(primary_intent="unknown",
                    confidence=FAILED_PARSE_CONFIDENCE,
                    original_text=text)

    intent = intent_from_command(command, text, timezone_name)
    if intent.entities.start_time is not None:
      corrected = correct_time_of_day(intent.entities.start_time, text)
      if corrected != intent.entities.start_time:
        intent.entities.start_time = corrected
        if intent.entities.end_time is not None and intent.entities.duration:
          intent.entities.end_time = corrected + timedelta(
              minutes=intent.entities.duration)
    intent.entities.references = resolve_references(text, context)
    _log_debug(f"[INTENT] {intent.primary_intent} conf={intent.confidence} refs={intent.entities.references}")
    return intent
