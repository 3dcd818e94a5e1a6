from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from ..config import AGENT_NLP_MODEL, NLP_MAX_COMPLETION_TOKENS
from ..utils import _log_debug
from .llm_provider import run_structured_completion
from .normalizer import coerce_datetime
from .schemas import ParseContext, ParsedCommand

REGEX_CONFIDENT = 0.65
REGEX_UNSURE = 0.4

# -------------------------
# LLM prompt
# -------------------------
PARSE_COMMAND_PROMPT = """You parse calendar requests into one JSON object. No prose.
Input:
{
  "text": string,
  "now": ISO datetime with offset (the user's current local time),
  "timezone": IANA name,
  "previous_messages": [{"role": "user"|"assistant", "content": string}],
  "active_entities": object
}

Output schema:
{
  "action": "create" | "update" | "delete" | "query" | "unknown",
  "query_type": string | null,
  "title": string | null,
  "start_time": "YYYY-MM-DDTHH:MM" | null,
  "end_time": "YYYY-MM-DDTHH:MM" | null,
  "duration": integer minutes | null,
  "description": string | null,
  "location": string | null,
  "attendees": [string],
  "recurrence": RRULE body like "FREQ=WEEKLY;BYDAY=MO,WE" | null,
  "event_id": string | null,
  "series_scope": "instance" | "series" | null,
  "confidence": number between 0 and 1
}

Rules:
- Resolve relative dates ("tomorrow", "next Friday") against "now".
- start_time and end_time are local wall-clock times in "timezone".
- If a time range is given, set both start_time and end_time and the duration between them.
- If no duration is given for a new event, leave duration null.
- series_scope is set only when the user says whether one occurrence or the whole series is meant.
- Use previous_messages to fill in details the user refers back to.
- confidence reflects how sure you are about action, title and time together.
- Small talk or anything that is not about the calendar is "unknown"."""


class CommandParser(Protocol):

  async def parse_command(self, text: str,
                          context: ParseContext) -> ParsedCommand:
    ...


# -------------------------
# Regex fallback
# -------------------------
_TITLE_RE = re.compile(r"\b(?:schedule|create|add|set up|book)\b\s+(.*)", re.I)
_TITLE_STOP_RE = re.compile(
    r"\s+(?:at|on|for|from|tomorrow|today|next|this)\b.*$", re.I)
_CLOCK = r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)?"
_RANGE_RE = re.compile(rf"\bfrom\s+{_CLOCK}\s*(?:to|-|until)\s*{_CLOCK}", re.I)
_AT_RE = re.compile(rf"\bat\s+{_CLOCK}", re.I)
_DURATION_RE = re.compile(
    r"\bfor\s+(\d+)\s*(hours?|hrs?|h|minutes?|mins?|m)\b", re.I)
_DELETE_RE = re.compile(r"\b(?:cancel|delete|remove|drop)\b", re.I)
_UPDATE_RE = re.compile(r"\b(?:move|reschedule|change|update|push|shift)\b", re.I)
_QUERY_RE = re.compile(
    r"\b(?:what|show|list|do i have|when is|find)\b", re.I)
_CREATE_RE = re.compile(r"\b(?:schedule|create|add|set up|book)\b", re.I)


def _to_24h(hour: int, minute: int, suffix: Optional[str],
            fallback_suffix: Optional[str] = None) -> Tuple[int, int]:
  marker = (suffix or fallback_suffix or "").lower()
  if marker == "pm" and hour < 12:
    hour += 12
  elif marker == "am" and hour == 12:
    hour = 0
  elif not marker and 1 <= hour <= 7:
    # Bare small hours read as afternoon ("at 3" means 15:00).
    hour += 12
  return hour, minute


def _infer_action(text: str) -> str:
  if _DELETE_RE.search(text):
    return "delete"
  if _UPDATE_RE.search(text):
    return "update"
  if _CREATE_RE.search(text):
    return "create"
  if _QUERY_RE.search(text):
    return "query"
  return "unknown"


def _extract_title(text: str) -> Optional[str]:
  match = _TITLE_RE.search(text)
  if not match:
    return None
  title = _TITLE_STOP_RE.sub("", match.group(1)).strip(" .,!?\"'")
  return title or None


def parse_with_regex(text: str, now: datetime) -> ParsedCommand:
  """Deterministic parser used when the LLM is unavailable."""
  lowered = text.lower()
  base_day = now
  if "tomorrow" in lowered:
    base_day = now + timedelta(days=1)

  start: Optional[datetime] = None
  end: Optional[datetime] = None
  duration: Optional[int] = None

  range_match = _RANGE_RE.search(text)
  at_match = _AT_RE.search(text)
  if range_match:
    h1, m1, s1, h2, m2, s2 = range_match.groups()
    end_hour, end_minute = _to_24h(int(h2), int(m2 or 0), s2, s1)
    start_hour, start_minute = _to_24h(int(h1), int(m1 or 0), s1, s2)
    if s1 is None and start_hour > end_hour:
      # "from 11 to 1pm" starts in the morning.
      start_hour, start_minute = _to_24h(int(h1), int(m1 or 0), "am")
    start = base_day.replace(hour=start_hour, minute=start_minute,
                             second=0, microsecond=0)
    end = base_day.replace(hour=end_hour % 24, minute=end_minute,
                           second=0, microsecond=0)
    if end <= start:
      end += timedelta(days=1)
    duration = int((end - start).total_seconds() // 60)
  elif at_match:
    hour, minute = _to_24h(int(at_match.group(1)), int(at_match.group(2) or 0),
                           at_match.group(3))
    start = base_day.replace(hour=hour % 24, minute=minute, second=0,
                             microsecond=0)

  duration_match = _DURATION_RE.search(text)
  if duration_match and duration is None:
    amount = int(duration_match.group(1))
    unit = duration_match.group(2).lower()
    duration = amount * 60 if unit.startswith("h") else amount

  title = _extract_title(text)
  confidence = REGEX_CONFIDENT if (start is not None and title) else REGEX_UNSURE
  return ParsedCommand(
      action=_infer_action(text),
      title=title,
      start_time=start.isoformat() if start else None,
      end_time=end.isoformat() if end else None,
      duration=duration,
      description=text,
      confidence=confidence,
  )


# -------------------------
# LLM parser
# -------------------------
class LlmCommandParser:
  """OpenAI JSON-mode parser with the regex parser behind it."""

  def __init__(self, model: str = AGENT_NLP_MODEL,
               max_completion_tokens: int = NLP_MAX_COMPLETION_TOKENS) -> None:
    self.model = model
    self.max_completion_tokens = max_completion_tokens

  async def parse_command(self, text: str,
                          context: ParseContext) -> ParsedCommand:
    payload = {
        "text": text,
        "now": context.now_iso,
        "timezone": context.timezone,
        "previous_messages": context.previous_messages[-10:],
        "active_entities": context.active_entities,
    }
    outcome = await run_structured_completion(
        model=self.model,
        system_prompt=PARSE_COMMAND_PROMPT,
        user_payload=payload,
        response_model=ParsedCommand,
        max_completion_tokens=self.max_completion_tokens,
    )
    if outcome.parsed is not None:
      return outcome.parsed

    _log_debug(f"[NLP] falling back to regex parser error={outcome.error} "
               f"meta={outcome.meta} raw={outcome.raw_output[:200]}")
    now = coerce_datetime(context.now_iso, context.timezone)
    if now is None:
      raise ValueError(f"Invalid parse context time: {context.now_iso}")
    return parse_with_regex(text, now)


class RegexCommandParser:

  async def parse_command(self, text: str,
                          context: ParseContext) -> ParsedCommand:
    now = coerce_datetime(context.now_iso, context.timezone)
    if now is None:
      raise ValueError(f"Invalid parse context time: {context.now_iso}")
    return parse_with_regex(text, now)
