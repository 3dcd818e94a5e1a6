from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

CommandAction = Literal["create", "update", "delete", "query", "unknown"]

_ACTION_ALIASES = {
    "add": "create",
    "schedule": "create",
    "book": "create",
    "edit": "update",
    "move": "update",
    "reschedule": "update",
    "modify": "update",
    "remove": "delete",
    "cancel": "delete",
    "list": "query",
    "find": "query",
    "show": "query",
}


# ---------------------------------------------------------------------------
#  NLP parse capability output
# ---------------------------------------------------------------------------

class ParsedCommand(BaseModel):
  """Shape returned by the parse-command capability (LLM or regex)."""
  model_config = ConfigDict(extra="ignore")

  action: CommandAction = "unknown"
  query_type: Optional[str] = None
  title: Optional[str] = None
  start_time: Optional[str] = None  # ISO 8601, local or offset
  end_time: Optional[str] = None
  duration: Optional[int] = Field(default=None, ge=1)
  description: Optional[str] = None
  location: Optional[str] = None
  attendees: List[str] = Field(default_factory=list)
  recurrence: Optional[str] = None  # RRULE body
  event_id: Optional[str] = None
  series_scope: Optional[Literal["instance", "series"]] = None
  confidence: float = Field(default=0.5, ge=0.0, le=1.0)

  @field_validator("action", mode="before")
  @classmethod
  def _normalize_action(cls, value: Any) -> Any:
    if not isinstance(value, str):
      return "unknown"
    cleaned = value.strip().lower()
    cleaned = _ACTION_ALIASES.get(cleaned, cleaned)
    if cleaned not in ("create", "update", "delete", "query"):
      return "unknown"
    return cleaned

  @field_validator("attendees", mode="before")
  @classmethod
  def _normalize_attendees(cls, value: Any) -> Any:
    if value is None:
      return []
    if isinstance(value, str):
      return [part.strip() for part in value.split(",") if part.strip()]
    return value

  @field_validator("duration", mode="before")
  @classmethod
  def _drop_non_positive_duration(cls, value: Any) -> Any:
    if isinstance(value, (int, float)) and value <= 0:
      return None
    return value

  @field_validator("series_scope", mode="before")
  @classmethod
  def _normalize_scope(cls, value: Any) -> Any:
    if isinstance(value, str):
      cleaned = value.strip().lower()
      if cleaned in ("instance", "single", "occurrence", "this"):
        return "instance"
      if cleaned in ("series", "all", "every"):
        return "series"
    return None


class ParseContext(BaseModel):
  """What the recognizer hands the parse-command capability."""
  model_config = ConfigDict(extra="ignore")

  user_id: str
  conversation_id: Optional[str] = None
  timezone: str
  now_iso: str
  previous_messages: List[Dict[str, str]] = Field(default_factory=list)
  active_entities: Dict[str, Any] = Field(default_factory=dict)
