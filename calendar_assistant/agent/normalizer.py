from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import DEFAULT_TIMEZONE

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def normalize_input_as_text(value: Optional[str]) -> str:
  return value.strip() if isinstance(value, str) else ""


def _valid_zone(name: Any) -> Optional[str]:
  if not isinstance(name, str) or not name.strip():
    return None
  try:
    ZoneInfo(name.strip())
  except (ZoneInfoNotFoundError, ValueError):
    return None
  return name.strip()


def resolve_timezone(requested_timezone: Optional[str],
                     preferences: Optional[Dict[str, Any]] = None) -> str:
  """First valid IANA name among request, preferences and the default."""
  preferred = (preferences or {}).get("timezone")
  for candidate in (requested_timezone, preferred, DEFAULT_TIMEZONE):
    zone = _valid_zone(candidate)
    if zone:
      return zone
  return "UTC"


def coerce_datetime(value: Any, timezone_name: str) -> Optional[datetime]:
  """Parse an ISO string (or pass a datetime through) as an aware datetime.

  Naive values are read as local time in ``timezone_name``; date-only
  strings land on midnight.
  """
  tz = ZoneInfo(timezone_name)
  if isinstance(value, datetime):
    return value if value.tzinfo else value.replace(tzinfo=tz)
  raw = value.strip() if isinstance(value, str) else ""
  if not raw:
    return None
  if _DATE_ONLY_RE.match(raw):
    raw += "T00:00"
  try:
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
  except ValueError:
    return None
  return parsed.replace(tzinfo=tz) if parsed.tzinfo is None else parsed.astimezone(tz)
