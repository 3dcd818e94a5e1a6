from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from .config import DEFAULT_TIMEZONE, LLM_DEBUG


def _log_debug(message: str) -> None:
    if LLM_DEBUG:
        print(message, flush=True)


def now_in_timezone(timezone_name: Optional[str] = None) -> datetime:
    return datetime.now(ZoneInfo(timezone_name or DEFAULT_TIMEZONE))


def ensure_aware(value: datetime, timezone_name: Optional[str] = None) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=ZoneInfo(timezone_name or DEFAULT_TIMEZONE))
    return value


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(value: datetime) -> datetime:
    """Exclusive end of the day: the following midnight."""
    return start_of_day(value) + timedelta(days=1)


def _is_midnight(value: datetime) -> bool:
    return (value.hour, value.minute, value.second, value.microsecond) == (0, 0, 0, 0)


def _format_clock(value: datetime) -> str:
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


def format_date_time(value: datetime) -> str:
    """Render as "3:00 PM on Thursday, Mar 6"."""
    return f"{_format_clock(value)} on {value.strftime('%A')}, {value.strftime('%b')} {value.day}"


def format_time(value: datetime) -> str:
    return _format_clock(value)


def format_day(value: datetime) -> str:
    return f"{value.strftime('%A')}, {value.strftime('%B')} {value.day}"


def format_time_range(start: datetime, end: datetime) -> str:
    """Describe a window as a same-day span, a whole day or a multi-day range."""
    # Windows are half-open, so an end at midnight closes the previous day.
    last = end - timedelta(microseconds=1) if _is_midnight(end) and end > start else end
    same_day = start.date() == last.date()
    whole_day = _is_midnight(start) and _is_midnight(end) and end > start
    if same_day and whole_day:
        return f"on {format_day(start)}"
    if same_day:
        until = "midnight" if last is not end else format_time(end)
        return f"on {format_day(start)} from {format_time(start)} to {until}"
    if whole_day or (end - start) >= timedelta(days=1):
        return f"from {format_day(start)} to {format_day(last)}"
    return f"from {format_date_time(start)} to {format_date_time(end)}"
