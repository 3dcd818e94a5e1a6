from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Collection
from zoneinfo import ZoneInfo


def overlaps(start_a: datetime, end_a: datetime,
             start_b: datetime, end_b: datetime) -> bool:
    """Half-open overlap test; intervals that only touch do not overlap."""
    return start_a < end_b and end_a > start_b


def add_minutes(value: datetime, minutes: int) -> datetime:
    return value + timedelta(minutes=minutes)


def step_forward(value: datetime, step_minutes: int) -> datetime:
    if step_minutes <= 0:
        raise ValueError("step_minutes must be positive")
    return add_minutes(value, step_minutes)


def to_local(value: datetime, timezone_name: str) -> datetime:
    tz = ZoneInfo(timezone_name)
    if value.tzinfo is None:
        return value.replace(tzinfo=tz)
    return value.astimezone(tz)


def within_business_hours(start: datetime,
                          end: datetime,
                          start_hour: int,
                          end_hour: int,
                          timezone_name: str,
                          working_days: Optional[Collection[int]] = None) -> bool:
    """True iff [start, end) sits inside one day's business window."""
    if end <= start:
        return False
    local_start = to_local(start, timezone_name)
    local_end = to_local(end, timezone_name)
    if working_days is not None and local_start.weekday() not in working_days:
        return False
    day_open = local_start.replace(hour=start_hour, minute=0, second=0, microsecond=0)
    day_close = day_open + timedelta(hours=end_hour - start_hour)
    return day_open <= local_start and local_end <= day_close


def minutes_between(start: datetime, end: datetime) -> int:
    return int(round((end - start).total_seconds() / 60))
