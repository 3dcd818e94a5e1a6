from __future__ import annotations

import calendar
import re
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from zoneinfo import ZoneInfo

MAX_RECURRENCE_OCCURRENCES = 730

_RRULE_FREQS = {"DAILY", "WEEKLY", "MONTHLY"}
_RRULE_WEEKDAY_TO_INDEX = {
    "MO": 0,
    "TU": 1,
    "WE": 2,
    "TH": 3,
    "FR": 4,
    "SA": 5,
    "SU": 6,
}


def parse_rrule(rrule: Optional[str]) -> Optional[Dict[str, object]]:
    """Parse the subset of RRULE the local calendar expands.

    Returns None for anything it cannot honour (unknown FREQ, positional
    BYDAY, COUNT together with UNTIL, ...).
    """
    if not isinstance(rrule, str):
        return None
    raw = rrule.strip()
    if raw.upper().startswith("RRULE:"):
        raw = raw.split(":", 1)[1].strip()
    if not raw:
        return None

    values: Dict[str, str] = {}
    for part in [p.strip() for p in raw.split(";") if p.strip()]:
        if "=" not in part:
            return None
        key, val = part.split("=", 1)
        values[key.strip().upper()] = val.strip().upper()

    freq = values.get("FREQ")
    if freq not in _RRULE_FREQS:
        return None
    parsed: Dict[str, object] = {"freq": freq, "interval": 1}

    try:
        if "INTERVAL" in values:
            parsed["interval"] = int(values["INTERVAL"])
        if "COUNT" in values:
            parsed["count"] = int(values["COUNT"])
    except ValueError:
        return None
    if parsed["interval"] <= 0 or parsed.get("count", 1) <= 0:
        return None

    until_raw = values.get("UNTIL")
    if until_raw is not None:
        if "COUNT" in values:
            return None
        match = re.match(r"^(\d{8})(T(\d{6})Z?)?$", until_raw)
        if not match:
            return None
        stamp = match.group(1) + (match.group(3) or "235959")
        parsed["until"] = datetime.strptime(stamp, "%Y%m%d%H%M%S").replace(
            tzinfo=ZoneInfo("UTC"))

    byday_raw = values.get("BYDAY")
    if byday_raw is not None:
        days: List[int] = []
        for token in [t.strip() for t in byday_raw.split(",") if t.strip()]:
            if token not in _RRULE_WEEKDAY_TO_INDEX:
                return None
            days.append(_RRULE_WEEKDAY_TO_INDEX[token])
        parsed["byday"] = sorted(set(days))
    return parsed


def _add_months(value: datetime, months: int) -> Optional[datetime]:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    if value.day > calendar.monthrange(year, month)[1]:
        return None
    return value.replace(year=year, month=month)


def _candidates(start: datetime, rule: Dict[str, object]):
    freq = rule["freq"]
    interval = int(rule["interval"])
    byday = rule.get("byday")
    step = 0
    while True:
        if freq == "DAILY":
            yield start + timedelta(days=step * interval)
        elif freq == "WEEKLY":
            week_start = start + timedelta(weeks=step * interval)
            if not byday:
                yield week_start
            else:
                monday = week_start - timedelta(days=week_start.weekday())
                for day in byday:
                    candidate = monday + timedelta(days=day)
                    if candidate >= start:
                        yield candidate
        else:
            candidate = _add_months(start, step * interval)
            if candidate is not None:
                yield candidate
        step += 1


def expand_occurrences(start: datetime,
                       rule: Dict[str, object],
                       range_start: datetime,
                       range_end: datetime,
                       duration: timedelta) -> List[datetime]:
    """Occurrence starts whose [start, start+duration) touches the range."""
    count = rule.get("count")
    until = rule.get("until")
    results: List[datetime] = []
    seen = 0
    for candidate in _candidates(start, rule):
        if seen >= MAX_RECURRENCE_OCCURRENCES:
            break
        if count is not None and seen >= count:
            break
        if until is not None and candidate > until:
            break
        if candidate >= range_end:
            break
        seen += 1
        if candidate + duration > range_start:
            results.append(candidate)
    return results
