from __future__ import annotations

import abc
from datetime import datetime
from typing import List, Optional

from .models import CalendarEvent, EventSpec, EventUpdate


class CalendarGateway(abc.ABC):
    """Calendar of record consumed by the scheduler.

    Every call makes sure a usable credential exists first. A missing or
    unrefreshable credential raises AuthRequired; any other remote failure
    raises RemoteUnavailable. Gateways never retry on their own.
    """

    @abc.abstractmethod
    async def list_events(self, range_start: datetime,
                          range_end: datetime) -> List[CalendarEvent]:
        """Events intersecting [range_start, range_end], recurring ones expanded."""

    @abc.abstractmethod
    async def get_event(self, event_id: str) -> Optional[CalendarEvent]:
        ...

    @abc.abstractmethod
    async def create_event(self, spec: EventSpec) -> CalendarEvent:
        ...

    @abc.abstractmethod
    async def update_event(self, event_id: str,
                           updates: EventUpdate) -> CalendarEvent:
        ...

    @abc.abstractmethod
    async def delete_event(self, event_id: str) -> None:
        ...

    @abc.abstractmethod
    async def query_free_busy(self, start: datetime, end: datetime) -> bool:
        """True when no busy block intersects [start, end)."""
