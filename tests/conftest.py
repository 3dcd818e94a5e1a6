"""Shared fixtures: a frozen clock, an in-process calendar and a stub parser."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

import pytest

from calendar_assistant.agent.schemas import ParseContext, ParsedCommand
from calendar_assistant.config import SchedulerSettings
from calendar_assistant.local_calendar import LocalCalendarGateway
from calendar_assistant.scheduler import ConflictAwareScheduler
from calendar_assistant.store import ConversationStore, ThreadStore

UTC = ZoneInfo("UTC")

# Thursday, 2025-03-06 10:00 UTC
NOW = datetime(2025, 3, 6, 10, 0, tzinfo=UTC)

SYNC = ParsedCommand(action="create", title="Sync", start_time="2025-03-06T15:30",
                     duration=30, confidence=0.9)


def at(hour: int, minute: int = 0, day: int = 6) -> datetime:
    return datetime(2025, 3, day, hour, minute, tzinfo=UTC)


class FixedClock:
    """Callable clock; accepts an optional timezone name like now_in_timezone."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self, timezone_name: Optional[str] = None) -> datetime:
        return self.now.astimezone(ZoneInfo(timezone_name or "UTC"))


class StubParser:
    """Parse-command capability returning a fixed command."""

    def __init__(self, command: Optional[ParsedCommand] = None,
                 error: Optional[Exception] = None) -> None:
        self.command = command or ParsedCommand()
        self.error = error
        self.calls: List[ParseContext] = []

    async def parse_command(self, text: str, context: ParseContext) -> ParsedCommand:
        self.calls.append(context)
        if self.error is not None:
            raise self.error
        return self.command


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings() -> SchedulerSettings:
    return SchedulerSettings(timezone="UTC")


@pytest.fixture
def gateway() -> LocalCalendarGateway:
    return LocalCalendarGateway(timezone_name="UTC")


@pytest.fixture
def scheduler(gateway, settings) -> ConflictAwareScheduler:
    return ConflictAwareScheduler(gateway, settings)


@pytest.fixture
def conversations(clock) -> ConversationStore:
    return ConversationStore(clock=clock)


@pytest.fixture
def threads(clock) -> ThreadStore:
    return ThreadStore(clock=clock)
