"""Tests for AuthStatusCache TTL eviction and AppState wiring."""

from __future__ import annotations

from calendar_assistant.models import UserPreferences
from calendar_assistant.state import AppState, AuthStatusCache


class FakeMonotonic:

    def __init__(self) -> None:
        self.value = 1000.0

    def __call__(self) -> float:
        return self.value


class TestAuthStatusCache:

    def test_entry_expires_after_ttl(self):
        ticks = FakeMonotonic()
        cache = AuthStatusCache(ttl_seconds=300, clock=ticks)
        cache.set("session-1", True)

        ticks.value += 299
        assert cache.get("session-1").authenticated

        ticks.value += 1
        assert cache.get("session-1") is None
        assert len(cache) == 0

    def test_evict_expired_counts_dropped_entries(self):
        ticks = FakeMonotonic()
        cache = AuthStatusCache(ttl_seconds=60, clock=ticks)
        cache.set("old", False, "revoked")
        ticks.value += 30
        cache.set("fresh", True)

        ticks.value += 45
        assert cache.evict_expired() == 1
        assert cache.get("fresh") is not None

    def test_invalidate(self):
        cache = AuthStatusCache()
        cache.set("session-1", True)
        cache.invalidate("session-1")
        assert cache.get("session-1") is None


class TestAppState:

    def test_scheduler_uses_requested_timezone(self, gateway):
        state = AppState(lambda user_id: gateway)

        scheduler = state.scheduler_for("user-1", "Asia/Seoul")

        assert scheduler.settings.timezone == "Asia/Seoul"
        assert scheduler.gateway is gateway

    def test_preferences_default_and_override(self, gateway):
        state = AppState(lambda user_id: gateway)
        assert state.get_preferences("user-1").default_duration_minutes == 30

        state.set_preferences("user-1", UserPreferences(default_duration_minutes=60))
        assert state.get_preferences("user-1").default_duration_minutes == 60

    async def test_startup_and_shutdown(self, gateway):
        state = AppState(lambda user_id: gateway)
        state.auth_cache.set("session-1", True)

        await state.startup()
        assert state.started

        await state.shutdown()
        assert not state.started
        assert len(state.auth_cache) == 0
