"""Tests for ConversationContextManager: session reuse and expiry, turn
history and context merging."""

from __future__ import annotations

from datetime import timedelta

from calendar_assistant.agent.context_manager import (
    CALENDAR_MANAGEMENT_GOAL,
    ConversationContextManager,
)
from calendar_assistant.models import (
    ConversationAction,
    ConversationContext,
    Intent,
    IntentEntities,
    UserPreferences,
)

from .conftest import at


def _create_intent(confidence=0.9, **entities):
    return Intent(primary_intent="create", confidence=confidence,
                  entities=IntentEntities(**entities))


class TestSessions:

    async def test_reuses_active_session(self, conversations, clock):
        manager = ConversationContextManager(conversations, clock=clock)

        first = await manager.get_or_create("user-1")
        again = await manager.get_or_create("user-1")

        assert again.id == first.id

    async def test_idle_session_is_replaced(self, conversations, clock):
        manager = ConversationContextManager(conversations, clock=clock)
        first = await manager.get_or_create("user-1")

        clock.now = clock.now + timedelta(hours=6, minutes=1)
        second = await manager.get_or_create("user-1")

        assert second.id != first.id
        old = await conversations.find_by_id(first.id)
        assert not old.is_active

    async def test_session_just_inside_expiry_is_kept(self, conversations, clock):
        manager = ConversationContextManager(conversations, clock=clock)
        first = await manager.get_or_create("user-1")

        clock.now = clock.now + timedelta(hours=6)
        assert (await manager.get_or_create("user-1")).id == first.id

    async def test_new_session_carries_preferences(self, conversations, clock):
        manager = ConversationContextManager(conversations, clock=clock)

        session = await manager.get_or_create(
            "user-1", UserPreferences(timezone="Asia/Seoul", default_duration_minutes=45),
            timezone_name="Europe/Paris")

        assert session.context.preferences["default_duration_minutes"] == 45
        assert session.context.environment["timezone"] == "Europe/Paris"

    async def test_sessions_are_per_user(self, conversations, clock):
        manager = ConversationContextManager(conversations, clock=clock)
        mine = await manager.get_or_create("user-1")

        assert await manager.get(mine.id, "user-2") is None
        assert (await manager.get(mine.id, "user-1")).id == mine.id


class TestTurns:

    async def test_append_turn_moves_activity_time(self, conversations, clock):
        manager = ConversationContextManager(conversations, clock=clock)
        session = await manager.get_or_create("user-1")

        clock.now = clock.now + timedelta(minutes=5)
        turn = manager.append_turn(session, "user", "hello")

        assert session.last_activity_time == clock.now
        assert turn.intent is None

    async def test_backfill_only_fills_empty_intent(self, conversations, clock):
        manager = ConversationContextManager(conversations, clock=clock)
        session = await manager.get_or_create("user-1")
        turn = manager.append_turn(session, "user", "hello")

        manager.backfill_intent(turn, Intent(primary_intent="query", confidence=0.9))
        manager.backfill_intent(turn, Intent(primary_intent="delete", confidence=0.9))

        assert turn.intent.primary_intent == "query"

    async def test_history_can_exclude_latest(self, conversations, clock):
        manager = ConversationContextManager(conversations, clock=clock)
        session = await manager.get_or_create("user-1")
        manager.append_turn(session, "user", "one")
        manager.append_turn(session, "assistant", "two")
        manager.append_turn(session, "user", "three")

        assert [t.content for t in manager.history(session, exclude_last=True)] == ["one", "two"]


class TestUpdateContext:

    def test_entities_are_touched_in_recency_order(self, conversations):
        manager = ConversationContextManager(conversations)
        context = ConversationContext()

        manager.update_context(context, _create_intent(title="Dentist", start_time=at(15)))
        manager.update_context(context, _create_intent(title="Dentist again"))

        assert list(context.active_entities) == ["lastEventTime", "lastEventTitle"]
        assert context.active_entities["lastEventTime"] == at(15).isoformat()
        assert context.active_entities["lastEventTitle"] == "Dentist again"

    def test_referenced_events_keep_last_five(self, conversations):
        manager = ConversationContextManager(conversations)
        context = ConversationContext()

        for i in range(7):
            action = ConversationAction(type="create", status="success", event_id=f"evt-{i}")
            manager.update_context(context, _create_intent(), action)

        assert context.referenced_events == [f"evt-{i}" for i in range(2, 7)]
        assert context.active_entities["lastEventId"] == "evt-6"

    def test_goal_needs_confident_create(self, conversations):
        manager = ConversationContextManager(conversations)
        context = ConversationContext()

        manager.update_context(context, _create_intent(confidence=0.8))
        assert context.goals == []

        manager.update_context(context, _create_intent(confidence=0.81))
        manager.update_context(context, _create_intent(confidence=0.95))
        assert context.goals == [CALENDAR_MANAGEMENT_GOAL]

    def test_queries_never_add_goal(self, conversations):
        manager = ConversationContextManager(conversations)
        context = ConversationContext()

        manager.update_context(context, Intent(primary_intent="query", confidence=1.0))

        assert context.goals == []
