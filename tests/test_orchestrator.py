"""End-to-end message handling through ConversationOrchestrator.

Covers:
- a create lands on the calendar, the conversation and its thread
- processing steps and task links queued before the thread exists still land
- follow-up messages reuse the conversation and thread
- unknown conversation ids raise NotFound
- failures inside the pipeline come back as an apology
"""

from __future__ import annotations

import pytest

from calendar_assistant.agent.context_manager import ConversationContextManager
from calendar_assistant.agent.intent_router import IntentRecognizer
from calendar_assistant.agent.orchestrator import APOLOGY_REPLY, ConversationOrchestrator
from calendar_assistant.agent.schemas import ParsedCommand
from calendar_assistant.errors import NotFound
from calendar_assistant.models import EventSpec
from calendar_assistant.state import AppState

from .conftest import SYNC, StubParser, at, no_sleep


@pytest.fixture
def state(gateway, settings, conversations, threads):
    return AppState(lambda user_id: gateway,
                    scheduler_settings=settings,
                    conversations=conversations,
                    threads=threads,
                    sleep=no_sleep)


def _orchestrator(state, clock, parser):
    return ConversationOrchestrator(
        state,
        IntentRecognizer(parser, clock=clock),
        context_manager=ConversationContextManager(state.conversations, clock=clock))


class TestCreateFlow:

    async def test_create_records_everything(self, state, clock, gateway):
        orchestrator = _orchestrator(state, clock, StubParser(SYNC))

        response = await orchestrator.process_user_message("user-1", "Schedule sync at 3:30pm")
        await state.linkage.drain()

        assert response.intent == "create"
        assert response.content.startswith('Great! I\'ve scheduled "Sync"')
        events = await gateway.list_events(at(0), at(23))
        assert [ev.title for ev in events] == ["Sync"]

        session = await state.conversations.find_by_id(response.conversation_id, "user-1")
        assert [t.speaker for t in session.turns] == ["user", "assistant"]
        assert session.turns[0].intent.primary_intent == "create"
        assert session.thread_id == response.thread_id
        assert session.context.active_entities["lastEventId"] == events[0].id
        assert session.context.goals == ["calendar_management"]

        thread = await state.threads.find_by_id(response.thread_id)
        assert [m.role for m in thread.messages] == ["user", "assistant"]
        assert thread.title == "Schedule sync at 3:30pm"
        assert [s.type for s in thread.processing_steps] == ["STARTED", "PROGRESS"]
        assert thread.processing_steps[0].details["eventId"] == events[0].id
        assert len(thread.related_agent_tasks) == 1
        task = await state.threads.get_task(thread.related_agent_tasks[0])
        assert task.event_id == events[0].id
        assert not state.linkage.failures

    async def test_follow_up_reuses_conversation(self, state, clock):
        orchestrator = _orchestrator(state, clock, StubParser(ParsedCommand(confidence=0.9)))

        first = await orchestrator.process_user_message("user-1", "hello")
        second = await orchestrator.process_user_message("user-1", "anyone there?")

        assert second.conversation_id == first.conversation_id
        assert second.thread_id == first.thread_id
        thread = await state.threads.find_by_id(first.thread_id)
        assert len(thread.messages) == 4

    async def test_conflict_records_error_step(self, state, clock, gateway):
        await gateway.create_event(EventSpec(title="Design review", start=at(15, 45)))
        orchestrator = _orchestrator(state, clock, StubParser(SYNC))

        response = await orchestrator.process_user_message("user-1", "Schedule sync at 3:30pm")
        await state.linkage.drain()

        assert response.action.status == "failed"
        thread = await state.threads.find_by_id(response.thread_id)
        assert [s.type for s in thread.processing_steps] == ["ERROR"]
        assert thread.related_agent_tasks == []

    async def test_low_confidence_asks_for_clarification(self, state, clock):
        orchestrator = _orchestrator(
            state, clock, StubParser(ParsedCommand(action="create", title="Lunch", confidence=0.3)))

        response = await orchestrator.process_user_message("user-1", "lunch maybe")

        assert response.needs_clarification
        assert response.intent == "clarify"


class TestErrors:

    async def test_unknown_conversation_is_not_found(self, state, clock):
        orchestrator = _orchestrator(state, clock, StubParser(SYNC))

        with pytest.raises(NotFound):
            await orchestrator.process_user_message("user-1", "hi", conversation_id="missing")

    async def test_other_users_conversation_is_not_found(self, state, clock):
        orchestrator = _orchestrator(state, clock, StubParser(ParsedCommand(confidence=0.9)))
        mine = await orchestrator.process_user_message("user-1", "hello")

        with pytest.raises(NotFound):
            await orchestrator.process_user_message(
                "user-2", "hello", conversation_id=mine.conversation_id)

    async def test_unexpected_failure_becomes_apology(self, state, clock, gateway, monkeypatch):

        async def explode(*args, **kwargs):
            raise KeyError("corrupt")

        monkeypatch.setattr(gateway, "list_events", explode)
        orchestrator = _orchestrator(state, clock, StubParser(SYNC))

        response = await orchestrator.process_user_message("user-1", "Schedule sync at 3:30pm")

        assert response.content == APOLOGY_REPLY
        assert response.conversation_id
