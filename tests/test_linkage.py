"""Tests for the linkage queue that applies thread side-effects late.

Covers:
- identifier parsing for both thread id forms
- items queued before their thread exists land once it appears
- an item whose thread never appears is dropped once retries run out,
  with exactly one ERROR record
- step appends are cumulative, task links are set-like, including links
  queued before their thread exists
- enqueuing during a drain never starts a second drain loop
- the step queue drains before the link queue
"""

from __future__ import annotations

import logging
import uuid

import pytest

from calendar_assistant.config import LinkageSettings
from calendar_assistant.errors import InvalidRequest, LinkageExhausted
from calendar_assistant.linkage import FixedId, LinkageQueue, TokenId, parse_identifier
from calendar_assistant.models import ProcessingStep

from .conftest import NOW, no_sleep


def _step(description: str, kind: str = "PROGRESS") -> ProcessingStep:
    return ProcessingStep(type=kind, description=description, timestamp=NOW)


class TestParseIdentifier:

    def test_fixed_id(self):
        assert parse_identifier("65F0A1B2C3D4E5F6A7B8C9D0") == FixedId("65f0a1b2c3d4e5f6a7b8c9d0")

    def test_token_id(self):
        token = str(uuid.uuid4())
        assert parse_identifier(token) == TokenId(token)

    @pytest.mark.parametrize("raw", ["", "abc", "65f0a1b2c3d4e5f6a7b8c9d", "not-a-uuid-at-all"])
    def test_rejects_other_shapes(self, raw):
        with pytest.raises(InvalidRequest):
            parse_identifier(raw)


class TestDrain:

    async def test_lands_on_existing_thread_by_either_id(self, threads):
        conversation_id = str(uuid.uuid4())
        thread = await threads.create("user-1", conversation_id)
        queue = LinkageQueue(threads, sleep=no_sleep)

        queue.enqueue_step(FixedId(thread.id), _step("by thread id"))
        queue.enqueue_step(TokenId(conversation_id), _step("by conversation"))
        await queue.drain()

        stored = await threads.find_by_id(thread.id)
        assert [s.description for s in stored.processing_steps] == [
            "by thread id", "by conversation"]
        assert queue.pending_count == 0

    async def test_waits_for_thread_to_appear(self, threads):
        conversation_id = str(uuid.uuid4())
        sleeps = []

        async def create_on_second_miss(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 2:
                await threads.create("user-1", conversation_id)

        queue = LinkageQueue(threads, sleep=create_on_second_miss)
        queue.enqueue_step(TokenId(conversation_id), _step("late"))
        await queue.drain()

        stored = await threads.find_by_conversation_id(conversation_id)
        assert [s.description for s in stored.processing_steps] == ["late"]
        assert sleeps == [0.1, 0.3]
        assert not queue.failures

    async def test_link_lands_once_when_thread_appears_late(self, threads):
        conversation_id = str(uuid.uuid4())
        sleeps = []

        async def create_on_second_miss(seconds):
            sleeps.append(seconds)
            if len(sleeps) == 2:
                await threads.create("user-1", conversation_id)

        queue = LinkageQueue(threads, sleep=create_on_second_miss)
        queue.enqueue_link(TokenId(conversation_id), "task-1")
        queue.enqueue_link(TokenId(conversation_id), "task-1")
        await queue.drain()

        stored = await threads.find_by_conversation_id(conversation_id)
        assert stored.related_agent_tasks == ["task-1"]
        assert queue.pending_count == 0
        assert not queue.failures

    async def test_enqueue_during_drain_joins_the_running_loop(self, threads):
        conversation_id = str(uuid.uuid4())
        queue = LinkageQueue(threads)
        drains = []
        original_drain = queue._drain

        async def counting_drain():
            drains.append(1)
            await original_drain()

        async def enqueue_while_draining(seconds):
            assert queue.is_draining
            thread = await threads.create("user-1", conversation_id)
            queue.enqueue_link(FixedId(thread.id), "task-2")

        queue._drain = counting_drain
        queue._sleep = enqueue_while_draining
        queue.enqueue_link(TokenId(conversation_id), "task-1")
        await queue.drain()

        stored = await threads.find_by_conversation_id(conversation_id)
        assert sorted(stored.related_agent_tasks) == ["task-1", "task-2"]
        assert len(drains) == 1
        assert not queue.is_draining

    async def test_drops_after_retries_run_out(self, threads, caplog):
        queue = LinkageQueue(threads, LinkageSettings(max_retries=5), sleep=no_sleep)
        item = queue.enqueue_link(FixedId("a" * 24), "task-1")

        with caplog.at_level(logging.WARNING, logger="calendar_assistant.linkage"):
            await queue.drain()

        assert item.attempts == 5
        assert queue.pending_count == 0
        errors = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(errors) == 1
        assert "a" * 24 in errors[0].getMessage()
        assert len(queue.failures) == 1
        failure = queue.failures[0]
        assert isinstance(failure, LinkageExhausted)
        assert failure.attempts == 5

    async def test_backoff_follows_schedule(self, threads):
        sleeps = []

        async def record(seconds):
            sleeps.append(seconds)

        queue = LinkageQueue(threads, sleep=record)
        queue.enqueue_step(FixedId("b" * 24), _step("never lands"))
        await queue.drain()

        # No sleep after the final failed attempt.
        assert sleeps == [0.1, 0.3, 0.5, 1.0]

    async def test_link_is_set_like_and_steps_accumulate(self, threads):
        thread = await threads.create("user-1", str(uuid.uuid4()))
        queue = LinkageQueue(threads, sleep=no_sleep)
        target = FixedId(thread.id)

        queue.enqueue_link(target, "task-1")
        queue.enqueue_link(target, "task-1")
        queue.enqueue_step(target, _step("same"))
        queue.enqueue_step(target, _step("same"))
        await queue.drain()

        stored = await threads.find_by_id(thread.id)
        assert stored.related_agent_tasks == ["task-1"]
        assert len(stored.processing_steps) == 2

    async def test_steps_drain_before_links(self, threads):
        thread = await threads.create("user-1", str(uuid.uuid4()))
        queue = LinkageQueue(threads, sleep=no_sleep)
        order = []
        original_push = threads.push_processing_step
        original_link = threads.add_related_task

        async def push(thread_id, step):
            order.append("step")
            return await original_push(thread_id, step)

        async def link(thread_id, task_id):
            order.append("link")
            return await original_link(thread_id, task_id)

        threads.push_processing_step = push
        threads.add_related_task = link

        queue.enqueue_link(FixedId(thread.id), "task-1")
        queue.enqueue_step(FixedId(thread.id), _step("first"))
        await queue.drain()

        assert order == ["step", "link"]

    async def test_shutdown_with_nothing_pending(self, threads):
        queue = LinkageQueue(threads, sleep=no_sleep)
        await queue.shutdown(timeout=1)
        assert not queue.is_draining
