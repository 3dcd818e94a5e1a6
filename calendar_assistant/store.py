from __future__ import annotations

import secrets
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from .models import (
    AgentTask,
    ConversationContext,
    ConversationSession,
    ProcessingStep,
    Thread,
    ThreadMessage,
)
from .utils import now_in_timezone

Clock = Callable[[], datetime]

# In-process persistence. Every read hands back a copy so callers mutate
# their own snapshot and write it back with save().


class ConversationStore:

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or now_in_timezone
        self._sessions: Dict[str, ConversationSession] = {}

    async def create(self,
                     user_id: str,
                     context: Optional[ConversationContext] = None) -> ConversationSession:
        now = self._clock()
        session = ConversationSession(
            id=str(uuid.uuid4()),
            user_id=user_id,
            context=context or ConversationContext(),
            last_activity_time=now,
            created_at=now,
        )
        self._sessions[session.id] = session
        return session.model_copy(deep=True)

    async def save(self, session: ConversationSession) -> None:
        # Last write wins.
        self._sessions[session.id] = session.model_copy(deep=True)

    async def find_by_id(self, conversation_id: str,
                         user_id: Optional[str] = None) -> Optional[ConversationSession]:
        session = self._sessions.get(conversation_id)
        if session is None:
            return None
        if user_id is not None and session.user_id != user_id:
            return None
        return session.model_copy(deep=True)

    async def find_latest_active(self, user_id: str) -> Optional[ConversationSession]:
        candidates = [
            s for s in self._sessions.values()
            if s.user_id == user_id and s.is_active
        ]
        if not candidates:
            return None
        latest = max(candidates, key=lambda s: s.last_activity_time)
        return latest.model_copy(deep=True)

    async def deactivate(self, conversation_id: str) -> bool:
        session = self._sessions.get(conversation_id)
        if session is None:
            return False
        session.is_active = False
        return True

    def clear(self) -> None:
        self._sessions.clear()


class ThreadStore:
    """Threads keyed by a 24-hex id, also reachable by conversation id."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or now_in_timezone
        self._threads: Dict[str, Thread] = {}
        self._tasks: Dict[str, AgentTask] = {}

    async def create(self,
                     user_id: str,
                     conversation_id: str,
                     messages: Optional[List[ThreadMessage]] = None,
                     title: Optional[str] = None) -> Thread:
        now = self._clock()
        thread = Thread(
            id=secrets.token_hex(12),
            user_id=user_id,
            conversation_id=conversation_id,
            title=title or "New Conversation",
            messages=list(messages or []),
            created_at=now,
            updated_at=now,
        )
        self._threads[thread.id] = thread
        return thread.model_copy(deep=True)

    async def find_by_id(self, thread_id: str) -> Optional[Thread]:
        thread = self._threads.get(thread_id)
        return thread.model_copy(deep=True) if thread else None

    async def find_by_conversation_id(self, conversation_id: str) -> Optional[Thread]:
        thread = self._find_by_conversation(conversation_id)
        return thread.model_copy(deep=True) if thread else None

    def _find_by_conversation(self, conversation_id: str) -> Optional[Thread]:
        for thread in self._threads.values():
            if thread.conversation_id == conversation_id:
                return thread
        return None

    async def push_message(self, thread_id: str,
                           message: ThreadMessage) -> Optional[Thread]:
        thread = self._threads.get(thread_id)
        if thread is None:
            return None
        thread.messages.append(message)
        thread.updated_at = self._clock()
        return thread.model_copy(deep=True)

    async def push_processing_step(self, thread_id: str,
                                   step: ProcessingStep) -> Optional[Thread]:
        """Append primitive; every call adds a record."""
        thread = self._threads.get(thread_id)
        if thread is None:
            return None
        thread.processing_steps.append(step.model_copy(deep=True))
        thread.updated_at = self._clock()
        return thread.model_copy(deep=True)

    async def add_related_task(self, thread_id: str,
                               task_id: str) -> Optional[Thread]:
        """Add-to-set primitive; linking the same task twice is a no-op."""
        thread = self._threads.get(thread_id)
        if thread is None:
            return None
        if task_id not in thread.related_agent_tasks:
            thread.related_agent_tasks.append(task_id)
            thread.updated_at = self._clock()
        return thread.model_copy(deep=True)

    async def create_task(self,
                          task_type: str,
                          conversation_id: Optional[str] = None,
                          event_id: Optional[str] = None) -> AgentTask:
        task = AgentTask(
            id=uuid.uuid4().hex,
            type=task_type,
            conversation_id=conversation_id,
            event_id=event_id,
            created_at=self._clock(),
        )
        self._tasks[task.id] = task
        return task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Optional[AgentTask]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def clear(self) -> None:
        self._threads.clear()
        self._tasks.clear()
