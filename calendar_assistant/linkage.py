from __future__ import annotations

import asyncio
import collections
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Deque, Dict, Optional, Union

from .config import LinkageSettings, default_linkage_settings
from .errors import InvalidRequest, LinkageExhausted
from .models import ProcessingStep, Thread
from .store import ThreadStore
from .utils import now_in_timezone

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_FIXED_ID_RE = re.compile(r"^[0-9a-fA-F]{24}$")
_TOKEN_ID_RE = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


# -------------------------
# Identifiers
# -------------------------
@dataclass(frozen=True)
class FixedId:
    """24-hex thread id."""
    value: str


@dataclass(frozen=True)
class TokenId:
    """Conversation token (UUID) that owns a thread."""
    value: str


Identifier = Union[FixedId, TokenId]


def parse_identifier(raw: str) -> Identifier:
    value = (raw or "").strip()
    if _FIXED_ID_RE.match(value):
        return FixedId(value.lower())
    if _TOKEN_ID_RE.match(value):
        return TokenId(value)
    raise InvalidRequest(f"Unrecognized thread identifier: {raw!r}")


# -------------------------
# Payloads
# -------------------------
@dataclass(frozen=True)
class AppendStep:
    step: ProcessingStep


@dataclass(frozen=True)
class LinkTask:
    task_id: str


Payload = Union[AppendStep, LinkTask]

STEP_QUEUE = "step"
LINK_QUEUE = "link"


@dataclass
class QueueItem:
    id: int
    target: Identifier
    payload: Payload
    created_at: datetime
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    completed: bool = False
    last_error: Optional[str] = None

    @property
    def target_id(self) -> str:
        return self.target.value

    @property
    def kind(self) -> str:
        return STEP_QUEUE if isinstance(self.payload, AppendStep) else LINK_QUEUE


class LinkageQueue:
    """Applies thread side-effects once the target thread exists.

    Items live in an arena keyed by item id; each payload kind has its own
    FIFO of ids. A single drain task works through the step queue and then
    the link queue. A missing target rotates its item to the tail and waits
    out the backoff for that attempt. After ``max_retries`` attempts the item
    is dropped and a LinkageExhausted failure is logged. Nobody waits on it.
    """

    def __init__(self,
                 threads: ThreadStore,
                 settings: Optional[LinkageSettings] = None,
                 sleep: Optional[Sleep] = None,
                 clock: Optional[Callable[[], datetime]] = None) -> None:
        self._threads = threads
        self._settings = settings or default_linkage_settings()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or now_in_timezone
        self._items: Dict[int, QueueItem] = {}
        self._queues: Dict[str, Deque[int]] = {
            STEP_QUEUE: collections.deque(),
            LINK_QUEUE: collections.deque(),
        }
        self._next_id = 1
        self._draining = False
        self._drain_task: Optional[asyncio.Task] = None
        self.failures: Deque[LinkageExhausted] = collections.deque(maxlen=100)

    # -------------------------
    # enqueue
    # -------------------------
    def enqueue_step(self, target: Identifier, step: ProcessingStep) -> QueueItem:
        return self._enqueue(target, AppendStep(step))

    def enqueue_link(self, target: Identifier, task_id: str) -> QueueItem:
        return self._enqueue(target, LinkTask(task_id))

    def _enqueue(self, target: Identifier, payload: Payload) -> QueueItem:
        item = QueueItem(id=self._next_id,
                         target=target,
                         payload=payload,
                         created_at=self._clock())
        self._next_id += 1
        self._items[item.id] = item
        self._queues[item.kind].append(item.id)
        self._kick()
        return item

    @property
    def pending_count(self) -> int:
        return len(self._items)

    @property
    def is_draining(self) -> bool:
        return self._draining

    # -------------------------
    # drain
    # -------------------------
    def _kick(self) -> None:
        if self._draining or not self._items:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; drain() or the next enqueue inside a loop picks it up.
            return
        self._draining = True
        self._drain_task = loop.create_task(self._drain())

    async def drain(self) -> None:
        """Run (or join) the drain until nothing is pending."""
        while self._items:
            task = self._drain_task
            if task is not None:
                await task
                continue
            if self._draining:
                return
            self._draining = True
            await self._drain()

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self.drain(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def shutdown(self, timeout: Optional[float] = 10.0) -> None:
        finished = await self.wait_idle(timeout)
        if finished:
            return
        task = self._drain_task
        if task is not None:
            task.cancel()
        logger.warning("Linkage queue shut down with %d pending item(s)",
                       len(self._items))

    async def _drain(self) -> None:
        try:
            while self._items:
                await self._drain_queue(STEP_QUEUE)
                await self._drain_queue(LINK_QUEUE)
        finally:
            self._draining = False
            self._drain_task = None
        self._kick()

    async def _drain_queue(self, kind: str) -> None:
        queue = self._queues[kind]
        while queue:
            item = self._items[queue[0]]
            if await self._attempt(item):
                queue.popleft()
                item.completed = True
                del self._items[item.id]
                continue

            if item.attempts >= self._settings.max_retries:
                queue.popleft()
                del self._items[item.id]
                failure = LinkageExhausted(item.target_id, item.attempts,
                                           item.last_error)
                self.failures.append(failure)
                logger.error("%s", failure)
                continue

            logger.warning("Linkage target %s not ready (attempt %d/%d): %s",
                           item.target_id, item.attempts,
                           self._settings.max_retries, item.last_error)
            if len(queue) > 1:
                queue.rotate(-1)
            await self._sleep(self._backoff_seconds(item.attempts))

    def _backoff_seconds(self, attempts: int) -> float:
        intervals = self._settings.retry_intervals_ms
        if not intervals:
            return 0.0
        index = min(attempts - 1, len(intervals) - 1)
        return intervals[max(index, 0)] / 1000.0

    async def _resolve(self, target: Identifier) -> Optional[Thread]:
        if isinstance(target, FixedId):
            return await self._threads.find_by_id(target.value)
        return await self._threads.find_by_conversation_id(target.value)

    async def _attempt(self, item: QueueItem) -> bool:
        item.attempts += 1
        item.last_attempt = self._clock()
        try:
            thread = await self._resolve(item.target)
            if thread is None:
                item.last_error = "target thread not found"
                return False
            payload = item.payload
            if isinstance(payload, AppendStep):
                updated = await self._threads.push_processing_step(
                    thread.id, payload.step)
            else:
                updated = await self._threads.add_related_task(
                    thread.id, payload.task_id)
            if updated is None:
                item.last_error = "target thread disappeared"
                return False
        except Exception as exc:
            item.last_error = str(exc) or exc.__class__.__name__
            return False
        item.last_error = None
        return True
