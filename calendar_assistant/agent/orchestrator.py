from __future__ import annotations

import logging
from typing import Optional

from ..errors import NotFound
from ..linkage import TokenId
from ..models import (
    ConversationSession,
    Intent,
    MessageResponse,
    ProcessingStep,
    ThreadMessage,
)
from ..state import AppState
from .context_manager import ConversationContextManager
from .dispatcher import ActionDispatcher, DispatchResult
from .intent_router import IntentRecognizer
from .normalizer import normalize_input_as_text, resolve_timezone

logger = logging.getLogger(__name__)

APOLOGY_REPLY = "I apologize, but I encountered an issue processing your request."
THREAD_TITLE_MAX = 50


class ConversationOrchestrator:
  """One user message in, one assistant reply out.

  Order per message: append the user turn, recognize, back-fill the intent,
  dispatch, append the assistant turn, merge context, queue bookkeeping,
  record both messages on the thread, save.
  """

  def __init__(self,
               state: AppState,
               recognizer: IntentRecognizer,
               context_manager: Optional[ConversationContextManager] = None) -> None:
    self.state = state
    self.recognizer = recognizer
    self.context_manager = context_manager or ConversationContextManager(
        state.conversations)

  async def _load_session(self,
                          user_id: str,
                          conversation_id: Optional[str],
                          timezone_name: Optional[str]) -> ConversationSession:
    if conversation_id:
      session = await self.context_manager.get(conversation_id, user_id)
      if session is None:
        raise NotFound(f"Conversation {conversation_id} not found.")
      return session
    prefs = self.state.get_preferences(user_id)
    return await self.context_manager.get_or_create(user_id, prefs, timezone_name)

  async def process_user_message(self,
                                 user_id: str,
                                 message: str,
                                 conversation_id: Optional[str] = None,
                                 timezone: Optional[str] = None) -> MessageResponse:
    text = normalize_input_as_text(message)
    session = await self._load_session(user_id, conversation_id, timezone)
    try:
      return await self._process(session, user_id, text, timezone)
    except Exception:
      logger.exception("Error processing user message for conversation %s",
                       session.id)
      return MessageResponse(content=APOLOGY_REPLY,
                             conversation_id=session.id,
                             thread_id=session.thread_id)

  async def _process(self,
                     session: ConversationSession,
                     user_id: str,
                     text: str,
                     requested_timezone: Optional[str]) -> MessageResponse:
    cm = self.context_manager
    tz = resolve_timezone(requested_timezone or session.context.environment.get("timezone"),
                          session.context.preferences)
    session.context.environment["timezone"] = tz

    user_turn = cm.append_turn(session, "user", text)
    intent = await self.recognizer.parse(text,
                                         cm.history(session, exclude_last=True),
                                         session.context,
                                         user_id=user_id,
                                         timezone_name=tz,
                                         conversation_id=session.id)
    cm.backfill_intent(user_turn, intent)

    dispatcher = ActionDispatcher(
        self.state.scheduler_for(user_id, tz),
        default_duration_minutes=self.state.get_preferences(user_id).default_duration_minutes)
    result = await dispatcher.dispatch(intent)

    cm.append_turn(session, "assistant", result.content,
                   intent=result.intent, action=result.action)
    cm.update_context(session.context, intent, result.action)

    await self._record_bookkeeping(session, intent, result)
    await self._record_thread(session, user_id, text, result.content)
    await cm.save(session)

    logger.info("conversation=%s intent=%s conf=%.2f clarify=%s",
                session.id, intent.primary_intent, intent.confidence,
                result.needs_clarification)
    return MessageResponse(
        content=result.content,
        intent=result.intent.primary_intent,
        action=result.action,
        suggestions=result.suggestions,
        follow_up_questions=result.follow_up_questions,
        needs_clarification=result.needs_clarification,
        needs_reauth=result.needs_reauth,
        conversation_id=session.id,
        thread_id=session.thread_id,
    )

  # -------------------------
  # threads
  # -------------------------
  async def _record_thread(self, session: ConversationSession, user_id: str,
                           user_text: str, reply: str) -> None:
    threads = self.state.threads
    now = self.context_manager.now()
    messages = [
        ThreadMessage(role="user", content=user_text, timestamp=now),
        ThreadMessage(role="assistant", content=reply, timestamp=now),
    ]
    if session.thread_id:
      pushed = None
      for msg in messages:
        pushed = await threads.push_message(session.thread_id, msg)
      if pushed is not None:
        return
      logger.warning("Thread %s missing for conversation %s; recreating",
                     session.thread_id, session.id)
    thread = await threads.create(user_id, session.id, messages,
                                  title=user_text[:THREAD_TITLE_MAX] or None)
    session.thread_id = thread.id

  async def _record_bookkeeping(self, session: ConversationSession,
                                intent: Intent, result: DispatchResult) -> None:
    """Queue processing steps and task links against the conversation thread.

    Targets go by conversation token, so they resolve even when the thread
    is only created after this call.
    """
    action = result.action
    if action is None or action.type not in ("create", "update", "delete"):
      return
    linkage = self.state.linkage
    target = TokenId(session.id)
    now = self.context_manager.now()

    if action.status == "failed":
      linkage.enqueue_step(target, ProcessingStep(
          type="ERROR",
          description=f"Error processing calendar {action.type}: {result.content}",
          timestamp=now,
          details={"error": action.details.get("error", "unavailable")},
      ))
      return
    if action.type != "create" or action.status != "success":
      return

    event = result.scheduling.event if result.scheduling else None
    if event is None:
      return
    linkage.enqueue_step(target, ProcessingStep(
        type="STARTED",
        description=f"Processing calendar event: {event.title}",
        timestamp=now,
        details={
            "eventId": event.id,
            "eventTitle": event.title,
            "eventTime": event.start.isoformat(),
        },
    ))
    task = await self.state.threads.create_task("calendar_event",
                                                conversation_id=session.id,
                                                event_id=event.id)
    linkage.enqueue_link(target, task.id)
    linkage.enqueue_step(target, ProcessingStep(
        type="PROGRESS",
        description=f'Calendar event "{event.title}" is being processed',
        timestamp=now,
        details={"taskId": task.id},
    ))
