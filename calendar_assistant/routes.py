from __future__ import annotations

import logging
import re
import secrets
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response

from .agent.normalizer import coerce_datetime, resolve_timezone
from .agent.orchestrator import ConversationOrchestrator
from .config import (
    API_BASE,
    COOKIE_SECURE,
    ENABLE_GCAL,
    SESSION_COOKIE_MAX_AGE_SECONDS,
    SESSION_COOKIE_NAME,
)
from .errors import AssistantError, AuthRequired, InvalidRequest, NotFound, RemoteUnavailable
from .gcal import has_gcal_token, is_gcal_configured
from .linkage import FixedId, parse_identifier
from .models import MessageRequest
from .state import AppState

router = APIRouter()
logger = logging.getLogger(__name__)

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_\-]{16,128}$")


# -------------------------
# Session cookie
# -------------------------
def _get_session_id(request: Request) -> Optional[str]:
  raw = (request.cookies.get(SESSION_COOKIE_NAME) or "").strip()
  return raw if _SESSION_ID_RE.match(raw) else None


def _ensure_session_id(request: Request, response: Response) -> str:
  """Existing cookie session, or a fresh one set on the response."""
  session_id = _get_session_id(request)
  if session_id:
    return session_id
  session_id = secrets.token_urlsafe(32)
  response.set_cookie(SESSION_COOKIE_NAME,
                      session_id,
                      max_age=SESSION_COOKIE_MAX_AGE_SECONDS,
                      httponly=True,
                      secure=COOKIE_SECURE,
                      samesite="none" if COOKIE_SECURE else "lax",
                      path="/")
  return session_id


def _require_session_id(request: Request) -> str:
  session_id = _get_session_id(request)
  if not session_id:
    raise HTTPException(status_code=401, detail="Session is missing.")
  return session_id


def _app_state(request: Request) -> AppState:
  return request.app.state.assistant


def _orchestrator(request: Request) -> ConversationOrchestrator:
  return request.app.state.orchestrator


# -------------------------
# Conversation
# -------------------------
@router.post(f"{API_BASE}/conversation/message")
async def post_message(payload: MessageRequest, request: Request,
                       response: Response) -> Dict[str, Any]:
  message = (payload.message or "").strip()
  if not message:
    raise HTTPException(status_code=400, detail="Message is empty.")
  user_id = _ensure_session_id(request, response)
  try:
    result = await _orchestrator(request).process_user_message(
        user_id,
        message,
        conversation_id=payload.conversation_id,
        timezone=payload.timezone,
    )
  except NotFound as exc:
    raise HTTPException(status_code=404, detail=str(exc)) from exc
  return result.model_dump(mode="json", by_alias=True)


@router.get(f"{API_BASE}/conversation/{{conversation_id}}")
async def get_conversation(conversation_id: str, request: Request) -> Dict[str, Any]:
  user_id = _require_session_id(request)
  session = await _app_state(request).conversations.find_by_id(conversation_id, user_id)
  if session is None:
    raise HTTPException(status_code=404, detail="Conversation not found.")
  return session.model_dump(mode="json")


# -------------------------
# Threads
# -------------------------
@router.get(f"{API_BASE}/threads/{{thread_id}}")
async def get_thread(thread_id: str, request: Request) -> Dict[str, Any]:
  user_id = _require_session_id(request)
  try:
    identifier = parse_identifier(thread_id)
  except InvalidRequest as exc:
    raise HTTPException(status_code=400, detail=str(exc)) from exc

  threads = _app_state(request).threads
  if isinstance(identifier, FixedId):
    thread = await threads.find_by_id(identifier.value)
  else:
    thread = await threads.find_by_conversation_id(identifier.value)
  if thread is None or thread.user_id != user_id:
    raise HTTPException(status_code=404, detail="Thread not found.")
  return thread.model_dump(mode="json")


# -------------------------
# Availability
# -------------------------
@router.get(f"{API_BASE}/availability")
async def get_availability(request: Request,
                           start: str = Query(...),
                           end: str = Query(...),
                           timezone: Optional[str] = Query(None)) -> Dict[str, Any]:
  user_id = _require_session_id(request)
  state = _app_state(request)
  tz = resolve_timezone(timezone, state.get_preferences(user_id).model_dump())
  start_dt = coerce_datetime(start, tz)
  end_dt = coerce_datetime(end, tz)
  if start_dt is None or end_dt is None:
    raise HTTPException(status_code=400, detail="Invalid start/end format.")

  scheduler = state.scheduler_for(user_id, tz)
  try:
    available = await scheduler.check_availability(start_dt, end_dt)
  except InvalidRequest as exc:
    raise HTTPException(status_code=400, detail=str(exc)) from exc
  except AuthRequired as exc:
    raise HTTPException(status_code=401, detail=str(exc)) from exc
  except RemoteUnavailable as exc:
    raise HTTPException(status_code=502, detail=str(exc)) from exc
  except AssistantError as exc:
    logger.exception("Availability check failed")
    raise HTTPException(status_code=500, detail=str(exc)) from exc
  return {
      "start": start_dt.isoformat(),
      "end": end_dt.isoformat(),
      "timezone": tz,
      "available": available,
  }


# -------------------------
# Auth status
# -------------------------
@router.get("/auth/google/status")
@router.get("/auth/google/status/")
async def google_status(request: Request) -> Dict[str, Any]:
  session_id = _get_session_id(request)
  status = _app_state(request).auth_cache.get(session_id) if session_id else None
  return {
      "enabled": ENABLE_GCAL,
      "configured": is_gcal_configured(),
      "has_token": has_gcal_token(session_id),
      "authenticated": status.authenticated if status else None,
      "error": status.error if status else None,
  }
