from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .agent.intent_router import IntentRecognizer
from .agent.nlp import CommandParser, LlmCommandParser, RegexCommandParser
from .agent.orchestrator import ConversationOrchestrator
from .config import (
    DEFAULT_TIMEZONE,
    ENABLE_GCAL,
    EVENTS_DATA_FILE,
    OPENAI_API_KEY,
    PERSIST_LOCAL_EVENTS,
    cors_origins,
)
from .gateway import CalendarGateway
from .gcal import GoogleCalendarGateway, has_gcal_token
from .llm import is_llm_available
from .local_calendar import LocalCalendarGateway
from .routes import router
from .state import AppState, AuthStatusCache, GatewayFactory

logger = logging.getLogger(__name__)


def default_gateway_factory(auth_cache: AuthStatusCache) -> GatewayFactory:
  """Google Calendar for sessions holding a token, one shared local calendar otherwise."""
  local = LocalCalendarGateway(
      persist_path=EVENTS_DATA_FILE if PERSIST_LOCAL_EVENTS else None,
      timezone_name=DEFAULT_TIMEZONE,
  )

  def factory(user_id: str) -> CalendarGateway:
    if has_gcal_token(user_id):
      return GoogleCalendarGateway(user_id, auth_cache=auth_cache)
    return local

  return factory


def default_parser() -> CommandParser:
  if is_llm_available():
    return LlmCommandParser()
  return RegexCommandParser()


def create_app(state: Optional[AppState] = None,
               parser: Optional[CommandParser] = None) -> FastAPI:
  if state is None:
    auth_cache = AuthStatusCache()
    state = AppState(default_gateway_factory(auth_cache), auth_cache=auth_cache)
  orchestrator = ConversationOrchestrator(
      state, IntentRecognizer(parser or default_parser()))

  @asynccontextmanager
  async def lifespan(app: FastAPI):
    await state.startup()
    logger.info("OPENAI_API_KEY: %s, ENABLE_GCAL: %s", bool(OPENAI_API_KEY), ENABLE_GCAL)
    try:
      yield
    finally:
      await state.shutdown()

  app = FastAPI(title="Calendar Assistant", lifespan=lifespan)
  app.state.assistant = state
  app.state.orchestrator = orchestrator

  if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
  app.include_router(router)
  return app


app = create_app()
