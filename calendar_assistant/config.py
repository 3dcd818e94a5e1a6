from __future__ import annotations

import os
import pathlib
from typing import FrozenSet, Optional, Tuple

from pydantic import BaseModel, Field

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
LLM_DEBUG = os.getenv("LLM_DEBUG", "0") == "1"
DEFAULT_TIMEZONE = os.getenv("ASSISTANT_TIMEZONE", "UTC").strip() or "UTC"


# -------------------------
# Google Calendar
# -------------------------
ENABLE_GCAL = os.getenv("ENABLE_GCAL", "0") == "1"
GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI")
GOOGLE_CALENDAR_ID = os.getenv("GOOGLE_CALENDAR_ID", "primary")
GCAL_SCOPES = [
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
]

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
GOOGLE_TOKEN_DIR = pathlib.Path(
    os.getenv("GOOGLE_TOKEN_DIR", str(BASE_DIR / "gcal_tokens")))
EVENTS_DATA_FILE = pathlib.Path(
    os.getenv("EVENTS_DATA_FILE", str(BASE_DIR / "events_data.json")))
PERSIST_LOCAL_EVENTS = os.getenv("PERSIST_LOCAL_EVENTS", "0") == "1"

# -------------------------
# Session / HTTP
# -------------------------
SESSION_COOKIE_NAME = "assistant_session"
SESSION_COOKIE_MAX_AGE_SECONDS = int(
    os.getenv("ASSISTANT_SESSION_MAX_AGE_SECONDS", str(60 * 60 * 24 * 30)))
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "0") == "1"
API_BASE = os.getenv("API_BASE", "/api")

CORS_ALLOW_ORIGINS = os.getenv("CORS_ALLOW_ORIGINS", "")
cors_origins: list[str] = [
    origin.strip() for origin in CORS_ALLOW_ORIGINS.split(",") if origin.strip()
]

# -------------------------
# NLP
# -------------------------
AGENT_NLP_MODEL = os.getenv("AGENT_NLP_MODEL", "gpt-5-mini").strip() or "gpt-5-mini"
OPENAI_REASONING_EFFORT = os.getenv("OPENAI_REASONING_EFFORT", "low").strip() or "low"
NLP_MAX_COMPLETION_TOKENS = int(os.getenv("NLP_MAX_COMPLETION_TOKENS", "4000"))

# -------------------------
# Runtime limits / defaults
# -------------------------
BUSINESS_HOURS_START = int(os.getenv("BUSINESS_HOURS_START", "9"))
BUSINESS_HOURS_END = int(os.getenv("BUSINESS_HOURS_END", "17"))
SLOT_STEP_MINUTES = 30
ALTERNATIVE_HORIZON_DAYS = 14
MAX_ALTERNATIVES = 3
CLOCK_SKEW_MINUTES = 0
DEFAULT_EVENT_DURATION_MINUTES = 30
DEFAULT_QUERY_WINDOW_MINUTES = 24 * 60

CLARIFY_CONFIDENCE_THRESHOLD = 0.6
GOAL_CONFIDENCE_THRESHOLD = 0.8
SESSION_IDLE_EXPIRY_HOURS = 6
MAX_REFERENCED_EVENTS = 5
MAX_HISTORY_TURNS = 20

LINKAGE_MAX_RETRIES = 5
LINKAGE_RETRY_INTERVALS_MS: Tuple[int, ...] = (100, 300, 500, 1000, 3000)
AUTH_STATUS_TTL_SECONDS = int(os.getenv("AUTH_STATUS_TTL_SECONDS", "300"))


class SchedulerSettings(BaseModel):
    """Knobs for the conflict-aware scheduler."""

    business_start_hour: int = Field(default=BUSINESS_HOURS_START, ge=0, le=23)
    business_end_hour: int = Field(default=BUSINESS_HOURS_END, ge=1, le=24)
    # None means every day of the week is a working day (0 = Monday).
    working_days: Optional[FrozenSet[int]] = None
    step_minutes: int = Field(default=SLOT_STEP_MINUTES, gt=0)
    horizon_days: int = Field(default=ALTERNATIVE_HORIZON_DAYS, gt=0)
    max_alternatives: int = Field(default=MAX_ALTERNATIVES, ge=0)
    clock_skew_minutes: int = Field(default=CLOCK_SKEW_MINUTES, ge=0)
    timezone: str = DEFAULT_TIMEZONE


class LinkageSettings(BaseModel):
    max_retries: int = Field(default=LINKAGE_MAX_RETRIES, gt=0)
    retry_intervals_ms: Tuple[int, ...] = LINKAGE_RETRY_INTERVALS_MS


def default_scheduler_settings() -> SchedulerSettings:
    return SchedulerSettings()


def default_linkage_settings() -> LinkageSettings:
    return LinkageSettings()
