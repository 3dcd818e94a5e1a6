from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .config import DEFAULT_EVENT_DURATION_MINUTES, DEFAULT_TIMEZONE

Speaker = Literal["user", "assistant"]
PrimaryIntent = Literal["create", "update", "delete", "query", "clarify",
                        "unknown"]
SeriesScope = Literal["instance", "series"]
StepType = Literal["STARTED", "PROGRESS", "COMPLETED", "ERROR"]
ActionStatus = Literal["success", "failed", "pending"]


# -------------------------
# Calendar
# -------------------------
class CalendarEvent(BaseModel):
    id: str
    title: str
    start: datetime
    end: datetime
    location: Optional[str] = None
    description: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    recurring: bool = False
    recurring_event_id: Optional[str] = None
    recurrence: Optional[List[str]] = None
    timezone: Optional[str] = None


class EventSpec(BaseModel):
    title: str
    start: datetime
    duration_minutes: int = DEFAULT_EVENT_DURATION_MINUTES
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    recurrence: Optional[str] = None  # RRULE body, e.g. "FREQ=WEEKLY;BYDAY=MO"
    timezone: Optional[str] = None
    series_scope: Optional[SeriesScope] = None

    @property
    def end(self) -> datetime:
        return self.start + timedelta(minutes=self.duration_minutes)

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence)


class EventUpdate(BaseModel):
    title: Optional[str] = None
    start: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: Optional[List[str]] = None
    recurrence: Optional[str] = None
    timezone: Optional[str] = None
    series_scope: Optional[SeriesScope] = None

    def changes_time(self) -> bool:
        return self.start is not None or self.duration_minutes is not None


class SchedulingRequest(BaseModel):
    desired_start: datetime
    duration_minutes: int
    exclude_event_id: Optional[str] = None

    @property
    def desired_end(self) -> datetime:
        return self.desired_start + timedelta(minutes=self.duration_minutes)


class ConflictReport(BaseModel):
    available: bool
    conflicts: List[CalendarEvent] = Field(default_factory=list)
    alternatives: List[datetime] = Field(default_factory=list)


class SchedulingResult(BaseModel):
    """Outcome of a conflict-checked mutation.

    A conflict is a normal result (success=False, available=False), not an
    exception.
    """

    success: bool
    available: bool = True
    event: Optional[CalendarEvent] = None
    conflicts: List[CalendarEvent] = Field(default_factory=list)
    alternatives: List[datetime] = Field(default_factory=list)
    needs_disambiguation: bool = False
    message: Optional[str] = None


# -------------------------
# Intent
# -------------------------
class IntentEntities(BaseModel):
    title: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: Optional[int] = None  # minutes
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: List[str] = Field(default_factory=list)
    recurrence: Optional[str] = None
    event_id: Optional[str] = None
    series_scope: Optional[SeriesScope] = None
    references: Dict[str, Any] = Field(default_factory=dict)


class Intent(BaseModel):
    primary_intent: PrimaryIntent = "unknown"
    sub_intent: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    original_text: str = ""
    entities: IntentEntities = Field(default_factory=IntentEntities)


# -------------------------
# Conversation
# -------------------------
class ConversationAction(BaseModel):
    type: str
    status: ActionStatus
    event_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class Turn(BaseModel):
    speaker: Speaker
    content: str
    timestamp: datetime
    intent: Optional[Intent] = None
    action: Optional[ConversationAction] = None


class UserPreferences(BaseModel):
    timezone: str = DEFAULT_TIMEZONE
    default_duration_minutes: int = DEFAULT_EVENT_DURATION_MINUTES
    notifications: bool = True


class ConversationContext(BaseModel):
    # Insertion order is recency order; the last key is the most recently set.
    active_entities: Dict[str, Any] = Field(default_factory=dict)
    referenced_events: List[str] = Field(default_factory=list)
    goals: List[str] = Field(default_factory=list)
    preferences: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, Any] = Field(default_factory=dict)


class ConversationSession(BaseModel):
    id: str
    user_id: str
    turns: List[Turn] = Field(default_factory=list)
    context: ConversationContext = Field(default_factory=ConversationContext)
    last_activity_time: datetime
    created_at: datetime
    is_active: bool = True
    thread_id: Optional[str] = None


# -------------------------
# Threads
# -------------------------
class ProcessingStep(BaseModel):
    type: StepType
    description: str
    timestamp: datetime
    details: Dict[str, Any] = Field(default_factory=dict)


class ThreadMessage(BaseModel):
    role: Speaker
    content: str
    timestamp: datetime


class AgentTask(BaseModel):
    id: str
    type: str
    status: str = "completed"
    conversation_id: Optional[str] = None
    event_id: Optional[str] = None
    created_at: datetime


class Thread(BaseModel):
    id: str
    user_id: str
    conversation_id: str
    title: str = "New Conversation"
    messages: List[ThreadMessage] = Field(default_factory=list)
    processing_steps: List[ProcessingStep] = Field(default_factory=list)
    related_agent_tasks: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


# -------------------------
# HTTP payloads
# -------------------------
class MessageRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel,
                              populate_by_name=True,
                              extra="ignore")

    message: str
    conversation_id: Optional[str] = None
    timezone: Optional[str] = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    content: str
    intent: Optional[str] = None
    action: Optional[ConversationAction] = None
    suggestions: List[str] = Field(default_factory=list)
    follow_up_questions: List[str] = Field(default_factory=list)
    needs_clarification: bool = False
    needs_reauth: bool = False
    conversation_id: Optional[str] = None
    thread_id: Optional[str] = None
