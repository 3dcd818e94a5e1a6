from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from .config import (
    AUTH_STATUS_TTL_SECONDS,
    LinkageSettings,
    SchedulerSettings,
    default_linkage_settings,
    default_scheduler_settings,
)
from .gateway import CalendarGateway
from .linkage import LinkageQueue
from .models import UserPreferences
from .scheduler import ConflictAwareScheduler
from .store import ConversationStore, ThreadStore

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[str], CalendarGateway]


@dataclass
class AuthStatus:
    authenticated: bool
    checked_at: float
    error: Optional[str] = None


class AuthStatusCache:
    """Per-user calendar auth status with TTL eviction."""

    def __init__(self,
                 ttl_seconds: float = AUTH_STATUS_TTL_SECONDS,
                 clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, AuthStatus] = {}

    def _expired(self, status: AuthStatus) -> bool:
        return (self._clock() - status.checked_at) >= self._ttl

    def get(self, user_id: str) -> Optional[AuthStatus]:
        status = self._entries.get(user_id)
        if status is None:
            return None
        if self._expired(status):
            self._entries.pop(user_id, None)
            return None
        return status

    def set(self, user_id: str, authenticated: bool,
            error: Optional[str] = None) -> AuthStatus:
        status = AuthStatus(authenticated=authenticated,
                            checked_at=self._clock(),
                            error=error)
        self._entries[user_id] = status
        return status

    def invalidate(self, user_id: str) -> None:
        self._entries.pop(user_id, None)

    def evict_expired(self) -> int:
        expired = [key for key, status in self._entries.items()
                   if self._expired(status)]
        for key in expired:
            self._entries.pop(key, None)
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class AppState:
    """Process-wide state, created at startup and torn down at shutdown."""

    def __init__(self,
                 gateway_factory: GatewayFactory,
                 *,
                 scheduler_settings: Optional[SchedulerSettings] = None,
                 linkage_settings: Optional[LinkageSettings] = None,
                 conversations: Optional[ConversationStore] = None,
                 threads: Optional[ThreadStore] = None,
                 auth_cache: Optional[AuthStatusCache] = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None) -> None:
        self.gateway_factory = gateway_factory
        self.scheduler_settings = scheduler_settings or default_scheduler_settings()
        self.conversations = conversations or ConversationStore()
        self.threads = threads or ThreadStore()
        self.auth_cache = auth_cache or AuthStatusCache()
        self.linkage = LinkageQueue(self.threads,
                                    linkage_settings or default_linkage_settings(),
                                    sleep=sleep)
        self.preferences: Dict[str, UserPreferences] = {}
        self.started = False

    async def startup(self) -> None:
        self.auth_cache.evict_expired()
        self.started = True
        logger.info("Calendar assistant state initialized")

    async def shutdown(self) -> None:
        await self.linkage.shutdown()
        self.auth_cache.clear()
        self.preferences.clear()
        self.started = False
        logger.info("Calendar assistant state torn down")

    def get_preferences(self, user_id: str) -> UserPreferences:
        prefs = self.preferences.get(user_id)
        if prefs is None:
            return UserPreferences(timezone=self.scheduler_settings.timezone)
        return prefs.model_copy()

    def set_preferences(self, user_id: str, prefs: UserPreferences) -> None:
        self.preferences[user_id] = prefs

    def gateway_for(self, user_id: str) -> CalendarGateway:
        return self.gateway_factory(user_id)

    def scheduler_for(self, user_id: str,
                      timezone_name: Optional[str] = None) -> ConflictAwareScheduler:
        settings = self.scheduler_settings
        tz = timezone_name or self.get_preferences(user_id).timezone
        if tz and tz != settings.timezone:
            settings = settings.model_copy(update={"timezone": tz})
        return ConflictAwareScheduler(self.gateway_for(user_id), settings)
