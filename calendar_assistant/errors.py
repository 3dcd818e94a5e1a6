from __future__ import annotations

from typing import Optional


class AssistantError(RuntimeError):
    """Base error for calendar assistant failures."""


class AuthRequired(AssistantError):
    """Raised when the calendar credential is missing or cannot be refreshed.

    Callers surface a re-authentication prompt instead of retrying.
    """


class RemoteUnavailable(AssistantError):
    """Raised when the remote calendar fails for a reason other than auth."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        self.message = message
        if status_code is not None:
            message = f"Calendar request failed ({status_code}): {message}"
        super().__init__(message)


class InvalidRequest(AssistantError, ValueError):
    """Raised for malformed scheduling requests, before any remote call."""


class LinkageExhausted(AssistantError):
    """Describes a linkage item dropped after it ran out of retries.

    Never raised to the original requester; the linkage queue logs it.
    """

    def __init__(self, target_id: str, attempts: int,
                 last_error: Optional[str] = None) -> None:
        self.target_id = target_id
        self.attempts = attempts
        self.last_error = last_error
        detail = f"Linkage to {target_id} dropped after {attempts} attempts"
        if last_error:
            detail = f"{detail}: {last_error}"
        super().__init__(detail)


class NotFound(AssistantError, LookupError):
    """Raised when a conversation or thread does not exist for the caller."""
