"""Error taxonomy for the reminder engine.

Hard errors (raised and propagated to the caller):
- ``AuthorizationError``: ownership mismatch on confirm/cancel
- ``ReminderNotFoundError``: unknown reminder id
- ``InvalidTransitionError``: a status change the state machine forbids
- ``UpstreamUnavailableError``: extractor or history provider unreachable

Soft outcomes (counted, never raised past the lifecycle manager) are named by
``SkipReason``.  ``CalendarSyncError`` is raised by sync adapters and turned
into a failed ``SyncOutcome`` by the lifecycle manager.
"""

from __future__ import annotations

import enum


class CommitmentsError(Exception):
    """Base class for every error raised by this package."""


class ConfigError(CommitmentsError):
    """Raised when configuration is missing, malformed, or invalid."""


class AuthorizationError(CommitmentsError):
    """Raised when an owner acts on a reminder they do not own."""

    def __init__(self, reminder_id: object, owner_id: str) -> None:
        self.reminder_id = reminder_id
        self.owner_id = owner_id
        super().__init__(f"Owner {owner_id!r} is not authorized for reminder {reminder_id}")


class ReminderNotFoundError(CommitmentsError):
    """Raised when a reminder id does not exist."""

    def __init__(self, reminder_id: object) -> None:
        self.reminder_id = reminder_id
        super().__init__(f"Reminder {reminder_id} not found")


class InvalidTransitionError(CommitmentsError):
    """Raised when an invalid status transition is attempted."""


class UpstreamUnavailableError(CommitmentsError):
    """Raised when the candidate extractor or history provider cannot be reached."""

    def __init__(self, collaborator: str, message: str) -> None:
        self.collaborator = collaborator
        self.message = message
        super().__init__(f"{collaborator} unavailable: {message}")


class CalendarSyncError(CommitmentsError):
    """Base error raised by calendar sync adapters."""


class CalendarCredentialError(CalendarSyncError):
    """Raised when calendar credential JSON is missing or invalid."""


class CalendarTokenRefreshError(CalendarSyncError):
    """Raised when the refresh-token exchange fails."""


class CalendarRequestError(CalendarSyncError):
    """Raised when a calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar API request failed ({status_code}): {message}")


class SkipReason(enum.StrEnum):
    """Why a candidate was dropped without creating a reminder."""

    PARSE_FAILURE = "parse_failure"
    PAST_EVENT = "past_event"
    DUPLICATE = "duplicate"
