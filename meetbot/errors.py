"""Exception hierarchy for the scheduling core.

Every error carries the HTTP status the API layer answers with, so the
FastAPI exception handler does not need a lookup table of its own.
Expected business outcomes (no free slot, a participant declining, nobody
left to remind) are result states and never show up here.
"""

from __future__ import annotations


class SchedulingError(Exception):
    """Base class for all scheduling-core errors."""

    status_code: int = 400
    code: str = "scheduling_error"

    def __init__(self, message: str = "") -> None:
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


# ── Calendar feed ──────────────────────────────────────────────────

class CalendarFeedError(SchedulingError):
    """A calendar feed read failed."""

    status_code = 503
    code = "calendar_feed_error"

    def __init__(self, participant: str = "", message: str = "") -> None:
        self.participant = participant
        super().__init__(message or f"Calendar feed read failed for {participant or 'participant'}")


class ProviderUnavailable(CalendarFeedError):
    """The calendar provider could not be reached."""

    code = "provider_unavailable"


class AuthExpired(CalendarFeedError):
    """The participant's calendar credentials have expired."""

    code = "auth_expired"


# ── Scheduling ─────────────────────────────────────────────────────

class SlotUnavailable(SchedulingError):
    """The chosen slot is no longer free; propose again."""

    status_code = 409
    code = "slot_unavailable"

    def __init__(self, conflicts: list[str] | None = None, message: str = "") -> None:
        self.conflicts = list(conflicts or [])
        if not message and self.conflicts:
            message = f"Slot conflicts with {len(self.conflicts)} participant(s)"
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        d["conflicts"] = self.conflicts
        return d


class AlreadyScheduled(SchedulingError):
    """The meeting has already been scheduled."""

    status_code = 409
    code = "already_scheduled"


class InvalidTransition(SchedulingError):
    """The requested transition is not allowed from the current state."""

    status_code = 409
    code = "invalid_transition"

    def __init__(self, from_state: str, to_state: str, message: str = "") -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(message or f"Invalid transition: {from_state} -> {to_state}")


class ConcurrentModification(SchedulingError):
    """The record changed between read and write."""

    status_code = 409
    code = "concurrent_modification"


# ── Caller errors ─────────────────────────────────────────────────

class UnknownParticipant(SchedulingError):
    """The email is not a participant of this bot."""

    status_code = 422
    code = "unknown_participant"


class BotNotFound(SchedulingError):
    """No meeting bot with that id or token."""

    status_code = 404
    code = "bot_not_found"


class MeetingNotFound(SchedulingError):
    """No meeting with that id."""

    status_code = 404
    code = "meeting_not_found"


# ── Notifications ─────────────────────────────────────────────────

class DeliveryFailed(SchedulingError):
    """A notification could not be delivered."""

    status_code = 502
    code = "delivery_failed"
