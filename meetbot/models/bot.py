"""Pydantic models for the meeting bot record."""

from __future__ import annotations

from datetime import time
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from meetbot.config import settings

from .fields import Email, UtcDatetime, check_time_zone, new_id, unique
from .slot import TimeSlot


class BotStatus(str, Enum):
    COLLECTING_PERMISSIONS = "collecting_permissions"
    READY_TO_SCHEDULE = "ready_to_schedule"
    SCHEDULED = "scheduled"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({BotStatus.SCHEDULED, BotStatus.FAILED, BotStatus.CANCELLED})


class BotOptions(BaseModel):
    """Shape of the meeting the bot will book once permissions are in."""

    title: str = "Meeting"
    description: str = ""
    duration_minutes: int = Field(default=60, gt=0)
    time_zone: str = Field(default_factory=lambda: settings.default_time_zone)
    search_days: int = Field(default_factory=lambda: settings.search_days, ge=1)
    working_hours_start: time = Field(default_factory=lambda: settings.working_hours_start)
    working_hours_end: time = Field(default_factory=lambda: settings.working_hours_end)
    excluded_weekdays: set[int] = Field(default_factory=lambda: set(settings.excluded_weekdays))
    buffer_before_minutes: int = Field(default=0, ge=0)
    buffer_after_minutes: int = Field(default=0, ge=0)
    minimum_notice_minutes: int = Field(default=0, ge=0)

    @field_validator("time_zone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        return check_time_zone(v)


class MeetingBot(BaseModel):
    """Asynchronous permission collector for one meeting.

    Records are replaced wholesale on every transition (``version`` goes up
    by one each time); nothing edits a stored bot in place.
    """

    id: str = Field(default_factory=new_id)
    meeting_ref: str
    created_by: str = ""
    participant_emails: list[Email]
    permissions_granted: list[Email] = []
    declined: list[Email] = []
    status: BotStatus = BotStatus.COLLECTING_PERMISSIONS
    permission_link: str = ""
    permission_token: str = ""
    participant_tokens: dict[str, str] = {}
    reminders_sent: int = 0
    last_reminder_sent: UtcDatetime | None = None
    auto_schedule_enabled: bool = True
    quorum: int | None = Field(default=None, ge=1)
    options: BotOptions = Field(default_factory=BotOptions)
    scheduled_slot: TimeSlot | None = None
    schedule_attempts: int = 0
    failure_reason: str | None = None
    delivery_failures: list[Email] = []
    created_at: UtcDatetime
    updated_at: UtcDatetime
    version: int = 0

    @field_validator("participant_emails", "permissions_granted", "declined", "delivery_failures")
    @classmethod
    def _dedupe(cls, v: list[str]) -> list[str]:
        return unique(v)

    @model_validator(mode="after")
    def _check_invariants(self) -> "MeetingBot":
        if not self.participant_emails:
            raise ValueError("a meeting bot needs at least one participant")
        members = set(self.participant_emails)
        if not set(self.permissions_granted) <= members:
            raise ValueError("permissions_granted must be a subset of participant_emails")
        if not set(self.declined) <= members:
            raise ValueError("declined must be a subset of participant_emails")
        if self.quorum is not None and self.quorum > len(self.participant_emails):
            raise ValueError("quorum cannot exceed the number of participants")
        if self.status == BotStatus.SCHEDULED:
            if self.scheduled_slot is None:
                raise ValueError("a scheduled bot needs a scheduled_slot")
            if not self.quorum_reached:
                raise ValueError("a scheduled bot needs its quorum of permissions")
        return self

    @property
    def required_permissions(self) -> int:
        return self.quorum or len(self.participant_emails)

    @property
    def quorum_reached(self) -> bool:
        return len(self.permissions_granted) >= self.required_permissions

    @property
    def outstanding(self) -> list[str]:
        """Participants who have neither granted nor declined."""
        done = set(self.permissions_granted) | set(self.declined)
        return [e for e in self.participant_emails if e not in done]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

