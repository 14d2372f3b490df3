"""Pydantic models for meetings and the drafts that book them."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from meetbot.config import settings

from .fields import Email, UtcDatetime, check_time_zone, new_id, unique


class MeetingStatus(str, Enum):
    PENDING = "pending"
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Maps each status to the statuses it can move to.
MEETING_TRANSITIONS: dict[MeetingStatus, set[MeetingStatus]] = {
    MeetingStatus.PENDING: {MeetingStatus.SCHEDULED, MeetingStatus.CANCELLED},
    MeetingStatus.SCHEDULED: {MeetingStatus.COMPLETED, MeetingStatus.CANCELLED},
    MeetingStatus.COMPLETED: set(),  # Terminal
    MeetingStatus.CANCELLED: set(),  # Terminal
}


class MeetingDraft(BaseModel):
    """Data needed to book a meeting.

    ``id`` points at an existing pending meeting (the bot flow opens one up
    front); without it, committing opens a new meeting.
    """

    id: str | None = None
    title: str
    description: str = ""
    created_by: str = ""
    participants: list[Email] = []
    duration_minutes: int = Field(gt=0)
    time_zone: str = Field(default_factory=lambda: settings.default_time_zone)
    buffer_before_minutes: int = Field(default=0, ge=0)
    buffer_after_minutes: int = Field(default=0, ge=0)

    @field_validator("participants")
    @classmethod
    def _dedupe(cls, v: list[str]) -> list[str]:
        return unique(v)

    @field_validator("time_zone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        return check_time_zone(v)


class Meeting(BaseModel):
    """A meeting record. Only the engine moves it between statuses."""

    id: str = Field(default_factory=new_id)
    title: str
    description: str = ""
    created_by: str = ""
    participants: list[Email] = []
    scheduled_time: UtcDatetime | None = None
    duration_minutes: int = Field(gt=0)
    status: MeetingStatus = MeetingStatus.PENDING
    time_zone: str = "UTC"
    meeting_link: str | None = None
    buffer_before_minutes: int = 0
    buffer_after_minutes: int = 0
    created_at: UtcDatetime
    updated_at: UtcDatetime
    version: int = 0

    @model_validator(mode="after")
    def _check_schedule(self) -> "Meeting":
        if self.status in (MeetingStatus.SCHEDULED, MeetingStatus.COMPLETED) and self.scheduled_time is None:
            raise ValueError(f"a {self.status.value} meeting needs a scheduled_time")
        return self

    @property
    def end_time(self) -> datetime | None:
        if self.scheduled_time is None:
            return None
        return self.scheduled_time + timedelta(minutes=self.duration_minutes)

    @property
    def busy_window(self) -> tuple[datetime, datetime] | None:
        """``[start, end)`` this meeting keeps its participants busy, buffers included."""
        if self.status != MeetingStatus.SCHEDULED:
            return None
        return (
            self.scheduled_time - timedelta(minutes=self.buffer_before_minutes),
            self.end_time + timedelta(minutes=self.buffer_after_minutes),
        )
