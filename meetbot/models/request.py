"""Pydantic models for slot search requests and their results."""

from __future__ import annotations

from datetime import date, time
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_validator, model_validator

from meetbot.config import settings

from .fields import Email, UtcDatetime, check_time_zone, unique
from .slot import TimeSlot


class SchedulingRequest(BaseModel):
    """What to search for: who, how long, which days, which hours."""

    participants: list[Email] = []
    duration_minutes: int = Field(gt=0)
    date_range_start: date
    date_range_end: date  # inclusive
    working_hours_start: time = Field(default_factory=lambda: settings.working_hours_start)
    working_hours_end: time = Field(default_factory=lambda: settings.working_hours_end)
    excluded_weekdays: set[int] = Field(default_factory=lambda: set(settings.excluded_weekdays))
    time_zone: str = Field(default_factory=lambda: settings.default_time_zone)
    buffer_before_minutes: int = Field(default=0, ge=0)
    buffer_after_minutes: int = Field(default=0, ge=0)
    minimum_notice_minutes: int = Field(default=0, ge=0)
    max_suggestions: int | None = Field(default=None, ge=1)

    @field_validator("participants")
    @classmethod
    def _dedupe(cls, v: list[str]) -> list[str]:
        return unique(v)

    @field_validator("time_zone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        return check_time_zone(v)

    @field_validator("excluded_weekdays")
    @classmethod
    def _weekday_range(cls, v: set[int]) -> set[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("weekdays are 0 (Mon) .. 6 (Sun)")
        return v

    @model_validator(mode="after")
    def _check_ranges(self) -> "SchedulingRequest":
        if self.date_range_end < self.date_range_start:
            raise ValueError("date_range_end is before date_range_start")
        if self.working_hours_end <= self.working_hours_start:
            raise ValueError("working_hours_end must be after working_hours_start")
        return self

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.time_zone)


class SlotProposal(BaseModel):
    """Ranked slots plus anything the caller should be warned about."""

    slots: list[TimeSlot] = []
    warnings: list[str] = []
    unavailable_participants: list[Email] = []
    generated_at: UtcDatetime

    @property
    def best(self) -> TimeSlot | None:
        """First available slot, if any."""
        for slot in self.slots:
            if slot.available:
                return slot
        return None

