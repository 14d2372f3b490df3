"""Pydantic models for busy intervals and candidate time slots."""

from __future__ import annotations

import datetime as dt

from pydantic import BaseModel, ConfigDict, model_validator

from .fields import Email, UtcDatetime


class BusyInterval(BaseModel):
    """A half-open ``[start, end)`` range during which a participant is busy."""

    model_config = ConfigDict(frozen=True)

    participant: Email
    start: UtcDatetime
    end: UtcDatetime

    @model_validator(mode="after")
    def _check_order(self) -> "BusyInterval":
        if self.end <= self.start:
            raise ValueError("busy interval must end after it starts")
        return self

    def overlaps(self, start: dt.datetime, end: dt.datetime) -> bool:
        return self.start < end and start < self.end


class TimeSlot(BaseModel):
    """A fixed-duration candidate meeting time.

    ``date`` is the local calendar date in the request's time zone;
    ``start_time``/``end_time`` are UTC. ``available`` and ``conflicts``
    are filled in by the aggregator and never edited afterwards.
    """

    model_config = ConfigDict(frozen=True)

    date: dt.date
    start_time: UtcDatetime
    end_time: UtcDatetime
    available: bool = True
    conflicts: tuple[Email, ...] = ()
    participants: tuple[Email, ...] = ()

    @model_validator(mode="after")
    def _check_consistency(self) -> "TimeSlot":
        if self.end_time <= self.start_time:
            raise ValueError("slot must end after it starts")
        if self.available == bool(self.conflicts):
            raise ValueError("available must be true exactly when there are no conflicts")
        return self

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)
