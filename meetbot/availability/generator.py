"""Candidate slot grid.

Turns a SchedulingRequest into the ordered list of fixed-length slots the
aggregator evaluates. Wall-clock arithmetic happens in the request's zone;
each slot is converted to UTC exactly once, here, and everything
downstream compares UTC instants.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Iterator

from meetbot.config import settings
from meetbot.models.request import SchedulingRequest
from meetbot.models.slot import TimeSlot

logger = logging.getLogger(__name__)


def _days(first: date, last: date) -> Iterator[date]:
    day = first
    while day <= last:
        yield day
        day += timedelta(days=1)


def _minutes_between(start, end) -> int:
    return (end.hour * 60 + end.minute) - (start.hour * 60 + start.minute)


class SlotGenerator:
    """Builds the business-hours grid for a request.

    Slots step by the meeting duration when it divides the working window
    evenly (an 8h day of 60-minute meetings gives 8 back-to-back slots);
    otherwise they fall on the default grid (30 minutes unless configured).
    A slot that would run past the end of working hours is not produced.
    """

    def __init__(self, default_grid_minutes: int | None = None) -> None:
        self._grid = default_grid_minutes or settings.default_grid_minutes

    def step_minutes(self, request: SchedulingRequest) -> int:
        window = _minutes_between(request.working_hours_start, request.working_hours_end)
        if window % request.duration_minutes == 0:
            return request.duration_minutes
        return self._grid

    def generate(self, request: SchedulingRequest, now: datetime | None = None) -> list[TimeSlot]:
        """Return candidate slots in chronological order.

        Excluded weekdays are skipped before any slot is built. When ``now``
        is given, slots starting before ``now + minimum_notice`` are left out.
        The returned slots are unevaluated (vacuously available); run them
        through the aggregator before use.
        """
        zone = request.zone
        duration = timedelta(minutes=request.duration_minutes)
        step = timedelta(minutes=self.step_minutes(request))
        earliest = None
        if now is not None:
            earliest = now + timedelta(minutes=request.minimum_notice_minutes)

        participants = tuple(request.participants)
        slots: list[TimeSlot] = []
        for day in _days(request.date_range_start, request.date_range_end):
            if day.weekday() in request.excluded_weekdays:
                continue
            local = datetime.combine(day, request.working_hours_start)
            day_end = datetime.combine(day, request.working_hours_end)
            while local + duration <= day_end:
                start = local.replace(tzinfo=zone).astimezone(timezone.utc)
                local += step
                if earliest is not None and start < earliest:
                    continue
                slots.append(
                    TimeSlot(
                        date=day,
                        start_time=start,
                        end_time=start + duration,
                        participants=participants,
                    )
                )

        logger.debug(
            "Generated %d candidate slot(s) for %s..%s (%s, step %s)",
            len(slots), request.date_range_start, request.date_range_end,
            request.time_zone, step,
        )
        return slots
