"""In-process calendar feed.

Holds busy intervals in a dict keyed by participant. Used as the default
feed of the stand-alone service and by the test suite, which also uses
``fail()`` to simulate provider outages.
"""

from __future__ import annotations

import logging
from datetime import datetime

from meetbot.errors import CalendarFeedError, ProviderUnavailable
from meetbot.models.fields import ensure_utc, normalize_email
from meetbot.models.slot import BusyInterval

from .base import CalendarFeed

logger = logging.getLogger(__name__)


class InMemoryCalendarFeed(CalendarFeed):
    """CalendarFeed backed by a plain dict."""

    def __init__(self, busy: dict[str, list[BusyInterval]] | None = None) -> None:
        self._busy: dict[str, list[BusyInterval]] = {}
        self._failures: dict[str, type[CalendarFeedError]] = {}
        self.reads = 0
        for participant, intervals in (busy or {}).items():
            for interval in intervals:
                self._busy.setdefault(normalize_email(participant), []).append(interval)

    def add_busy(self, participant: str, start: datetime, end: datetime) -> BusyInterval:
        """Mark ``participant`` busy for ``[start, end)``."""
        interval = BusyInterval(participant=participant, start=start, end=end)
        self._busy.setdefault(interval.participant, []).append(interval)
        return interval

    def clear(self, participant: str) -> None:
        self._busy.pop(normalize_email(participant), None)

    def fail(
        self,
        participant: str,
        error: type[CalendarFeedError] = ProviderUnavailable,
    ) -> None:
        """Make every read for ``participant`` raise ``error``."""
        self._failures[normalize_email(participant)] = error

    def recover(self, participant: str) -> None:
        self._failures.pop(normalize_email(participant), None)

    async def get_busy_intervals(
        self,
        participant: str,
        range_start: datetime,
        range_end: datetime,
        time_zone: str,
    ) -> list[BusyInterval]:
        self.reads += 1
        participant = normalize_email(participant)
        error = self._failures.get(participant)
        if error is not None:
            raise error(participant)

        start = ensure_utc(range_start)
        end = ensure_utc(range_end)
        intervals = [i for i in self._busy.get(participant, []) if i.overlaps(start, end)]
        logger.debug(
            "Feed read for %s: %d busy interval(s) in [%s, %s)",
            participant, len(intervals), start.isoformat(), end.isoformat(),
        )
        return intervals
