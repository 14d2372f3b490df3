"""Abstract base class for calendar feeds.

A feed answers one question per participant: when are they busy inside a
range. Any calendar backend (Google, Outlook, CalDAV, ...) implements this
ABC; connection management and OAuth live behind it.
"""

from abc import ABC, abstractmethod
from datetime import datetime

from meetbot.models.slot import BusyInterval


class CalendarFeed(ABC):
    """Abstract busy-time source.

    Implementations raise ``meetbot.errors.ProviderUnavailable`` when the
    backend cannot be reached and ``meetbot.errors.AuthExpired`` when the
    participant's credentials need to be renewed.
    """

    @abstractmethod
    async def get_busy_intervals(
        self,
        participant: str,
        range_start: datetime,
        range_end: datetime,
        time_zone: str,
    ) -> list[BusyInterval]:
        """Return the participant's busy intervals overlapping the range.

        Args:
            participant: Participant email address.
            range_start: Beginning of the window (UTC).
            range_end: End of the window (UTC, exclusive).
            time_zone: IANA zone the caller is working in; feeds that
                expand all-day or recurring events use it.

        Returns:
            BusyInterval objects, in any order, possibly overlapping.
        """
