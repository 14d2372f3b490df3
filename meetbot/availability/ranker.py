"""Orders evaluated slots by preference."""

from __future__ import annotations

from typing import Sequence

from meetbot.config import settings
from meetbot.models.slot import TimeSlot


def _rank_key(slot: TimeSlot) -> tuple:
    # Available first, then fewest conflicts, then earliest.
    return (not slot.available, len(slot.conflicts), slot.start_time)


class SlotRanker:
    """Deterministic slot ordering with a suggestion cap.

    The cap is applied after sorting, so an available slot is never cut
    while an unavailable one stays in.
    """

    def __init__(self, max_suggestions: int | None = None) -> None:
        self._max_suggestions = max_suggestions

    def rank(self, slots: Sequence[TimeSlot], max_suggestions: int | None = None) -> list[TimeSlot]:
        cap = max_suggestions or self._max_suggestions or settings.max_suggestions
        return sorted(slots, key=_rank_key)[:cap]
