"""Merges busy intervals across participants into per-slot verdicts."""

from __future__ import annotations

from bisect import bisect_right
from datetime import datetime, timedelta
from typing import Iterable, Sequence

from meetbot.models.slot import BusyInterval, TimeSlot


class _Timeline:
    """One participant's busy time as sorted, disjoint ``[start, end)`` runs."""

    def __init__(self, intervals: Iterable[BusyInterval]) -> None:
        merged: list[list[datetime]] = []
        for interval in sorted(intervals, key=lambda i: i.start):
            if merged and interval.start <= merged[-1][1]:
                merged[-1][1] = max(merged[-1][1], interval.end)
            else:
                merged.append([interval.start, interval.end])
        self._starts = [run[0] for run in merged]
        self._ends = [run[1] for run in merged]

    def overlaps(self, start: datetime, end: datetime) -> bool:
        # First run that ends after ``start``; it overlaps iff it starts before ``end``.
        i = bisect_right(self._ends, start)
        return i < len(self._starts) and self._starts[i] < end


class AvailabilityAggregator:
    """Marks each slot available or not, listing the conflicting participants.

    A participant conflicts with a slot when any of their busy intervals
    overlaps ``[start - buffer_before, end + buffer_after)``. A slot nobody
    was asked about is available.
    """

    def evaluate(
        self,
        candidates: Sequence[TimeSlot],
        busy: dict[str, list[BusyInterval]],
        participants: Sequence[str] | None = None,
        buffer_before_minutes: int = 0,
        buffer_after_minutes: int = 0,
    ) -> list[TimeSlot]:
        before = timedelta(minutes=buffer_before_minutes)
        after = timedelta(minutes=buffer_after_minutes)

        timelines: dict[str, _Timeline] = {}
        evaluated: list[TimeSlot] = []
        for slot in candidates:
            who = list(participants) if participants is not None else list(slot.participants)
            window_start = slot.start_time - before
            window_end = slot.end_time + after
            conflicts = []
            for participant in who:
                timeline = timelines.get(participant)
                if timeline is None:
                    timeline = timelines[participant] = _Timeline(busy.get(participant, []))
                if timeline.overlaps(window_start, window_end):
                    conflicts.append(participant)
            evaluated.append(
                slot.model_copy(
                    update={
                        "available": not conflicts,
                        "conflicts": tuple(conflicts),
                        "participants": tuple(who),
                    }
                )
            )
        return evaluated
