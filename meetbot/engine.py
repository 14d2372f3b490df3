"""Scheduling engine — proposes slots and commits bookings.

``propose_slots`` is the read path: fan out one calendar read per
participant, evaluate the slot grid against the merged busy data and rank
the result. It never writes anything.

``commit`` is the write path. It does not trust the proposal it was given:
under per-participant locks it re-reads every calendar, re-evaluates the
chosen slot and only then flips the meeting to ``scheduled``. A draft
without an id is written once, already scheduled, so a rejected commit
leaves nothing behind. Two commits that share no participant never wait
on each other.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import weakref
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Sequence

from meetbot.availability import AvailabilityAggregator, SlotGenerator, SlotRanker
from meetbot.calendar_providers.base import CalendarFeed
from meetbot.clock import Clock, SystemClock
from meetbot.config import settings
from meetbot.errors import (
    AlreadyScheduled,
    CalendarFeedError,
    InvalidTransition,
    SchedulingError,
    SlotUnavailable,
)
from meetbot.models.meeting import MEETING_TRANSITIONS, Meeting, MeetingDraft, MeetingStatus
from meetbot.models.request import SchedulingRequest, SlotProposal
from meetbot.models.slot import BusyInterval, TimeSlot
from meetbot.store import InMemoryMeetingRepository, MeetingRepository

log = logging.getLogger("meetbot.engine")


class SchedulingEngine:
    """Composes generator → aggregator → ranker and owns meeting commits.

    Typical use::

        engine = SchedulingEngine(feed)
        proposal = await engine.propose_slots(request)
        meeting = await engine.commit(draft, proposal.best)
    """

    def __init__(
        self,
        feed: CalendarFeed,
        meetings: MeetingRepository | None = None,
        clock: Clock | None = None,
        generator: SlotGenerator | None = None,
        aggregator: AvailabilityAggregator | None = None,
        ranker: SlotRanker | None = None,
        provider_failure_policy: str | None = None,
        meeting_link_base_url: str | None = None,
    ) -> None:
        self._feed = feed
        self._meetings = meetings if meetings is not None else InMemoryMeetingRepository()
        self._clock = clock or SystemClock()
        self._generator = generator or SlotGenerator()
        self._aggregator = aggregator or AvailabilityAggregator()
        self._ranker = ranker or SlotRanker()
        self._policy = provider_failure_policy or settings.provider_failure_policy
        self._link_base = (meeting_link_base_url or settings.meeting_link_base_url).rstrip("/")
        # Entries vanish once no commit holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def meetings(self) -> MeetingRepository:
        return self._meetings

    @property
    def clock(self) -> Clock:
        return self._clock

    # ── Read path ──────────────────────────────────────────────

    async def propose_slots(self, request: SchedulingRequest) -> SlotProposal:
        """Return ranked candidate slots for ``request``.

        Feed failures follow the configured policy: ``assume_busy`` marks
        the participant busy for the whole range and adds a warning,
        ``block`` raises the feed error.
        """
        now = self._clock.now()
        candidates = self._generator.generate(request, now=now)
        if not candidates:
            log.info(
                "No candidate slots for %s..%s (%d min)",
                request.date_range_start, request.date_range_end, request.duration_minutes,
            )
            return SlotProposal(
                slots=[],
                warnings=["No working-hours slots fit the requested range and duration."],
                generated_at=now,
            )

        before = timedelta(minutes=request.buffer_before_minutes)
        after = timedelta(minutes=request.buffer_after_minutes)
        range_start = candidates[0].start_time - before
        range_end = max(slot.end_time for slot in candidates) + after

        busy, unavailable, warnings = await self._read_busy(
            request.participants, range_start, range_end, request.time_zone,
        )
        await self._add_reservations(busy, request.participants, exclude_meeting=None)

        evaluated = self._aggregator.evaluate(
            candidates,
            busy,
            participants=request.participants,
            buffer_before_minutes=request.buffer_before_minutes,
            buffer_after_minutes=request.buffer_after_minutes,
        )
        ranked = self._ranker.rank(evaluated, request.max_suggestions)

        available_count = sum(1 for slot in evaluated if slot.available)
        if available_count == 0:
            warnings.append("No slot is free for every participant in the requested range.")
        log.info(
            "Proposed %d slot(s) for %d participant(s): %d of %d candidates available",
            len(ranked), len(request.participants), available_count, len(evaluated),
        )
        return SlotProposal(
            slots=ranked,
            warnings=warnings,
            unavailable_participants=unavailable,
            generated_at=now,
        )

    async def _read_busy(
        self,
        participants: Sequence[str],
        range_start: datetime,
        range_end: datetime,
        time_zone: str,
    ) -> tuple[dict[str, list[BusyInterval]], list[str], list[str]]:
        """Read every participant's calendar concurrently.

        Returns ``(busy, unavailable_participants, warnings)``.
        """
        results = await asyncio.gather(
            *(
                self._feed.get_busy_intervals(p, range_start, range_end, time_zone)
                for p in participants
            ),
            return_exceptions=True,
        )

        busy: dict[str, list[BusyInterval]] = {}
        unavailable: list[str] = []
        warnings: list[str] = []
        for participant, result in zip(participants, results):
            if isinstance(result, CalendarFeedError):
                if self._policy == "block":
                    log.warning("Calendar read failed for %s (%s); blocking", participant, result.code)
                    raise result
                log.warning(
                    "Calendar read failed for %s (%s); treating as busy", participant, result.code,
                )
                busy[participant] = [
                    BusyInterval(participant=participant, start=range_start, end=range_end)
                ]
                unavailable.append(participant)
                warnings.append(
                    f"Calendar for {participant} could not be read ({result.code}); "
                    f"treated as busy for the whole range."
                )
            elif isinstance(result, BaseException):
                raise result
            else:
                busy[participant] = list(result)
        return busy, unavailable, warnings

    async def _add_reservations(
        self,
        busy: dict[str, list[BusyInterval]],
        participants: Sequence[str],
        exclude_meeting: str | None,
    ) -> None:
        """Count meetings this engine already committed as busy time."""
        for meeting in await self._meetings.scheduled_with(list(participants)):
            if meeting.id == exclude_meeting:
                continue
            start, end = meeting.busy_window
            for participant in meeting.participants:
                if participant in busy:
                    busy[participant].append(
                        BusyInterval(participant=participant, start=start, end=end)
                    )

    # ── Write path ─────────────────────────────────────────────

    async def open_meeting(self, draft: MeetingDraft) -> Meeting:
        """Create a pending meeting for ``draft``."""
        meeting = await self._meetings.add(self._new_meeting(draft))
        log.info("Meeting %s opened (%d participant(s))", meeting.id, len(meeting.participants))
        return meeting

    async def get_meeting(self, meeting_id: str) -> Meeting:
        return await self._meetings.get(meeting_id)

    async def commit(self, draft: MeetingDraft, chosen_slot: TimeSlot) -> Meeting:
        """Book ``chosen_slot`` for the draft's meeting.

        Raises:
            SlotUnavailable: the slot was proposed unavailable, or a fresh
                calendar read shows a conflict now.
            AlreadyScheduled: the meeting already has a time.
            InvalidTransition: the meeting was completed or cancelled.
        """
        if not chosen_slot.available:
            raise SlotUnavailable(list(chosen_slot.conflicts))
        if chosen_slot.duration_minutes != draft.duration_minutes:
            raise SchedulingError(
                f"Slot is {chosen_slot.duration_minutes} minutes, meeting needs {draft.duration_minutes}"
            )

        # A draft without an id is only stored once its slot is confirmed.
        if draft.id:
            meeting = await self._meetings.get(draft.id)
            self._check_schedulable(meeting)
        else:
            meeting = self._new_meeting(draft)
        # Calendars to re-check: the draft's participants when given (a bot
        # with partial quorum only has access to some), else everyone invited.
        checked = draft.participants or meeting.participants

        async with self._participant_locks(checked):
            before = timedelta(minutes=meeting.buffer_before_minutes)
            after = timedelta(minutes=meeting.buffer_after_minutes)
            busy, unavailable, _ = await self._read_busy(
                checked,
                chosen_slot.start_time - before,
                chosen_slot.end_time + after,
                meeting.time_zone,
            )
            if unavailable:
                raise SlotUnavailable(
                    unavailable, f"Could not re-check calendars for {', '.join(unavailable)}"
                )
            await self._add_reservations(busy, checked, exclude_meeting=meeting.id)

            [verdict] = self._aggregator.evaluate(
                [chosen_slot],
                busy,
                participants=checked,
                buffer_before_minutes=meeting.buffer_before_minutes,
                buffer_after_minutes=meeting.buffer_after_minutes,
            )
            if not verdict.available:
                log.info(
                    "Commit of meeting %s rejected: slot %s now conflicts with %d participant(s)",
                    meeting.id, chosen_slot.start_time.isoformat(), len(verdict.conflicts),
                )
                raise SlotUnavailable(list(verdict.conflicts))

            booking = {
                "status": MeetingStatus.SCHEDULED,
                "scheduled_time": chosen_slot.start_time,
                "meeting_link": f"{self._link_base}/{secrets.token_urlsafe(9)}",
                "updated_at": self._clock.now(),
            }
            if draft.id:
                current = await self._meetings.get(meeting.id)
                self._check_schedulable(current)
                scheduled = Meeting.model_validate({**current.model_dump(), **booking})
                stored = await self._meetings.compare_and_swap(scheduled, current.version)
            else:
                stored = await self._meetings.add(
                    Meeting.model_validate({**meeting.model_dump(), **booking})
                )

        log.info("Meeting %s scheduled at %s", stored.id, stored.scheduled_time.isoformat())
        return stored

    async def complete_meeting(self, meeting_id: str) -> Meeting:
        return await self._move_meeting(meeting_id, MeetingStatus.COMPLETED)

    async def cancel_meeting(self, meeting_id: str) -> Meeting:
        return await self._move_meeting(meeting_id, MeetingStatus.CANCELLED)

    async def _move_meeting(self, meeting_id: str, target: MeetingStatus) -> Meeting:
        current = await self._meetings.get(meeting_id)
        if current.status == target:
            return current
        if target not in MEETING_TRANSITIONS[current.status]:
            raise InvalidTransition(current.status.value, target.value)
        updated = current.model_copy(update={"status": target, "updated_at": self._clock.now()})
        stored = await self._meetings.compare_and_swap(updated, current.version)
        log.info("Meeting %s %s -> %s", meeting_id, current.status.value, target.value)
        return stored

    # ── Internal ──────────────────────────────────────────────

    def _new_meeting(self, draft: MeetingDraft) -> Meeting:
        now = self._clock.now()
        fields = draft.model_dump(exclude={"id"})
        if draft.id:
            fields["id"] = draft.id
        return Meeting(**fields, created_at=now, updated_at=now)

    @staticmethod
    def _check_schedulable(meeting: Meeting) -> None:
        if meeting.status == MeetingStatus.SCHEDULED:
            raise AlreadyScheduled(f"Meeting {meeting.id} is already scheduled")
        if MeetingStatus.SCHEDULED not in MEETING_TRANSITIONS[meeting.status]:
            raise InvalidTransition(meeting.status.value, MeetingStatus.SCHEDULED.value)

    @asynccontextmanager
    async def _participant_locks(self, participants: Sequence[str]) -> AsyncIterator[None]:
        # Sorted acquisition so overlapping participant sets cannot deadlock.
        async with AsyncExitStack() as stack:
            for participant in sorted(set(participants)):
                lock = self._locks.get(participant)
                if lock is None:
                    lock = self._locks[participant] = asyncio.Lock()
                await stack.enter_async_context(lock)
            yield
