"""Meeting bot state machine — collects permissions, then books the meeting.

A bot lives for hours or days. Nothing here blocks on a human: every
public method handles one discrete event (a permission grant arriving, a
reminder timer firing, a tick from the background loop) and returns.

States::

    collecting_permissions ──quorum──▶ ready_to_schedule ──commit──▶ scheduled
             │        ▲                       │
             │        └──── quorum lost ──────┤
             ▼                                ▼
           failed ◀─── decline / expiry / retry budget spent
    (any state) ──cancel──▶ cancelled

Every transition reads the bot, computes the next record and writes it
back with a compare-and-swap on ``version``. Two grants racing for the
last permission can both succeed, but only the one whose write moves the
bot out of ``collecting_permissions`` sees that transition and starts
auto-scheduling.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from datetime import datetime, timedelta
from typing import Callable
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from meetbot.clock import Clock
from meetbot.config import settings
from meetbot.engine import SchedulingEngine
from meetbot.errors import (
    AlreadyScheduled,
    CalendarFeedError,
    ConcurrentModification,
    InvalidTransition,
    SchedulingError,
    SlotUnavailable,
    UnknownParticipant,
)
from meetbot.events import BroadcasterRegistry
from meetbot.models.bot import BotOptions, BotStatus, MeetingBot
from meetbot.models.fields import new_id, normalize_email, unique
from meetbot.models.meeting import Meeting, MeetingDraft, MeetingStatus
from meetbot.models.request import SchedulingRequest, SlotProposal
from meetbot.models.slot import TimeSlot
from meetbot.notifications.base import NotificationDispatcher, Notifier
from meetbot.notifications.log import redact_pii
from meetbot.store import BotRepository, InMemoryBotRepository

log = logging.getLogger("meetbot.state_machine")

# Maps each status to the statuses it can move to.
VALID_TRANSITIONS: dict[BotStatus, set[BotStatus]] = {
    BotStatus.COLLECTING_PERMISSIONS: {
        BotStatus.READY_TO_SCHEDULE,
        BotStatus.FAILED,
        BotStatus.CANCELLED,
    },
    BotStatus.READY_TO_SCHEDULE: {
        BotStatus.SCHEDULED,
        BotStatus.COLLECTING_PERMISSIONS,  # a granted participant declined
        BotStatus.FAILED,
        BotStatus.CANCELLED,
    },
    BotStatus.SCHEDULED: {BotStatus.CANCELLED},
    BotStatus.FAILED: {BotStatus.CANCELLED},
    BotStatus.CANCELLED: set(),  # Terminal
}

_CAS_ATTEMPTS = 5

Change = Callable[[MeetingBot], "dict | None"]


class ReminderResult(BaseModel):
    """Outcome of a reminder request.

    ``sent`` is True only when the reminder was counted on the bot;
    otherwise ``bot`` is the unchanged record.
    """

    bot: MeetingBot
    sent: bool
    recipients: list[str] = []
    undelivered: list[str] = []
    reason: str = ""


class MeetingBotStateMachine:
    """Drives MeetingBot records through their lifecycle.

    Typical lifecycle::

        machine = MeetingBotStateMachine(engine, notifier)
        bot = await machine.create_bot(["a@x.com", "b@x.com"], BotOptions(title="Sync"),
                                       created_by="organizer@x.com")

        # Later, from the permission callback
        bot = await machine.grant_permission(bot.id, "a@x.com")

        # Periodically, from the background ticker
        await machine.tick_all()
    """

    def __init__(
        self,
        engine: SchedulingEngine,
        notifier: Notifier,
        bots: BotRepository | None = None,
        clock: Clock | None = None,
        events: BroadcasterRegistry | None = None,
        dispatcher: NotificationDispatcher | None = None,
        retry_budget: int | None = None,
        permission_timeout_hours: int | None = None,
        reminder_interval_hours: int | None = None,
        max_auto_reminders: int | None = None,
        permission_base_url: str | None = None,
    ) -> None:
        self._engine = engine
        self._bots = bots if bots is not None else InMemoryBotRepository()
        self._clock = clock or engine.clock
        self._events = events if events is not None else BroadcasterRegistry()
        self._dispatcher = dispatcher or NotificationDispatcher(notifier)
        self._retry_budget = retry_budget or settings.auto_schedule_retry_budget
        self._timeout = _or_default(permission_timeout_hours, settings.permission_timeout_hours)
        self._reminder_interval = _or_default(reminder_interval_hours, settings.reminder_interval_hours)
        self._max_auto_reminders = _or_default(max_auto_reminders, settings.max_auto_reminders)
        self._base_url = (permission_base_url or settings.permission_base_url).rstrip("/")

    @property
    def engine(self) -> SchedulingEngine:
        return self._engine

    @property
    def bots(self) -> BotRepository:
        return self._bots

    @property
    def events(self) -> BroadcasterRegistry:
        return self._events

    # ── Public API ────────────────────────────────────────────

    async def create_bot(
        self,
        participant_emails: list[str],
        options: BotOptions | None = None,
        *,
        created_by: str = "",
        auto_schedule_enabled: bool = True,
        quorum: int | None = None,
    ) -> MeetingBot:
        """Open the meeting, mint permission links and invite every participant."""
        options = options or BotOptions()
        emails = unique([normalize_email(e) for e in participant_emails])
        now = self._clock.now()

        bot = MeetingBot(
            id=new_id(),
            meeting_ref=new_id(),
            created_by=created_by,
            participant_emails=emails,
            permission_token=secrets.token_urlsafe(24),
            participant_tokens={e: secrets.token_urlsafe(24) for e in emails},
            auto_schedule_enabled=auto_schedule_enabled,
            quorum=quorum,
            options=options,
            created_at=now,
            updated_at=now,
        )
        bot = bot.model_copy(update={"permission_link": self._link(bot.permission_token)})

        await self._engine.open_meeting(self._draft_for(bot, participants=emails))
        bot = await self._bots.add(bot)
        log.info(
            "Bot %s created by %s for %d participant(s), meeting %s",
            bot.id, redact_pii(created_by), len(emails), bot.meeting_ref,
        )
        self._emit(bot, "created", {"participants": len(emails), "auto_schedule": auto_schedule_enabled})

        undelivered = await self._dispatcher.permission_requests(
            {e: self._link(bot.participant_tokens[e]) for e in emails}
        )
        if undelivered:
            _, bot = await self._update(bot.id, lambda b: {"delivery_failures": undelivered})
            self._emit(bot, "delivery_failed", {"kind": "permission_request", "emails": undelivered})
        return bot

    async def get_bot(self, bot_id: str) -> MeetingBot:
        return await self._bots.get(bot_id)

    async def grant_permission(self, bot_id: str, email: str) -> MeetingBot:
        """Record that ``email`` granted calendar access.

        Idempotent. When this grant completes the quorum the bot becomes
        ready and, with auto-scheduling on, tries to book straight away.
        """
        email = self._participant_email(email)

        def change(bot: MeetingBot) -> dict | None:
            if email not in bot.participant_emails:
                raise UnknownParticipant(f"{email} is not a participant of bot {bot.id}")
            if email in bot.permissions_granted:
                return None
            if bot.status not in (BotStatus.COLLECTING_PERMISSIONS, BotStatus.READY_TO_SCHEDULE):
                raise InvalidTransition(
                    bot.status.value, "grant_permission",
                    f"Bot {bot.id} is {bot.status.value}; permissions are closed",
                )
            granted = [*bot.permissions_granted, email]
            changes: dict = {
                "permissions_granted": granted,
                "declined": [d for d in bot.declined if d != email],
            }
            if bot.status == BotStatus.COLLECTING_PERMISSIONS and len(granted) >= bot.required_permissions:
                changes["status"] = BotStatus.READY_TO_SCHEDULE
            return changes

        before, after = await self._update(bot_id, change)
        if after is before:
            return after

        self._emit(after, "permission", {"email": email, "granted": len(after.permissions_granted)})
        if (
            before.status == BotStatus.COLLECTING_PERMISSIONS
            and after.status == BotStatus.READY_TO_SCHEDULE
            and after.auto_schedule_enabled
        ):
            return await self.on_ready_to_schedule(bot_id)
        return after

    async def grant_permission_by_token(self, token: str, email: str | None = None) -> MeetingBot:
        """Grant through a permission link.

        A participant's own token identifies them; the bot-wide link needs
        ``email``.
        """
        bot, token_email = await self._bots.find_by_token(token)
        who = token_email or email
        if not who:
            raise UnknownParticipant("The shared permission link needs the participant's email")
        return await self.grant_permission(bot.id, who)

    async def decline_permission(self, bot_id: str, email: str, reason: str = "") -> MeetingBot:
        """Record an explicit refusal; fails the bot once quorum is out of reach."""
        email = self._participant_email(email)

        def change(bot: MeetingBot) -> dict | None:
            if email not in bot.participant_emails:
                raise UnknownParticipant(f"{email} is not a participant of bot {bot.id}")
            if email in bot.declined:
                return None
            if bot.status not in (BotStatus.COLLECTING_PERMISSIONS, BotStatus.READY_TO_SCHEDULE):
                raise InvalidTransition(
                    bot.status.value, "decline_permission",
                    f"Bot {bot.id} is {bot.status.value}; permissions are closed",
                )
            declined = [*bot.declined, email]
            granted = [g for g in bot.permissions_granted if g != email]
            changes: dict = {"declined": declined, "permissions_granted": granted}
            if len(bot.participant_emails) - len(declined) < bot.required_permissions:
                changes["status"] = BotStatus.FAILED
                changes["failure_reason"] = f"{email} declined" + (f": {reason}" if reason else "")
            elif bot.status == BotStatus.READY_TO_SCHEDULE and len(granted) < bot.required_permissions:
                changes["status"] = BotStatus.COLLECTING_PERMISSIONS
            return changes

        before, after = await self._update(bot_id, change)
        if after is not before:
            self._emit(after, "permission", {"email": email, "declined": True, "reason": reason})
        return after

    async def send_reminder(self, bot_id: str) -> ReminderResult:
        """Remind every outstanding participant.

        Returns a no-op result when nobody is outstanding. Raises
        InvalidTransition if the bot is past collecting permissions but
        someone is still outstanding (e.g. it was cancelled).
        """
        bot = await self._bots.get(bot_id)
        outstanding = bot.outstanding
        if not outstanding:
            return ReminderResult(bot=bot, sent=False, reason="no outstanding participants")
        if bot.status != BotStatus.COLLECTING_PERMISSIONS:
            raise InvalidTransition(
                bot.status.value, "send_reminder",
                f"Reminders are only sent while collecting permissions (bot is {bot.status.value})",
            )

        undelivered = await self._dispatcher.reminders(
            {e: self._link(bot.participant_tokens[e]) for e in outstanding}
        )
        delivered = [e for e in outstanding if e not in undelivered]
        if not delivered:
            self._emit(bot, "delivery_failed", {"kind": "reminder", "emails": undelivered})
            return ReminderResult(
                bot=bot, sent=False, undelivered=undelivered, reason="no reminder could be delivered",
            )

        sent_at = self._clock.now()

        def change(current: MeetingBot) -> dict | None:
            if current.status != BotStatus.COLLECTING_PERMISSIONS:
                return None
            failures = [e for e in current.delivery_failures if e not in delivered]
            return {
                "reminders_sent": current.reminders_sent + 1,
                "last_reminder_sent": sent_at,
                "delivery_failures": unique(failures + undelivered),
            }

        before, after = await self._update(bot_id, change)
        if after is before:
            log.info("Bot %s left collecting_permissions while reminding; reminder not counted", bot_id)
            return ReminderResult(
                bot=after, sent=False, recipients=delivered, undelivered=undelivered,
                reason=f"bot is {after.status.value}",
            )
        log.info("Bot %s reminder #%d sent to %d participant(s)", bot_id, after.reminders_sent, len(delivered))
        self._emit(after, "reminder", {"recipients": len(delivered), "undelivered": undelivered})
        return ReminderResult(bot=after, sent=True, recipients=delivered, undelivered=undelivered)

    async def tick(self, bot_id: str) -> MeetingBot:
        """Advance a bot on a timer: expiry, automatic reminders, auto-scheduling retries."""
        bot = await self._bots.get(bot_id)
        now = self._clock.now()

        if bot.status == BotStatus.COLLECTING_PERMISSIONS:
            if self._timeout and now - bot.created_at >= timedelta(hours=self._timeout):
                return await self._fail(bot_id, "permission collection expired", only_from=bot.status)
            if self._reminder_due(bot, now):
                await self.send_reminder(bot_id)
                return await self._bots.get(bot_id)
        elif bot.status == BotStatus.READY_TO_SCHEDULE and bot.auto_schedule_enabled:
            return await self.on_ready_to_schedule(bot_id)
        return bot

    async def on_ready_to_schedule(self, bot_id: str) -> MeetingBot:
        """One auto-scheduling attempt: propose, re-check cancellation, commit."""
        bot = await self._bots.get(bot_id)
        if bot.status != BotStatus.READY_TO_SCHEDULE:
            return bot
        meeting = await self._engine.get_meeting(bot.meeting_ref)
        if meeting.status != MeetingStatus.PENDING:
            return await self._follow_meeting(bot_id, meeting)

        try:
            proposal = await self._engine.propose_slots(self._request_for(bot))
        except CalendarFeedError as exc:
            return await self._record_attempt_failure(bot_id, f"calendar unavailable ({exc.code})")

        slot = proposal.best
        if slot is None:
            return await self._record_attempt_failure(bot_id, "no available slot in the search window")

        latest = await self._bots.get(bot_id)
        if latest.status != BotStatus.READY_TO_SCHEDULE:
            log.info("Auto-schedule for bot %s suppressed: bot is now %s", bot_id, latest.status.value)
            return latest
        meeting = await self._engine.get_meeting(latest.meeting_ref)
        if meeting.status != MeetingStatus.PENDING:
            return await self._follow_meeting(bot_id, meeting)

        try:
            await self._engine.commit(self._draft_for(latest), slot)
        except SlotUnavailable as exc:
            return await self._record_attempt_failure(bot_id, f"slot taken before commit: {exc.message}")
        except CalendarFeedError as exc:
            return await self._record_attempt_failure(bot_id, f"calendar unavailable ({exc.code})")
        except (AlreadyScheduled, InvalidTransition):
            # The bot was cancelled or the meeting moved on without it.
            latest = await self._bots.get(bot_id)
            if latest.status != BotStatus.READY_TO_SCHEDULE:
                log.info("Auto-schedule for bot %s dropped: bot is now %s", bot_id, latest.status.value)
                return latest
            return await self._follow_meeting(bot_id, await self._engine.get_meeting(latest.meeting_ref))

        return await self._mark_scheduled(bot_id, slot)

    async def propose_for_bot(self, bot_id: str) -> SlotProposal:
        """Slots over the granted participants' calendars, for manual scheduling."""
        bot = await self._bots.get(bot_id)
        if bot.status != BotStatus.READY_TO_SCHEDULE:
            raise InvalidTransition(
                bot.status.value, "propose",
                f"Bot {bot_id} is {bot.status.value}; slots are proposed once it is ready to schedule",
            )
        return await self._engine.propose_slots(self._request_for(bot))

    async def schedule_bot(self, bot_id: str, slot: TimeSlot) -> MeetingBot:
        """Book a slot the organizer picked. SlotUnavailable means propose again."""
        bot = await self._bots.get(bot_id)
        if bot.status != BotStatus.READY_TO_SCHEDULE:
            raise InvalidTransition(bot.status.value, BotStatus.SCHEDULED.value)
        try:
            await self._engine.commit(self._draft_for(bot), slot)
        except (AlreadyScheduled, InvalidTransition):
            await self._follow_meeting(bot_id, await self._engine.get_meeting(bot.meeting_ref))
            raise
        return await self._mark_scheduled(bot_id, slot)

    async def cancel_bot(self, bot_id: str, reason: str = "") -> MeetingBot:
        """Cancel from any state. A meeting that never got a time is cancelled too."""

        def change(bot: MeetingBot) -> dict | None:
            if bot.status == BotStatus.CANCELLED:
                return None
            return {"status": BotStatus.CANCELLED}

        before, after = await self._update(bot_id, change, reason=reason)
        if after is before:
            return after

        meeting = await self._engine.get_meeting(after.meeting_ref)
        if meeting.status == MeetingStatus.PENDING:
            await self._engine.cancel_meeting(meeting.id)
        return after

    async def tick_all(self) -> int:
        """Tick every active bot. Returns how many were ticked."""
        active = await self._bots.list_active()
        for bot in active:
            try:
                await self.tick(bot.id)
            except SchedulingError:
                log.exception("Tick failed for bot %s", bot.id)
        return len(active)

    async def run_ticker(self, interval_seconds: float) -> None:
        """Tick all bots forever, ``interval_seconds`` apart. Cancel the task to stop."""
        log.info("Bot ticker started (every %.1fs)", interval_seconds)
        while True:
            await asyncio.sleep(interval_seconds)
            count = await self.tick_all()
            log.debug("Ticked %d active bot(s)", count)

    # ── Internal: transitions ─────────────────────────────────

    async def _update(
        self, bot_id: str, change: Change, reason: str = "",
    ) -> tuple[MeetingBot, MeetingBot]:
        """Read-modify-CAS loop.

        ``change`` maps the current record to a dict of field updates, or
        None for no-op. Returns ``(before, after)``; ``after is before``
        when nothing was written.
        """
        for _ in range(_CAS_ATTEMPTS):
            current = await self._bots.get(bot_id)
            changes = change(current)
            if changes is None:
                return current, current

            target = changes.get("status", current.status)
            if target != current.status and target not in VALID_TRANSITIONS[current.status]:
                raise InvalidTransition(current.status.value, target.value)

            updated = MeetingBot.model_validate(
                {**current.model_dump(), **changes, "updated_at": self._clock.now()}
            )
            try:
                stored = await self._bots.compare_and_swap(updated, current.version)
            except ConcurrentModification:
                continue

            if stored.status != current.status:
                log.info(
                    "Bot %s: %s → %s%s", bot_id, current.status.value, stored.status.value,
                    f" ({reason or stored.failure_reason})" if (reason or stored.failure_reason) else "",
                )
                self._emit(stored, "transition", {
                    "from": current.status.value,
                    "to": stored.status.value,
                    "reason": reason or stored.failure_reason or "",
                })
            return current, stored

        raise ConcurrentModification(f"Bot {bot_id} kept changing; gave up after {_CAS_ATTEMPTS} attempts")

    async def _fail(self, bot_id: str, reason: str, only_from: BotStatus) -> MeetingBot:
        def change(bot: MeetingBot) -> dict | None:
            if bot.status != only_from:
                return None
            return {"status": BotStatus.FAILED, "failure_reason": reason}

        _, after = await self._update(bot_id, change)
        return after

    async def _record_attempt_failure(self, bot_id: str, reason: str) -> MeetingBot:
        def change(bot: MeetingBot) -> dict | None:
            if bot.status != BotStatus.READY_TO_SCHEDULE:
                return None
            attempts = bot.schedule_attempts + 1
            changes: dict = {"schedule_attempts": attempts, "failure_reason": reason}
            if attempts >= self._retry_budget:
                changes["status"] = BotStatus.FAILED
                changes["failure_reason"] = f"auto-scheduling gave up after {attempts} attempt(s): {reason}"
            return changes

        _, after = await self._update(bot_id, change)
        log.info("Bot %s scheduling attempt %d failed: %s", bot_id, after.schedule_attempts, reason)
        self._emit(after, "schedule_attempt", {"ok": False, "attempt": after.schedule_attempts, "reason": reason})
        return after

    async def _mark_scheduled(self, bot_id: str, slot: TimeSlot) -> MeetingBot:
        def change(bot: MeetingBot) -> dict | None:
            if bot.status != BotStatus.READY_TO_SCHEDULE:
                return None
            return {"status": BotStatus.SCHEDULED, "scheduled_slot": slot, "failure_reason": None}

        _, after = await self._update(bot_id, change)
        if after.status != BotStatus.SCHEDULED:
            # Cancelled (or failed) between commit and this write: undo the booking.
            log.warning(
                "Bot %s became %s while booking; cancelling meeting %s",
                bot_id, after.status.value, after.meeting_ref,
            )
            await self._engine.cancel_meeting(after.meeting_ref)
            return after

        self._emit(after, "schedule_attempt", {"ok": True, "start": slot.start_time.isoformat()})
        return after

    async def _follow_meeting(self, bot_id: str, meeting: Meeting) -> MeetingBot:
        """Bring a ready bot in line with a meeting that moved without it.

        A cancelled meeting cancels the bot. A meeting booked through the
        engine directly is adopted as the bot's slot.
        """
        if meeting.status == MeetingStatus.PENDING:
            return await self._record_attempt_failure(bot_id, "meeting changed during commit")

        if meeting.status == MeetingStatus.CANCELLED:
            def change(bot: MeetingBot) -> dict | None:
                if bot.status != BotStatus.READY_TO_SCHEDULE:
                    return None
                return {"status": BotStatus.CANCELLED}

            _, after = await self._update(bot_id, change, reason=f"meeting {meeting.id} was cancelled")
            return after

        slot = TimeSlot(
            date=meeting.scheduled_time.astimezone(ZoneInfo(meeting.time_zone)).date(),
            start_time=meeting.scheduled_time,
            end_time=meeting.end_time,
            participants=tuple(meeting.participants),
        )

        def adopt(bot: MeetingBot) -> dict | None:
            if bot.status != BotStatus.READY_TO_SCHEDULE:
                return None
            return {"status": BotStatus.SCHEDULED, "scheduled_slot": slot, "failure_reason": None}

        before, after = await self._update(bot_id, adopt, reason=f"meeting {meeting.id} booked directly")
        if after is not before:
            self._emit(after, "schedule_attempt", {
                "ok": True, "start": slot.start_time.isoformat(), "adopted": True,
            })
        return after

    # ── Internal: helpers ─────────────────────────────────────

    def _link(self, token: str) -> str:
        return f"{self._base_url}/{token}"

    @staticmethod
    def _participant_email(email: str) -> str:
        try:
            return normalize_email(email)
        except ValueError:
            raise UnknownParticipant(f"{email!r} is not a participant email") from None

    def _reminder_due(self, bot: MeetingBot, now: datetime) -> bool:
        if not self._reminder_interval or bot.reminders_sent >= self._max_auto_reminders:
            return False
        if not bot.outstanding:
            return False
        last = bot.last_reminder_sent or bot.created_at
        return now - last >= timedelta(hours=self._reminder_interval)

    def _request_for(self, bot: MeetingBot) -> SchedulingRequest:
        opts = bot.options
        zone_today = self._clock.now().astimezone(ZoneInfo(opts.time_zone)).date()
        return SchedulingRequest(
            participants=bot.permissions_granted,
            duration_minutes=opts.duration_minutes,
            date_range_start=zone_today,
            date_range_end=zone_today + timedelta(days=opts.search_days - 1),
            working_hours_start=opts.working_hours_start,
            working_hours_end=opts.working_hours_end,
            excluded_weekdays=opts.excluded_weekdays,
            time_zone=opts.time_zone,
            buffer_before_minutes=opts.buffer_before_minutes,
            buffer_after_minutes=opts.buffer_after_minutes,
            minimum_notice_minutes=opts.minimum_notice_minutes,
        )

    def _draft_for(self, bot: MeetingBot, participants: list[str] | None = None) -> MeetingDraft:
        opts = bot.options
        return MeetingDraft(
            id=bot.meeting_ref,
            title=opts.title,
            description=opts.description,
            created_by=bot.created_by,
            participants=participants if participants is not None else bot.permissions_granted,
            duration_minutes=opts.duration_minutes,
            time_zone=opts.time_zone,
            buffer_before_minutes=opts.buffer_before_minutes,
            buffer_after_minutes=opts.buffer_after_minutes,
        )

    def _emit(self, bot: MeetingBot, event_type: str, data: dict) -> None:
        self._events.get(bot.id).emit(event_type, bot.status.value, data)
        if bot.is_terminal:
            self._events.retire(bot.id)


def _or_default(value: int | None, default: int) -> int:
    return default if value is None else value
