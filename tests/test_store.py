"""Tests for the versioned in-memory repositories and the injectable clock."""

import sys
import os
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from meetbot.clock import FixedClock, SystemClock
from meetbot.errors import BotNotFound, ConcurrentModification, MeetingNotFound
from meetbot.models import BotStatus, Meeting, MeetingBot, MeetingStatus
from meetbot.store import InMemoryBotRepository, InMemoryMeetingRepository

NOW = datetime(2026, 3, 15, 8, 0, tzinfo=timezone.utc)


def _meeting(**overrides) -> Meeting:
    fields = dict(title="Sync", participants=["a@x.com", "b@x.com"], duration_minutes=30, created_at=NOW, updated_at=NOW)
    fields.update(overrides)
    return Meeting(**fields)


def _bot(**overrides) -> MeetingBot:
    fields = dict(
        meeting_ref="m1",
        participant_emails=["a@x.com", "b@x.com"],
        permission_token="bot-token",
        participant_tokens={"a@x.com": "token-a", "b@x.com": "token-b"},
        created_at=NOW,
        updated_at=NOW,
    )
    fields.update(overrides)
    return MeetingBot(**fields)


# ── Compare-and-swap ────────────────────────────────────────────────


class TestCompareAndSwap:
    @pytest.mark.asyncio
    async def test_add_starts_at_version_zero(self):
        repo = InMemoryMeetingRepository()
        stored = await repo.add(_meeting(version=7))
        assert stored.version == 0
        assert await repo.get(stored.id) == stored

    @pytest.mark.asyncio
    async def test_duplicate_add_rejected(self):
        repo = InMemoryMeetingRepository()
        meeting = await repo.add(_meeting())
        with pytest.raises(ConcurrentModification):
            await repo.add(meeting)

    @pytest.mark.asyncio
    async def test_swap_bumps_version(self):
        repo = InMemoryMeetingRepository()
        meeting = await repo.add(_meeting())
        updated = await repo.compare_and_swap(meeting.model_copy(update={"title": "Renamed"}), 0)
        assert updated.version == 1
        assert (await repo.get(meeting.id)).title == "Renamed"

    @pytest.mark.asyncio
    async def test_stale_swap_rejected(self):
        repo = InMemoryMeetingRepository()
        meeting = await repo.add(_meeting())
        await repo.compare_and_swap(meeting.model_copy(update={"title": "First"}), 0)
        with pytest.raises(ConcurrentModification):
            await repo.compare_and_swap(meeting.model_copy(update={"title": "Second"}), 0)
        assert (await repo.get(meeting.id)).title == "First"

    @pytest.mark.asyncio
    async def test_missing_records(self):
        with pytest.raises(MeetingNotFound):
            await InMemoryMeetingRepository().get("nope")
        with pytest.raises(BotNotFound):
            await InMemoryBotRepository().compare_and_swap(_bot(), 0)

    @pytest.mark.asyncio
    async def test_scheduled_with(self):
        repo = InMemoryMeetingRepository()
        pending = await repo.add(_meeting())
        scheduled = await repo.add(
            _meeting(participants=["b@x.com", "c@x.com"], status=MeetingStatus.SCHEDULED, scheduled_time=NOW)
        )
        found = await repo.scheduled_with(["c@x.com"])
        assert [m.id for m in found] == [scheduled.id]
        assert pending.id not in [m.id for m in await repo.scheduled_with(["a@x.com", "b@x.com"])]


# ── Bot lookups ─────────────────────────────────────────────────────


class TestBotRepository:
    @pytest.mark.asyncio
    async def test_find_by_participant_token(self):
        repo = InMemoryBotRepository()
        bot = await repo.add(_bot())
        found, email = await repo.find_by_token("token-b")
        assert found.id == bot.id
        assert email == "b@x.com"

    @pytest.mark.asyncio
    async def test_find_by_bot_token(self):
        repo = InMemoryBotRepository()
        bot = await repo.add(_bot())
        found, email = await repo.find_by_token("bot-token")
        assert found.id == bot.id
        assert email is None

    @pytest.mark.asyncio
    async def test_unknown_token(self):
        repo = InMemoryBotRepository()
        await repo.add(_bot())
        with pytest.raises(BotNotFound):
            await repo.find_by_token("token-z")
        with pytest.raises(BotNotFound):
            await repo.find_by_token("tökén")

    @pytest.mark.asyncio
    async def test_list_active_skips_terminal(self):
        repo = InMemoryBotRepository()
        active = await repo.add(_bot())
        await repo.add(_bot(status=BotStatus.CANCELLED, permission_token="t2", participant_tokens={}))
        assert [b.id for b in await repo.list_active()] == [active.id]


# ── Clocks ──────────────────────────────────────────────────────────


class TestClock:
    def test_system_clock_is_utc(self):
        assert SystemClock().now().tzinfo == timezone.utc

    def test_fixed_clock_advances(self):
        clock = FixedClock(NOW)
        assert clock.now() == NOW
        assert clock.advance(hours=2) == NOW + timedelta(hours=2)
        assert clock.now() == NOW + timedelta(hours=2)

    def test_fixed_clock_normalizes_to_utc(self):
        clock = FixedClock(datetime(2026, 3, 15, 8, 0))
        assert clock.now() == NOW
        clock.set(datetime(2026, 3, 15, 10, 0, tzinfo=timezone(timedelta(hours=2))))
        assert clock.now() == NOW
