"""Versioned record stores for meetings and bots.

Persistence technology is a collaborator; these ABCs are the seam and the
in-memory classes are the reference implementation. Every write is a
compare-and-swap on ``version``: the caller passes the version it read,
the store refuses the write if someone else got there first.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from meetbot.errors import BotNotFound, ConcurrentModification, MeetingNotFound
from meetbot.models.bot import MeetingBot
from meetbot.models.meeting import Meeting, MeetingStatus

log = logging.getLogger("meetbot.store")

RecordT = TypeVar("RecordT", Meeting, MeetingBot)


class MeetingRepository(ABC):
    @abstractmethod
    async def get(self, meeting_id: str) -> Meeting:
        """Return the meeting or raise MeetingNotFound."""

    @abstractmethod
    async def add(self, meeting: Meeting) -> Meeting:
        """Insert a new meeting (version 0)."""

    @abstractmethod
    async def compare_and_swap(self, meeting: Meeting, expected_version: int) -> Meeting:
        """Replace the stored meeting if its version is still ``expected_version``."""

    @abstractmethod
    async def scheduled_with(self, participants: list[str]) -> list[Meeting]:
        """Scheduled meetings sharing at least one participant."""


class BotRepository(ABC):
    @abstractmethod
    async def get(self, bot_id: str) -> MeetingBot:
        """Return the bot or raise BotNotFound."""

    @abstractmethod
    async def add(self, bot: MeetingBot) -> MeetingBot:
        """Insert a new bot (version 0)."""

    @abstractmethod
    async def compare_and_swap(self, bot: MeetingBot, expected_version: int) -> MeetingBot:
        """Replace the stored bot if its version is still ``expected_version``."""

    @abstractmethod
    async def find_by_token(self, token: str) -> tuple[MeetingBot, str | None]:
        """Resolve a permission token to ``(bot, email)``.

        Participant tokens resolve to their email; the bot-wide token
        resolves to ``None`` and the caller must say who is granting.
        """

    @abstractmethod
    async def list_active(self) -> list[MeetingBot]:
        """Bots that are not in a terminal state."""


class _VersionedStore(Generic[RecordT]):
    """Dict of records guarded by one short-lived lock per store."""

    not_found: type[Exception]

    def __init__(self) -> None:
        self._records: dict[str, RecordT] = {}
        self._lock = asyncio.Lock()

    async def get(self, record_id: str) -> RecordT:
        record = self._records.get(record_id)
        if record is None:
            raise self.not_found(f"{record_id} not found")
        return record

    async def add(self, record: RecordT) -> RecordT:
        async with self._lock:
            if record.id in self._records:
                raise ConcurrentModification(f"{record.id} already exists")
            stored = record.model_copy(update={"version": 0})
            self._records[record.id] = stored
            return stored

    async def compare_and_swap(self, record: RecordT, expected_version: int) -> RecordT:
        async with self._lock:
            current = self._records.get(record.id)
            if current is None:
                raise self.not_found(f"{record.id} not found")
            if current.version != expected_version:
                log.debug(
                    "CAS conflict on %s: expected v%d, found v%d",
                    record.id, expected_version, current.version,
                )
                raise ConcurrentModification(
                    f"{record.id} changed (expected v{expected_version}, found v{current.version})"
                )
            stored = record.model_copy(update={"version": expected_version + 1})
            self._records[record.id] = stored
            return stored

    def __len__(self) -> int:
        return len(self._records)


class InMemoryMeetingRepository(_VersionedStore[Meeting], MeetingRepository):
    not_found = MeetingNotFound

    async def scheduled_with(self, participants: list[str]) -> list[Meeting]:
        wanted = set(participants)
        return [
            m for m in self._records.values()
            if m.status == MeetingStatus.SCHEDULED and wanted.intersection(m.participants)
        ]


class InMemoryBotRepository(_VersionedStore[MeetingBot], BotRepository):
    not_found = BotNotFound

    async def find_by_token(self, token: str) -> tuple[MeetingBot, str | None]:
        for bot in self._records.values():
            if bot.permission_token and secrets.compare_digest(bot.permission_token.encode(), token.encode()):
                return bot, None
            for email, candidate in bot.participant_tokens.items():
                if secrets.compare_digest(candidate.encode(), token.encode()):
                    return bot, email
        raise BotNotFound("unknown permission token")

    async def list_active(self) -> list[MeetingBot]:
        return [b for b in self._records.values() if not b.is_terminal]
