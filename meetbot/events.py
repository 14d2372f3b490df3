"""Per-bot event broadcaster for tracing the permission workflow.

Every MeetingBot gets a BotEventBroadcaster. When the state machine acts
on a bot (transitions, reminders, delivery failures, scheduling attempts)
the event is appended to the bot's log and pushed to every subscriber's
asyncio.Queue for delivery over WebSocket.

Broadcasters of finished bots are retired: the registry keeps the most
recent ``max_retired`` of them and drops the rest.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from typing import TypedDict

log = logging.getLogger("meetbot.events")


class BotEvent(TypedDict):
    type: str          # transition | permission | reminder | delivery_failed | schedule_attempt
    timestamp: float
    bot_id: str
    status: str
    data: dict


class BotEventBroadcaster:
    """Per-bot event broadcaster using asyncio.Queue per subscriber."""

    def __init__(self, bot_id: str, max_log: int = 1000) -> None:
        self._bot_id = bot_id
        self._subscribers: list[asyncio.Queue[BotEvent]] = []
        self._event_log: deque[BotEvent] = deque(maxlen=max_log)

    def subscribe(self) -> asyncio.Queue[BotEvent]:
        """Create a new subscriber queue and return it."""
        q: asyncio.Queue[BotEvent] = asyncio.Queue(maxsize=200)
        self._subscribers.append(q)
        log.info("Event subscriber added for bot %s (total: %d)",
                 self._bot_id, len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue[BotEvent]) -> None:
        """Remove a subscriber queue."""
        if q in self._subscribers:
            self._subscribers.remove(q)
        log.info("Event subscriber removed for bot %s (total: %d)",
                 self._bot_id, len(self._subscribers))

    def emit(self, event_type: str, status: str, data: dict) -> None:
        """Broadcast an event to all subscribers and append to event log."""
        event: BotEvent = {
            "type": event_type,
            "timestamp": time.time(),
            "bot_id": self._bot_id,
            "status": status,
            "data": data,
        }
        self._event_log.append(event)

        for q in self._subscribers:
            if q.full():
                # Drop oldest event to make room
                q.get_nowait()
            q.put_nowait(event)

    @property
    def event_log(self) -> list[BotEvent]:
        """Event history for the bot, oldest first (at most ``max_log`` entries)."""
        return list(self._event_log)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class BroadcasterRegistry:
    """Owns one broadcaster per bot id."""

    def __init__(self, max_retired: int = 256, max_log: int = 1000) -> None:
        self._broadcasters: dict[str, BotEventBroadcaster] = {}
        self._retired: OrderedDict[str, None] = OrderedDict()
        self._max_retired = max_retired
        self._max_log = max_log

    def get(self, bot_id: str) -> BotEventBroadcaster:
        """Get or create the broadcaster for a bot."""
        if bot_id not in self._broadcasters:
            self._broadcasters[bot_id] = BotEventBroadcaster(bot_id, max_log=self._max_log)
            log.debug("BotEventBroadcaster created for bot %s", bot_id)
        return self._broadcasters[bot_id]

    def history(self, bot_id: str) -> list[BotEvent]:
        """Event log for a bot without creating a broadcaster for it."""
        broadcaster = self._broadcasters.get(bot_id)
        return broadcaster.event_log if broadcaster is not None else []

    def retire(self, bot_id: str) -> None:
        """Mark a finished bot's broadcaster; the oldest retired ones are removed."""
        self._retired[bot_id] = None
        self._retired.move_to_end(bot_id)
        while len(self._retired) > self._max_retired:
            oldest, _ = self._retired.popitem(last=False)
            self.remove(oldest)

    def remove(self, bot_id: str) -> None:
        self._retired.pop(bot_id, None)
        if self._broadcasters.pop(bot_id, None) is not None:
            log.debug("BotEventBroadcaster removed for bot %s", bot_id)

    def __len__(self) -> int:
        return len(self._broadcasters)
