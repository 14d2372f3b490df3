"""Notifier ABC and retrying dispatch.

The notifier is the transport (email, SMS, chat); the dispatcher wraps it
with exponential-backoff retries and turns exhausted retries into a list
of undelivered addresses instead of an exception. One bounced email never
fails a whole bot.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from meetbot.config import settings
from meetbot.errors import DeliveryFailed

logger = logging.getLogger(__name__)

SendFn = Callable[[str, str], Awaitable[None]]


class Notifier(ABC):
    """Abstract notification transport.

    Both methods return on success and raise
    ``meetbot.errors.DeliveryFailed`` when the message could not be handed
    off.
    """

    @abstractmethod
    async def send_permission_request(self, email: str, link: str) -> None:
        """Ask ``email`` to grant calendar access via ``link``."""

    @abstractmethod
    async def send_reminder(self, email: str, link: str) -> None:
        """Remind ``email`` that their permission is still outstanding."""


class NotificationDispatcher:
    """Delivers notifications with bounded retries."""

    def __init__(
        self,
        notifier: Notifier,
        max_attempts: int | None = None,
        backoff_min: float | None = None,
        backoff_max: float | None = None,
    ) -> None:
        self._notifier = notifier
        self._max_attempts = max_attempts or settings.notification_max_attempts
        self._backoff_min = settings.notification_backoff_min_seconds if backoff_min is None else backoff_min
        self._backoff_max = settings.notification_backoff_max_seconds if backoff_max is None else backoff_max

    async def _deliver(self, send: SendFn, email: str, link: str) -> bool:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_attempts),
                wait=wait_exponential(multiplier=self._backoff_min, min=self._backoff_min, max=self._backoff_max),
                retry=retry_if_exception_type(DeliveryFailed),
                reraise=True,
            ):
                with attempt:
                    await send(email, link)
        except DeliveryFailed as exc:
            logger.warning(
                "Delivery to %s failed after %d attempt(s): %s",
                email, self._max_attempts, exc.message,
            )
            return False
        return True

    async def _deliver_all(self, send: SendFn, links: dict[str, str]) -> list[str]:
        emails = list(links)
        results = await asyncio.gather(*(self._deliver(send, e, links[e]) for e in emails))
        return [e for e, ok in zip(emails, results) if not ok]

    async def permission_requests(self, links: dict[str, str]) -> list[str]:
        """Send one permission request per ``email -> link``; return undelivered emails."""
        return await self._deliver_all(self._notifier.send_permission_request, links)

    async def reminders(self, links: dict[str, str]) -> list[str]:
        """Send one reminder per ``email -> link``; return undelivered emails."""
        return await self._deliver_all(self._notifier.send_reminder, links)
