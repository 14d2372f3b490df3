"""Notifier that writes to the log instead of sending anything.

Default transport for the stand-alone service; real deployments plug an
email/SMS notifier in through ``create_app``.
"""

from __future__ import annotations

import logging

from .base import Notifier

logger = logging.getLogger(__name__)


def redact_pii(value: str) -> str:
    """Mask PII for logging — show first 3 and last 2 chars only."""
    if not value or len(value) <= 5:
        return "***"
    return value[:3] + "***" + value[-2:]


class LoggingNotifier(Notifier):
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []  # (kind, email, link)

    async def send_permission_request(self, email: str, link: str) -> None:
        self.sent.append(("permission_request", email, link))
        logger.info("Permission request for %s", redact_pii(email))

    async def send_reminder(self, email: str, link: str) -> None:
        self.sent.append(("reminder", email, link))
        logger.info("Reminder for %s", redact_pii(email))
