"""Tests for notification dispatch — retries, backoff and PII redaction."""

import sys
import os
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from meetbot.errors import DeliveryFailed
from meetbot.notifications import LoggingNotifier, NotificationDispatcher, Notifier, redact_pii


def _notifier(permission_side_effect=None, reminder_side_effect=None) -> Notifier:
    notifier = LoggingNotifier()
    notifier.send_permission_request = AsyncMock(side_effect=permission_side_effect)
    notifier.send_reminder = AsyncMock(side_effect=reminder_side_effect)
    return notifier


def _dispatcher(notifier, attempts=3) -> NotificationDispatcher:
    return NotificationDispatcher(notifier, max_attempts=attempts, backoff_min=0, backoff_max=0)


# ── PII redaction ───────────────────────────────────────────────────


class TestRedactPii:
    def test_masks_middle(self):
        assert redact_pii("alice@example.com") == "ali***om"

    def test_short_values_fully_masked(self):
        assert redact_pii("a@b.c") == "***"
        assert redact_pii("") == "***"


# ── NotificationDispatcher ──────────────────────────────────────────


class TestNotificationDispatcher:
    @pytest.mark.asyncio
    async def test_delivers_each_link(self):
        notifier = _notifier()
        undelivered = await _dispatcher(notifier).permission_requests(
            {"a@x.com": "https://l/1", "b@x.com": "https://l/2"}
        )
        assert undelivered == []
        notifier.send_permission_request.assert_any_await("a@x.com", "https://l/1")
        notifier.send_permission_request.assert_any_await("b@x.com", "https://l/2")

    @pytest.mark.asyncio
    async def test_retries_transient_failure(self):
        notifier = _notifier(reminder_side_effect=[DeliveryFailed(), DeliveryFailed(), None])
        undelivered = await _dispatcher(notifier).reminders({"a@x.com": "https://l/1"})
        assert undelivered == []
        assert notifier.send_reminder.await_count == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        notifier = _notifier(permission_side_effect=DeliveryFailed("mailbox full"))
        undelivered = await _dispatcher(notifier, attempts=4).permission_requests({"a@x.com": "https://l/1"})
        assert undelivered == ["a@x.com"]
        assert notifier.send_permission_request.await_count == 4

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        notifier = _notifier(permission_side_effect=RuntimeError("bug"))
        with pytest.raises(RuntimeError):
            await _dispatcher(notifier).permission_requests({"a@x.com": "https://l/1"})
        assert notifier.send_permission_request.await_count == 1

    @pytest.mark.asyncio
    async def test_one_bounce_does_not_block_others(self):
        async def send(email, link):
            if email == "b@x.com":
                raise DeliveryFailed()

        notifier = _notifier(reminder_side_effect=send)
        undelivered = await _dispatcher(notifier).reminders(
            {"a@x.com": "https://l/1", "b@x.com": "https://l/2", "c@x.com": "https://l/3"}
        )
        assert undelivered == ["b@x.com"]


class TestLoggingNotifier:
    @pytest.mark.asyncio
    async def test_records_sends(self):
        notifier = LoggingNotifier()
        await notifier.send_permission_request("a@x.com", "https://l/1")
        await notifier.send_reminder("a@x.com", "https://l/1")
        assert notifier.sent == [
            ("permission_request", "a@x.com", "https://l/1"),
            ("reminder", "a@x.com", "https://l/1"),
        ]
