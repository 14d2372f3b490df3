"""Notification transports and retrying dispatch."""

from .base import NotificationDispatcher, Notifier
from .log import LoggingNotifier, redact_pii

__all__ = ["LoggingNotifier", "NotificationDispatcher", "Notifier", "redact_pii"]
