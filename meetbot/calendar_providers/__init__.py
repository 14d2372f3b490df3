"""Calendar feed abstractions and implementations."""

from .base import CalendarFeed
from .memory import InMemoryCalendarFeed

__all__ = ["CalendarFeed", "InMemoryCalendarFeed"]
