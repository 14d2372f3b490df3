"""Data models for the scheduling core."""

from .bot import TERMINAL_STATUSES, BotOptions, BotStatus, MeetingBot
from .meeting import MEETING_TRANSITIONS, Meeting, MeetingDraft, MeetingStatus
from .request import SchedulingRequest, SlotProposal
from .slot import BusyInterval, TimeSlot

__all__ = [
    "BotOptions",
    "BotStatus",
    "BusyInterval",
    "MEETING_TRANSITIONS",
    "Meeting",
    "MeetingBot",
    "MeetingDraft",
    "MeetingStatus",
    "SchedulingRequest",
    "SlotProposal",
    "TERMINAL_STATUSES",
    "TimeSlot",
]
