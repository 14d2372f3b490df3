"""Slot grid generation, availability aggregation and ranking."""

from .aggregator import AvailabilityAggregator
from .generator import SlotGenerator
from .ranker import SlotRanker

__all__ = ["AvailabilityAggregator", "SlotGenerator", "SlotRanker"]
