"""Shared field types: UTC timestamps and normalized participant emails."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import AfterValidator


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive input is taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_email(value: str) -> str:
    value = value.strip().lower()
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain or "@" in domain:
        raise ValueError(f"not an email address: {value!r}")
    return value


def check_time_zone(value: str) -> str:
    try:
        ZoneInfo(value)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"unknown time zone: {value!r}") from None
    return value


def unique(values: list[str]) -> list[str]:
    """Drop duplicates, keep first-seen order."""
    return list(dict.fromkeys(values))


def new_id() -> str:
    return uuid.uuid4().hex


UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]
Email = Annotated[str, AfterValidator(normalize_email)]
