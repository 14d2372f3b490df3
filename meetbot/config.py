"""Application configuration via environment variables."""

from __future__ import annotations

import logging
from datetime import time
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic_settings import BaseSettings

log = logging.getLogger("meetbot.config")

PROVIDER_FAILURE_POLICIES = {"assume_busy", "block"}


class Settings(BaseSettings):
    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    # Slot grid defaults
    default_time_zone: str = "UTC"
    working_hours_start: time = time(9, 0)
    working_hours_end: time = time(17, 0)
    excluded_weekdays: list[int] = [5, 6]  # Mon=0 .. Sun=6
    default_grid_minutes: int = 30
    max_suggestions: int = 12
    search_days: int = 7

    # Calendar feed failures: "assume_busy" or "block"
    provider_failure_policy: str = "assume_busy"

    # Notification delivery
    notification_max_attempts: int = 3
    notification_backoff_min_seconds: float = 1.0
    notification_backoff_max_seconds: float = 10.0

    # Meeting bot
    auto_schedule_retry_budget: int = 3
    permission_timeout_hours: int = 168  # 0 disables expiry
    reminder_interval_hours: int = 24
    max_auto_reminders: int = 3
    tick_interval_seconds: float = 60.0  # 0 disables the background ticker

    # Links
    permission_base_url: str = "http://localhost:8080/permissions"
    meeting_link_base_url: str = "https://meet.example.com"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []

        if self.provider_failure_policy not in PROVIDER_FAILURE_POLICIES:
            raise ValueError(
                f"PROVIDER_FAILURE_POLICY must be one of "
                f"{sorted(PROVIDER_FAILURE_POLICIES)}, got {self.provider_failure_policy!r}."
            )

        if self.working_hours_end <= self.working_hours_start:
            raise ValueError("WORKING_HOURS_END must be after WORKING_HOURS_START.")

        try:
            ZoneInfo(self.default_time_zone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"DEFAULT_TIME_ZONE {self.default_time_zone!r} is not a known zone.")

        if any(d < 0 or d > 6 for d in self.excluded_weekdays):
            raise ValueError("EXCLUDED_WEEKDAYS entries must be between 0 (Mon) and 6 (Sun).")

        if self.notification_max_attempts < 1:
            raise ValueError("NOTIFICATION_MAX_ATTEMPTS must be at least 1.")

        if self.permission_timeout_hours == 0:
            warnings.append(
                "PERMISSION_TIMEOUT_HOURS is 0 — bots can wait for permissions forever."
            )

        if self.tick_interval_seconds == 0:
            warnings.append(
                "TICK_INTERVAL_SECONDS is 0 — reminders, expiry and auto-scheduling "
                "retries only run when /api/bots/{id}/tick is called."
            )

        if not self.permission_base_url.startswith("https://") and not self.debug:
            warnings.append(
                "PERMISSION_BASE_URL is not https — permission links will be sent in clear text."
            )

        return warnings


settings = Settings()
