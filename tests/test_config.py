"""Tests for Settings loading and startup validation."""

import sys
import os
from datetime import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from meetbot.config import Settings


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


class TestSettingsLoading:
    def test_defaults(self):
        s = _settings()
        assert s.working_hours_start == time(9, 0)
        assert s.working_hours_end == time(17, 0)
        assert s.excluded_weekdays == [5, 6]
        assert s.default_grid_minutes == 30
        assert s.provider_failure_policy == "assume_busy"
        assert s.permission_timeout_hours == 168

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PROVIDER_FAILURE_POLICY", "block")
        monkeypatch.setenv("WORKING_HOURS_START", "08:30")
        monkeypatch.setenv("EXCLUDED_WEEKDAYS", "[4, 5, 6]")
        monkeypatch.setenv("AUTO_SCHEDULE_RETRY_BUDGET", "5")
        s = _settings()
        assert s.provider_failure_policy == "block"
        assert s.working_hours_start == time(8, 30)
        assert s.excluded_weekdays == [4, 5, 6]
        assert s.auto_schedule_retry_budget == 5


class TestValidateStartup:
    def test_clean_config_in_debug_has_no_warnings(self):
        assert _settings(debug=True).validate_startup() == []

    def test_rejects_unknown_failure_policy(self):
        with pytest.raises(ValueError, match="PROVIDER_FAILURE_POLICY"):
            _settings(provider_failure_policy="ignore").validate_startup()

    def test_rejects_inverted_working_hours(self):
        with pytest.raises(ValueError, match="WORKING_HOURS_END"):
            _settings(working_hours_start=time(17), working_hours_end=time(9)).validate_startup()

    def test_rejects_unknown_zone(self):
        with pytest.raises(ValueError, match="DEFAULT_TIME_ZONE"):
            _settings(default_time_zone="Nowhere/Special").validate_startup()

    def test_rejects_bad_weekday(self):
        with pytest.raises(ValueError, match="EXCLUDED_WEEKDAYS"):
            _settings(excluded_weekdays=[7]).validate_startup()

    def test_rejects_zero_notification_attempts(self):
        with pytest.raises(ValueError, match="NOTIFICATION_MAX_ATTEMPTS"):
            _settings(notification_max_attempts=0).validate_startup()

    def test_warns_when_expiry_disabled(self):
        warnings = _settings(debug=True, permission_timeout_hours=0).validate_startup()
        assert any("PERMISSION_TIMEOUT_HOURS" in w for w in warnings)

    def test_warns_when_ticker_disabled(self):
        warnings = _settings(debug=True, tick_interval_seconds=0).validate_startup()
        assert any("TICK_INTERVAL_SECONDS" in w for w in warnings)

    def test_warns_on_plain_http_links_in_production(self):
        warnings = _settings(debug=False).validate_startup()
        assert any("PERMISSION_BASE_URL" in w for w in warnings)
        https = _settings(debug=False, permission_base_url="https://app.example.com/p").validate_startup()
        assert https == []
