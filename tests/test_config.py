"""Tests for environment-driven settings."""
import pytest
from pydantic import ValidationError

from keytrack.config import Settings, get_settings


class TestSettings:

    def test_defaults(self, monkeypatch):
        for name in ("GRACE_PERIOD_DAYS", "ESCALATION_THRESHOLD_DAYS", "SERVICE_TOKEN", "LOG_LEVEL"):
            monkeypatch.delenv(name, raising=False)

        settings = Settings()

        assert settings.grace_period_days == 3
        assert settings.escalation_threshold_days == 7
        assert settings.service_token == ""
        assert settings.log_level == "INFO"

    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("ESCALATION_THRESHOLD_DAYS", "10")
        monkeypatch.setenv("SECURITY_WEBHOOK_URL", "https://security.example.edu/hooks/keys")
        monkeypatch.setenv("LOG_LEVEL", "debug")

        settings = Settings()

        assert settings.escalation_threshold_days == 10
        assert settings.security_webhook_url == "https://security.example.edu/hooks/keys"
        assert settings.log_level == "DEBUG"

    @pytest.mark.parametrize("name, value", [
        ("ESCALATION_THRESHOLD_DAYS", "seven"),
        ("ESCALATION_THRESHOLD_DAYS", "0"),
        ("GRACE_PERIOD_DAYS", "-1"),
        ("NOTIFIER_MAX_ATTEMPTS", "0"),
    ])
    def test_invalid_values_rejected(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ValidationError):
            Settings()

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()
