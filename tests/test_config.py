import pytest
from pydantic import ValidationError

from stepgate.config import (
    NotificationTransport,
    Settings,
    TotpAlgorithm,
    get_settings,
    reset_settings_cache,
)


class TestSettingsFromEnv:
    """Environment loading."""

    def test_env_names_map_to_fields(self, monkeypatch):
        """Variables are read under their documented names."""
        monkeypatch.setenv("CHALLENGE_TTL_MINUTES", "5")
        monkeypatch.setenv("TOTP_VALID_WINDOW", "1")
        monkeypatch.setenv("SMTP_HOST", "smtp.example.com")

        settings = Settings.from_env()

        assert settings.challenge_ttl_minutes == 5
        assert settings.totp_valid_window == 1
        assert settings.smtp_host == "smtp.example.com"

    def test_blank_optional_values_become_none(self, monkeypatch):
        """Empty strings disable optional features."""
        monkeypatch.setenv("REDIS_URL", "  ")
        monkeypatch.setenv("IDENTITY_CACHE_SWEEP_SECONDS", "")

        settings = Settings.from_env()

        assert settings.redis_url is None
        assert settings.identity_cache_sweep_seconds is None

    def test_enum_values_case_insensitive(self, monkeypatch):
        """Algorithm and transport names accept any case."""
        monkeypatch.setenv("TOTP_ALGORITHM", "sha256")
        monkeypatch.setenv("NOTIFICATION_TRANSPORT", "HTTP")

        settings = Settings.from_env()

        assert settings.totp_algorithm is TotpAlgorithm.SHA256
        assert settings.notification_transport is NotificationTransport.HTTP

    def test_get_settings_cached_until_reset(self, monkeypatch):
        """get_settings reuses one instance until the cache is reset."""
        first = get_settings()
        monkeypatch.setenv("TOTP_ISSUER", "Other")

        assert get_settings() is first

        reset_settings_cache()
        assert get_settings().totp_issuer == "Other"


class TestSettingsValidation:
    """Invalid values are refused at load time."""

    @pytest.mark.parametrize(
        "field,value",
        [
            ("challenge_token_length", 32),
            ("recovery_code_count", 9),
            ("recovery_code_count", 0),
            ("totp_digits", 5),
            ("totp_valid_window", 11),
            ("identity_cache_evict_fraction", 0),
            ("identity_cache_sweep_seconds", -1),
            ("email_code_ttl_minutes", 0),
        ],
    )
    def test_rejected(self, field, value):
        with pytest.raises(ValidationError):
            Settings(**{field: value})

    def test_unknown_algorithm_rejected(self):
        with pytest.raises(ValidationError):
            Settings(totp_algorithm="md5")

    def test_defaults(self):
        """Defaults match the documented lifetimes and sizes."""
        settings = Settings()

        assert settings.challenge_ttl_minutes == 10
        assert settings.email_code_ttl_minutes == 10
        assert settings.challenge_token_length == 64
        assert settings.recovery_code_count == 8
        assert settings.totp_valid_window == 2
        assert settings.notification_transport is NotificationTransport.SMTP
