from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from stepgate.logging import get_logger
from stepgate.storage.models import MAX_RECOVERY_CODES

logger = get_logger(__name__)


class NotificationTransport(str, Enum):
    """How one-time email codes leave the process."""

    SMTP = "smtp"
    HTTP = "http"


class TotpAlgorithm(str, Enum):
    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA512 = "SHA512"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the step-up authentication subsystem."""

    database_url: str = env_field(
        "postgresql://localhost:5432/stepgate", "DATABASE_URL"
    )
    redis_url: str | None = env_field(
        None,
        "REDIS_URL",
        description="When set, challenges and email codes live in Redis instead of the primary store",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str | None = env_field(
        None,
        "SHARED_FS_ROOT",
        description="Directory the memory store persists its state to; unset keeps it in-process only",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    secret_encryption_key: str | None = env_field(
        None,
        "SECRET_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest",
    )

    # TOTP
    totp_issuer: str = env_field("StepGate", "TOTP_ISSUER")
    totp_digits: int = env_field(6, "TOTP_DIGITS")
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    totp_valid_window: int = env_field(
        2,
        "TOTP_VALID_WINDOW",
        description="Accepted time steps either side of the current one",
    )
    totp_algorithm: TotpAlgorithm = env_field(TotpAlgorithm.SHA1, "TOTP_ALGORITHM")

    # One-time material lifetimes
    challenge_ttl_minutes: int = env_field(10, "CHALLENGE_TTL_MINUTES")
    challenge_token_length: int = env_field(64, "CHALLENGE_TOKEN_LENGTH")
    email_code_ttl_minutes: int = env_field(10, "EMAIL_CODE_TTL_MINUTES")
    recovery_code_count: int = env_field(8, "RECOVERY_CODE_COUNT")
    recovery_code_length: int = env_field(8, "RECOVERY_CODE_LENGTH")
    recovery_code_warning_threshold: int = env_field(
        3,
        "RECOVERY_CODE_WARNING_THRESHOLD",
        description="Authenticated results flag low_recovery_codes below this count",
    )

    # Identity cache
    identity_cache_ttl_minutes: int = env_field(10, "IDENTITY_CACHE_TTL_MINUTES")
    identity_cache_capacity: int = env_field(10_000, "IDENTITY_CACHE_CAPACITY")
    identity_cache_evict_fraction: float = env_field(
        0.2, "IDENTITY_CACHE_EVICT_FRACTION"
    )
    identity_cache_sweep_seconds: int | None = env_field(
        60,
        "IDENTITY_CACHE_SWEEP_SECONDS",
        description="Background purge interval; unset disables the sweeper thread",
    )

    # Notification transport
    notification_transport: NotificationTransport = env_field(
        NotificationTransport.SMTP, "NOTIFICATION_TRANSPORT"
    )
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("StepGate", "EMAIL_FROM_NAME")
    email_api_url: str | None = env_field(
        None,
        "EMAIL_API_URL",
        description="HTTP email API endpoint used when NOTIFICATION_TRANSPORT=http",
    )
    email_api_key: str | None = env_field(None, "EMAIL_API_KEY")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("redis_url", "shared_fs_root", "identity_cache_sweep_seconds", mode="before")
    @classmethod
    def _blank_as_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator(
        "challenge_ttl_minutes",
        "email_code_ttl_minutes",
        "identity_cache_ttl_minutes",
        "identity_cache_capacity",
        "totp_interval_seconds",
        "recovery_code_count",
        "recovery_code_length",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("recovery_code_count")
    @classmethod
    def _validate_recovery_count(cls, value: int) -> int:
        if value > MAX_RECOVERY_CODES:
            raise ValueError(f"at most {MAX_RECOVERY_CODES} recovery codes per identity")
        return value

    @field_validator("identity_cache_sweep_seconds")
    @classmethod
    def _validate_sweep(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("must be positive when set")
        return value

    @field_validator("identity_cache_evict_fraction")
    @classmethod
    def _validate_evict_fraction(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("must be in (0, 1]")
        return value

    @field_validator("totp_valid_window")
    @classmethod
    def _validate_window(cls, value: int) -> int:
        if not 0 <= value <= 10:
            raise ValueError("must be between 0 and 10")
        return value

    @field_validator("totp_digits")
    @classmethod
    def _validate_digits(cls, value: int) -> int:
        if not 6 <= value <= 8:
            raise ValueError("must be between 6 and 8")
        return value

    @field_validator("totp_algorithm", mode="before")
    @classmethod
    def _validate_algorithm(cls, value: Any) -> TotpAlgorithm:
        if isinstance(value, str):
            value = value.upper()
        return TotpAlgorithm(value)

    @field_validator("challenge_token_length")
    @classmethod
    def _validate_token_length(cls, value: int) -> int:
        if value < 64:
            raise ValueError("challenge tokens need at least 64 characters")
        return value

    @field_validator("notification_transport", mode="before")
    @classmethod
    def _validate_transport(cls, value: Any) -> NotificationTransport:
        if isinstance(value, str):
            value = value.lower()
        return NotificationTransport(value)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            use_memory_store=_settings_cache.use_memory_store,
            redis_enabled=bool(_settings_cache.redis_url),
            transport=_settings_cache.notification_transport.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
