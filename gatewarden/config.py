from __future__ import annotations

import os
import secrets
from typing import Any, Optional

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from gatewarden.logging import get_logger

logger = get_logger(__name__)


class PasswordPolicy(BaseModel):
    """Character-class and length requirements for new passwords."""

    min_length: int = Field(8, ge=1, le=256)
    require_upper: bool = True
    require_lower: bool = True
    require_number: bool = True
    require_symbol: bool = True


class OrganizationPolicy(BaseModel):
    """Per-organization security settings.

    Accounts without an organization fall back to the values built by
    ``Settings.default_policy()``.
    """

    max_failed_logins: int = Field(5, ge=1)
    lockout_duration_minutes: int = Field(10, ge=1)
    session_timeout_minutes: int = Field(5, ge=1)
    max_sessions: int = Field(5, ge=1)
    require_two_factor: bool = False
    password: PasswordPolicy = Field(default_factory=PasswordPolicy)
    allow_sso: bool = False
    sso_domain: Optional[str] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("sso_domain")
    @classmethod
    def _normalize_domain(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().lower().lstrip("@")
        return value or None


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the security engine."""

    redis_url: str | None = env_field(None, "REDIS_URL")
    use_redis_rate_limits: bool = env_field(
        False,
        "USE_REDIS_RATE_LIMITS",
        description="Share rate-limit counters through Redis; required with more than one instance",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    api_key_prefix: str = env_field("gwk_", "API_KEY_PREFIX")
    device_fingerprint_secret: str | None = env_field(
        None, "DEVICE_FINGERPRINT_SECRET", validate_default=True
    )

    # Default organization policy
    max_failed_logins: int = env_field(5, "MAX_FAILED_LOGINS")
    lockout_duration_minutes: int = env_field(10, "LOCKOUT_DURATION_MINUTES")
    session_timeout_minutes: int = env_field(5, "SESSION_TIMEOUT_MINUTES")
    max_sessions: int = env_field(5, "MAX_SESSIONS")
    require_two_factor: bool = env_field(False, "REQUIRE_TWO_FACTOR")
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH")
    password_require_upper: bool = env_field(True, "PASSWORD_REQUIRE_UPPER")
    password_require_lower: bool = env_field(True, "PASSWORD_REQUIRE_LOWER")
    password_require_number: bool = env_field(True, "PASSWORD_REQUIRE_NUMBER")
    password_require_symbol: bool = env_field(True, "PASSWORD_REQUIRE_SYMBOL")

    # Token lifetimes
    two_factor_code_ttl_minutes: int = env_field(10, "TWO_FACTOR_CODE_TTL_MINUTES")
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES")

    # Sweeps
    sweeps_enabled: bool = env_field(True, "SWEEPS_ENABLED")
    inactive_session_cutoff_minutes: int = env_field(30, "INACTIVE_SESSION_CUTOFF_MINUTES")
    device_inactive_days: int = env_field(90, "DEVICE_INACTIVE_DAYS")
    session_sweep_interval_seconds: int = env_field(300, "SESSION_SWEEP_INTERVAL_SECONDS")
    maintenance_sweep_interval_seconds: int = env_field(
        900, "MAINTENANCE_SWEEP_INTERVAL_SECONDS"
    )
    device_sweep_interval_seconds: int = env_field(86400, "DEVICE_SWEEP_INTERVAL_SECONDS")

    # Email service settings
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Gatewarden", "EMAIL_FROM_NAME")

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

    @field_validator("api_key_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        if not value or not value.isascii() or " " in value:
            raise ValueError("API key prefix must be a non-empty ASCII string without spaces")
        return value

    @field_validator("device_fingerprint_secret")
    @classmethod
    def _ensure_fingerprint_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Fingerprints stay stable only for the lifetime of this secret
        logger.warning(
            "device_fingerprint_secret_generated",
            message="DEVICE_FINGERPRINT_SECRET not set; devices will not match across restarts",
        )
        return secrets.token_urlsafe(32)

    def default_policy(self) -> OrganizationPolicy:
        return OrganizationPolicy(
            max_failed_logins=self.max_failed_logins,
            lockout_duration_minutes=self.lockout_duration_minutes,
            session_timeout_minutes=self.session_timeout_minutes,
            max_sessions=self.max_sessions,
            require_two_factor=self.require_two_factor,
            password=PasswordPolicy(
                min_length=self.password_min_length,
                require_upper=self.password_require_upper,
                require_lower=self.password_require_lower,
                require_number=self.password_require_number,
                require_symbol=self.password_require_symbol,
            ),
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
