"""Tests for settings loading and the structured logging helpers."""

import pytest
from pydantic import ValidationError

from gatewarden.config import (
    OrganizationPolicy,
    Settings,
    get_settings,
    reset_settings_cache,
)
from gatewarden.logging import (
    _redact_pii,
    get_correlation_id,
    hash_identifier,
    redact_email,
    set_correlation_id,
)


class TestSettings:
    def test_from_env_reads_declared_env_names(self, monkeypatch):
        monkeypatch.setenv("MAX_FAILED_LOGINS", "7")
        monkeypatch.setenv("SESSION_TIMEOUT_MINUTES", "15")
        reset_settings_cache()

        settings = get_settings()

        assert settings.max_failed_logins == 7
        assert settings.session_timeout_minutes == 15

    def test_get_settings_is_cached(self):
        reset_settings_cache()
        assert get_settings() is get_settings()

    def test_default_policy_mirrors_settings(self):
        settings = Settings(
            device_fingerprint_secret="s",
            max_failed_logins=3,
            lockout_duration_minutes=20,
            max_sessions=2,
            password_min_length=12,
            password_require_symbol=False,
        )

        policy = settings.default_policy()

        assert policy.max_failed_logins == 3
        assert policy.lockout_duration_minutes == 20
        assert policy.max_sessions == 2
        assert policy.password.min_length == 12
        assert policy.password.require_symbol is False

    def test_missing_fingerprint_secret_is_generated(self):
        settings = Settings()
        assert settings.device_fingerprint_secret
        assert len(settings.device_fingerprint_secret) >= 32

    def test_rejects_blank_api_key_prefix(self):
        with pytest.raises(ValidationError):
            Settings(device_fingerprint_secret="s", api_key_prefix="bad prefix")


class TestOrganizationPolicy:
    def test_sso_domain_is_normalized(self):
        policy = OrganizationPolicy(sso_domain="  @Example.COM ")
        assert policy.sso_domain == "example.com"

    def test_empty_sso_domain_becomes_none(self):
        assert OrganizationPolicy(sso_domain="@").sso_domain is None

    def test_limits_must_be_positive(self):
        with pytest.raises(ValidationError):
            OrganizationPolicy(max_sessions=0)


class TestLoggingHelpers:
    def test_redacts_credentials_and_addresses(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login",
                "email": "alice@example.com",
                "session_token": "abcdef0123456789",
                "code": "123456",
                "email_hash": "0123456789abcdef",
                "account_id": "acct-1",
                "attempts": 3,
            },
        )

        assert event["email"] == "al***@example.com"
        assert event["session_token"] == "***"
        assert event["code"] == "***"
        assert event["email_hash"] == "0123456789abcdef"
        assert event["account_id"] == "acct-1"
        assert event["attempts"] == 3

    def test_hash_identifier_ignores_case_and_whitespace(self):
        assert hash_identifier(" Alice@Example.com ") == hash_identifier("alice@example.com")
        assert len(hash_identifier("alice@example.com")) == 16

    def test_redact_email(self):
        assert redact_email("alice@example.com") == "al***@example.com"
        assert redact_email("not-an-email") == "redacted"

    def test_correlation_id_round_trip(self):
        cid = set_correlation_id("req-123")
        assert cid == "req-123"
        assert get_correlation_id() == "req-123"

    def test_correlation_id_generated_when_missing(self):
        cid = set_correlation_id()
        assert cid
        assert get_correlation_id() == cid
