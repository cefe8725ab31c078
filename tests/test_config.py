"""Tests for settings loading and policy validation."""

import pytest
from pydantic import ValidationError

from bookpath.config import (
    LockoutPolicy,
    PasswordPolicyConfig,
    Settings,
    TokenPolicy,
    get_settings,
    reset_settings_cache,
)

SECRET = "x" * 40


class TestFromEnv:
    """Tests for environment parsing."""

    def test_env_overrides_defaults(self, monkeypatch):
        monkeypatch.setenv("LOGIN_ATTEMPT_LIMIT", "7")
        monkeypatch.setenv("ACCOUNT_LOCK_MINUTES", "10")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")

        settings = Settings.from_env()

        assert settings.login_attempt_limit == 7
        assert settings.lockout_policy().lock_minutes == 10
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_settings_are_cached_until_reset(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first

        monkeypatch.setenv("JWT_ISSUER", "bookpath-staging")
        reset_settings_cache()

        assert get_settings().jwt_issuer == "bookpath-staging"

    def test_missing_jwt_secret_is_generated(self):
        settings = Settings(jwt_secret=None)

        assert len(settings.jwt_secret) >= 64


class TestPolicies:
    """Tests for derived policy objects."""

    def test_defaults_match_documented_values(self):
        settings = Settings(jwt_secret=SECRET)

        lockout = settings.lockout_policy()
        tokens = settings.token_policy()
        passwords = settings.password_policy()
        assert (lockout.attempt_limit, lockout.attempt_window_seconds, lockout.lock_minutes) == (
            5,
            86400,
            2,
        )
        assert tokens.access_ttl_minutes == 15
        assert tokens.refresh_ttl_minutes == 7 * 24 * 60
        assert tokens.refresh_secret == SECRET
        assert passwords.min_length == 12
        assert passwords.history_size == 5

    def test_short_secret_is_rejected(self):
        with pytest.raises(ValidationError):
            TokenPolicy(secret="short", refresh_secret=SECRET)

    def test_refresh_must_outlive_access(self):
        with pytest.raises(ValidationError):
            TokenPolicy(
                secret=SECRET,
                refresh_secret=SECRET,
                access_ttl_minutes=60,
                refresh_ttl_minutes=30,
            )

    def test_password_floor_cannot_be_lowered(self):
        with pytest.raises(ValidationError):
            PasswordPolicyConfig(min_length=8)

    def test_policies_reject_unknown_keys(self):
        with pytest.raises(ValidationError):
            LockoutPolicy(attempts=3)

    def test_fernet_key_is_stable_for_a_secret(self):
        first = Settings(jwt_secret=SECRET).fernet_key()
        second = Settings(jwt_secret=SECRET).fernet_key()

        assert first == second
        assert len(first) == 44
