"""Tests for settings loading and validation."""

import pytest
from pydantic import ValidationError

from invitely.config import Settings, get_settings, reset_settings_cache


def test_defaults_are_consistent():
    settings = Settings()
    assert settings.access_lifetime_seconds == 900
    assert settings.refresh_lifetime_seconds == 7 * 24 * 60 * 60
    assert settings.refresh_denylist_ttl_seconds >= settings.refresh_lifetime_seconds
    assert settings.refresh_cookie_path == "/v1/auth/refresh"
    assert settings.cookie_secure is True


def test_rate_limit_policies():
    limits = Settings(login_rate_limit_threshold=7).rate_limit
    assert limits.login.threshold == 7
    assert limits.login.window_seconds == 15 * 60
    assert limits.reset.threshold == 3
    assert limits.reset.window_seconds == 60 * 60
    assert limits.register.threshold == 10


def test_denylist_ttl_shorter_than_refresh_lifetime_is_rejected():
    with pytest.raises(ValidationError):
        Settings(refresh_lifetime_seconds=3600, refresh_denylist_ttl_seconds=600)


def test_access_lifetime_must_be_shorter_than_refresh():
    with pytest.raises(ValidationError):
        Settings(access_lifetime_seconds=3600, refresh_lifetime_seconds=3600)


def test_signing_keys_must_be_configured_together(rsa_keys):
    private_pem, _ = rsa_keys
    with pytest.raises(ValidationError):
        Settings(signing_private_key=private_pem, signing_public_key=None)


def test_escaped_pem_newlines_are_restored(rsa_keys):
    private_pem, public_pem = rsa_keys
    settings = Settings(
        signing_private_key=private_pem.replace("\n", "\\n"),
        signing_public_key=public_pem,
    )
    assert "\\n" not in settings.signing_private_key
    assert settings.signing_private_key.startswith("-----BEGIN")
    assert settings.signing_keys_configured


@pytest.mark.parametrize("algorithm", ["HS256", "none", "PS999"])
def test_symmetric_or_unknown_algorithms_are_rejected(algorithm):
    with pytest.raises(ValidationError):
        Settings(jwt_algorithm=algorithm)


def test_algorithm_is_uppercased():
    assert Settings(jwt_algorithm="rs256").jwt_algorithm == "RS256"


def test_refresh_cookie_path_must_be_absolute():
    with pytest.raises(ValidationError):
        Settings(refresh_cookie_path="v1/auth/refresh")


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("ACCESS_LIFETIME_SECONDS", "300")
    monkeypatch.setenv("COOKIE_SECURE", "false")
    monkeypatch.setenv("LOGIN_RATE_LIMIT_THRESHOLD", "9")
    settings = Settings.from_env()
    assert settings.access_lifetime_seconds == 300
    assert settings.cookie_secure is False
    assert settings.rate_limit.login.threshold == 9


def test_get_settings_is_cached_until_reset(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("ACCESS_LIFETIME_SECONDS", "120")
    assert get_settings().access_lifetime_seconds == first.access_lifetime_seconds
    reset_settings_cache()
    assert get_settings().access_lifetime_seconds == 120
    reset_settings_cache()
