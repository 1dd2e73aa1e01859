"""Tests for settings and the derived auth policy."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from sessionguard.core.config import AuthPolicy, Settings


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_defaults_match_auth_policy():
    policy = _settings().auth_policy
    assert policy == AuthPolicy()
    assert policy.access_ttl == timedelta(minutes=15)
    assert policy.refresh_ttl == timedelta(days=7)
    assert policy.failed_attempt_threshold == 5


def test_policy_follows_settings():
    policy = _settings(
        jwt_access_token_expire_minutes=5,
        failed_login_threshold=3,
        failed_login_block_minutes=10,
    ).auth_policy
    assert policy.access_ttl == timedelta(minutes=5)
    assert policy.failed_attempt_threshold == 3
    assert policy.block_duration == timedelta(minutes=10)


def test_short_jwt_secret_rejected():
    with pytest.raises(ValidationError):
        _settings(jwt_secret_key="too-short")


def test_invalid_log_level_rejected():
    with pytest.raises(ValidationError):
        _settings(log_level="chatty")


def test_log_level_upper_cased():
    assert _settings(log_level="debug").log_level == "DEBUG"


def test_generated_secret_is_stable_per_instance(monkeypatch):
    monkeypatch.delenv("JWT_SECRET_KEY", raising=False)
    config = _settings()
    assert config.jwt_secret_key is None
    first = config.effective_jwt_secret_key
    assert len(first) >= 32
    assert config.effective_jwt_secret_key == first
    assert _settings().effective_jwt_secret_key != first


def test_security_warnings(monkeypatch):
    monkeypatch.delenv("JWT_SECRET_KEY", raising=False)
    warnings = _settings(accept_legacy_tokens=True, cors_origins="*").check_security_configuration()
    assert any("JWT_SECRET_KEY" in w for w in warnings)
    assert any("ACCEPT_LEGACY_TOKENS" in w for w in warnings)
    assert any("CORS" in w for w in warnings)


def test_configured_secret_has_no_warnings():
    config = _settings(jwt_secret_key="x" * 40, cors_origins="https://app.example.com")
    assert config.check_security_configuration() == []


def test_cors_origins_list():
    config = _settings(cors_origins="https://a.example.com, https://b.example.com,")
    assert config.cors_origins_list == ["https://a.example.com", "https://b.example.com"]


def test_is_sqlite():
    assert _settings(database_url="sqlite+aiosqlite:///./auth.db").is_sqlite
    assert not _settings(database_url="postgresql+asyncpg://u:p@db/auth").is_sqlite
