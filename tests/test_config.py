"""Tests for Settings parsing and secret handling."""

import pytest
from pydantic import ValidationError

from taskauth.config import Environment, Settings, get_settings, reset_settings_cache


class TestJwtSecrets:
    def test_generated_outside_production(self):
        settings = Settings(environment="development")
        assert settings.jwt_secret
        assert settings.jwt_refresh_secret
        assert settings.jwt_secret != settings.jwt_refresh_secret

    def test_required_in_production(self):
        with pytest.raises(ValidationError):
            Settings(environment="production")

    def test_production_with_secrets(self):
        settings = Settings(
            environment="Production",
            jwt_secret="a" * 40,
            jwt_refresh_secret="b" * 40,
        )
        assert settings.is_production
        assert settings.environment is Environment.PRODUCTION

    def test_equal_secrets_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="same-secret-value", jwt_refresh_secret="same-secret-value")


class TestParsing:
    def test_cors_origins_split(self):
        settings = Settings(cors_allow_origins="https://a.example, https://b.example,")
        assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]

    def test_trusted_proxies_default_empty_and_split(self):
        assert Settings().trusted_proxies == []
        settings = Settings(trusted_proxies="10.0.0.1, 10.0.0.2")
        assert settings.trusted_proxies == ["10.0.0.1", "10.0.0.2"]

    def test_limits_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(max_login_attempts=0)

    def test_server_bind_defaults(self):
        settings = Settings()
        assert settings.host == "127.0.0.1"
        assert settings.port == 8000
        with pytest.raises(ValidationError):
            Settings(port=70000)

    def test_memory_cost_floor(self):
        with pytest.raises(ValidationError):
            Settings(password_hash_memory_cost=8)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MAX_LOGIN_ATTEMPTS", "7")
        monkeypatch.setenv("LOCK_DURATION_MINUTES", "10")
        monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://app.example")
        settings = Settings.from_env()
        assert settings.max_login_attempts == 7
        assert settings.lock_duration_minutes == 10
        assert settings.cors_allow_origins == ["https://app.example"]
        assert settings.use_memory_store is True

    def test_settings_cache_reset(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "5")
        reset_settings_cache()
        assert get_settings().access_token_ttl_minutes == 5
        reset_settings_cache()
