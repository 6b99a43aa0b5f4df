"""Tests for settings validation and environment overrides."""

import pytest
from pydantic import ValidationError

from permission_engine.core.config import Environment, Settings
from permission_engine.exceptions import ConfigurationError


class TestSettings:
    def test_defaults(self):
        s = Settings(_env_file=None)
        assert s.environment == Environment.DEVELOPMENT
        assert s.is_development is True
        assert s.decision_ttl_seconds == 900
        assert s.summary_stale_seconds == 900
        assert s.max_retries == 2

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("PERMISSION_ENGINE_API_URL", "https://auth.example.com/api/")
        monkeypatch.setenv("PERMISSION_ENGINE_DECISION_TTL_SECONDS", "60")
        s = Settings(_env_file=None)
        assert s.api_url == "https://auth.example.com/api"
        assert s.decision_ttl_seconds == 60

    def test_log_level_is_normalized(self):
        assert Settings(_env_file=None, log_level="debug").log_level == "DEBUG"

    def test_invalid_log_level(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, log_level="chatty")

    def test_non_positive_ttl_rejected(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, decision_ttl_seconds=0)


class TestProductionValidation:
    def test_insecure_production_config_fails(self):
        s = Settings(
            _env_file=None,
            environment=Environment.PRODUCTION,
            api_url="http://auth.example.com/api",
        )
        with pytest.raises(ConfigurationError) as exc_info:
            s.validate_production_config()
        assert "https" in str(exc_info.value)
        assert "API_TOKEN" in str(exc_info.value)

    def test_secure_production_config_passes(self):
        Settings(
            _env_file=None,
            environment=Environment.PRODUCTION,
            api_url="https://auth.example.com/api",
            api_token="session-token",
        ).validate_production_config()

    def test_development_never_fails(self):
        Settings(_env_file=None, api_url="http://auth.example.com/api").validate_production_config()
