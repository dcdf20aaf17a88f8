"""Tests for application configuration."""

import pytest
from pydantic import ValidationError

from src.config import Environment, Settings, get_settings

# Values that contain none of the insecure default tokens
STRONG_SECRET_KEY = "k7Hq2vLx9RwZp4NcYb8T"
STRONG_JWT_SECRET = "J3fLq8wVz2RtY6uMnB0c"
STRONG_DB_URL = "postgresql+asyncpg://feedbackflow:Xq81vRmz4L@db:5432/feedbackflow"


def _prod_settings(**overrides) -> Settings:
    values = {
        "environment": Environment.PROD,
        "secret_key": STRONG_SECRET_KEY,
        "jwt_secret": STRONG_JWT_SECRET,
        "database_url": STRONG_DB_URL,
        **overrides,
    }
    return Settings(**values)


class TestSettings:
    """Test Settings model and validation."""

    def test_default_settings_load_correctly(self, monkeypatch):
        """Test that default settings are loaded with correct values."""
        monkeypatch.delenv("ENVIRONMENT", raising=False)
        settings = Settings(_env_file=None)

        assert settings.environment == Environment.DEV
        assert settings.debug is True  # Auto-set from DEV environment
        assert settings.database_url.startswith("postgresql+asyncpg://")
        assert settings.jwt_audience == "feedbackflow-api"

    def test_webhook_defaults(self):
        """Test delivery worker defaults."""
        settings = Settings(_env_file=None)
        assert settings.webhook_worker_enabled is True
        assert settings.webhook_poll_interval_seconds == 5.0
        assert settings.webhook_batch_size == 100
        assert settings.webhook_request_timeout_seconds == 10.0
        assert settings.webhook_user_agent == "FeedbackFlow-Webhook/1.0"
        assert settings.webhook_response_body_limit == 1000
        assert settings.webhook_delivery_retention_days == 30
        assert settings.webhook_stale_delivery_seconds == 300

    def test_webhook_settings_from_environment(self, monkeypatch):
        """Test that webhook settings are read from environment variables."""
        monkeypatch.setenv("WEBHOOK_BATCH_SIZE", "25")
        monkeypatch.setenv("WEBHOOK_WORKER_ENABLED", "false")
        settings = Settings(_env_file=None)
        assert settings.webhook_batch_size == 25
        assert settings.webhook_worker_enabled is False

    @pytest.mark.parametrize(
        "overrides",
        [
            {"webhook_batch_size": 0},
            {"webhook_batch_size": 5000},
            {"webhook_worker_concurrency": 0},
            {"webhook_poll_interval_seconds": 0},
            {"webhook_request_timeout_seconds": -1},
            {"webhook_delivery_retention_days": 0},
        ],
    )
    def test_webhook_settings_validation(self, overrides):
        """Test that out-of-range worker settings are rejected."""
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **overrides)

    def test_production_validation_rejects_default_secrets(self):
        """Test that production environment rejects insecure default secrets."""
        with pytest.raises(RuntimeError) as exc_info:
            Settings(_env_file=None, environment=Environment.PROD)

        error_str = str(exc_info.value)
        assert "PRODUCTION STARTUP BLOCKED" in error_str
        assert "SECRET_KEY" in error_str
        assert "JWT_SECRET" in error_str
        assert "POSTGRES_PASSWORD" in error_str

    def test_production_validation_rejects_weak_database_password(self):
        """Test that a default password in DATABASE_URL blocks production startup."""
        with pytest.raises(RuntimeError, match="POSTGRES_PASSWORD"):
            _prod_settings(database_url="postgresql+asyncpg://app:app_password@db:5432/app")

    def test_production_accepts_strong_secrets(self):
        """Test that production starts with non-default secrets."""
        settings = _prod_settings()
        assert settings.is_prod is True
        assert settings.is_dev is False

    def test_is_dev_property_returns_true_for_dev(self):
        """Test that is_dev property correctly identifies dev environment."""
        settings = Settings(environment=Environment.DEV)
        assert settings.is_dev is True
        assert settings.is_prod is False

    def test_is_dev_property_returns_true_for_test(self):
        """Test that is_dev property includes test environment."""
        settings = Settings(environment=Environment.TEST)
        assert settings.is_dev is True
        assert settings.is_prod is False

    def test_environment_enum_values(self):
        """Test that Environment enum has expected values."""
        assert Environment.DEV == "dev"
        assert Environment.PROD == "prod"
        assert Environment.TEST == "test"

    def test_debug_auto_enabled_in_dev(self):
        """Test that debug is automatically enabled in dev environment."""
        settings = Settings(environment=Environment.DEV, debug=False)
        # _set_debug_from_env should override to True
        assert settings.debug is True

    def test_debug_not_auto_enabled_in_prod(self):
        """Test that debug is not automatically enabled in production."""
        settings = _prod_settings(debug=False)
        assert settings.debug is False

    def test_secrets_are_masked(self):
        """Test that secrets never appear in the settings repr."""
        settings = _prod_settings()
        assert STRONG_JWT_SECRET not in repr(settings)
        assert settings.jwt_secret.get_secret_value() == STRONG_JWT_SECRET

    def test_get_settings_returns_singleton(self):
        """Test that get_settings returns cached singleton instance."""
        settings1 = get_settings()
        settings2 = get_settings()
        assert settings1 is settings2
