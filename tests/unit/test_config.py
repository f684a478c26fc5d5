"""
Unit Tests for Configuration Management
Tests settings validation and property methods
"""

import pytest
from pydantic import ValidationError

from claimhub.api.config import Settings, get_settings


@pytest.mark.unit
class TestSettingsValidation:
    """Test configuration validation"""

    def test_environment_literal_validation(self):
        """Test that ENVIRONMENT only accepts valid values"""
        for env in ["development", "staging", "production", "testing"]:
            settings = Settings(_env_file=None, ENVIRONMENT=env)
            assert env == settings.ENVIRONMENT

        with pytest.raises(ValidationError):
            Settings(_env_file=None, ENVIRONMENT="invalid_env")

    def test_cors_origins_from_csv(self):
        """Test comma-separated CORS origins are split"""
        settings = Settings(_env_file=None, CORS_ORIGINS="http://a.test, http://b.test")
        assert settings.CORS_ORIGINS == ["http://a.test", "http://b.test"]

    def test_cors_origins_from_json(self):
        """Test JSON array CORS origins are parsed"""
        settings = Settings(_env_file=None, CORS_ORIGINS='["http://a.test"]')
        assert settings.CORS_ORIGINS == ["http://a.test"]


@pytest.mark.unit
class TestSettingsProperties:
    """Test computed properties"""

    def test_database_url_is_built(self):
        """Test DATABASE_URL is assembled from the POSTGRES_ settings"""
        settings = Settings(
            _env_file=None,
            POSTGRES_USER="u",
            POSTGRES_PASSWORD="p",
            POSTGRES_HOST="h",
            POSTGRES_PORT=5433,
            POSTGRES_DB="d",
        )
        assert settings.database_url == "postgresql+asyncpg://u:p@h:5433/d"

    def test_explicit_database_url_wins(self):
        settings = Settings(_env_file=None, DATABASE_URL="sqlite+aiosqlite:///claims.db")
        assert settings.database_url == "sqlite+aiosqlite:///claims.db"

    def test_environment_flags(self):
        """Test is_development / is_production / is_testing"""
        settings = Settings(_env_file=None, ENVIRONMENT="production")
        assert settings.is_production is True
        assert settings.is_development is False
        assert settings.is_testing is False

    def test_get_settings_is_cached(self):
        """Test get_settings returns the same instance"""
        assert get_settings() is get_settings()
