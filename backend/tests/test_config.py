"""
Tests for application configuration.
"""

import os
import warnings
from unittest.mock import patch

import pytest

STRONG_SECRET = "k" * 64


@pytest.fixture(autouse=True)
def fresh_settings_cache():
    from config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestAppModeEnum:
    """Tests for AppMode enum."""

    def test_app_mode_values(self):
        """Test AppMode enum has correct values."""
        from config import AppMode

        assert AppMode.DEV.value == "dev"
        assert AppMode.PROD.value == "prod"

    def test_app_mode_from_string(self):
        """Test AppMode can be created from string."""
        from config import AppMode

        assert AppMode("dev") == AppMode.DEV
        assert AppMode("prod") == AppMode.PROD


class TestSettingsDefaults:
    """Tests for Settings default values."""

    def test_default_app_mode(self):
        """Test default app mode is DEV."""
        with patch.dict(os.environ, {}, clear=True):
            from config import AppMode, Settings

            settings = Settings()
            assert settings.APP_MODE == AppMode.DEV

    def test_default_database_url(self):
        """Test default database URL is SQLite."""
        with patch.dict(os.environ, {}, clear=True):
            from config import Settings

            settings = Settings()
            assert "sqlite" in settings.DATABASE_URL

    def test_default_token_lifetimes(self):
        """Test access tokens last 15 minutes and refresh tokens 7 days."""
        with patch.dict(os.environ, {}, clear=True):
            from config import Settings

            settings = Settings()
            assert settings.ALGORITHM == "HS256"
            assert settings.ACCESS_TOKEN_EXPIRE_MINUTES == 15
            assert settings.REFRESH_TOKEN_EXPIRE_DAYS == 7

    def test_default_rate_limits(self):
        """Test default login limits."""
        with patch.dict(os.environ, {}, clear=True):
            from config import Settings

            settings = Settings()
            assert settings.RATE_LIMIT_IP_MAX_ATTEMPTS == 10
            assert settings.RATE_LIMIT_IP_WINDOW_SECONDS == 900
            assert settings.RATE_LIMIT_ACCOUNT_MAX_ATTEMPTS == 5
            assert settings.RATE_LIMIT_LOCK_DURATION_SECONDS == 900

    def test_theft_detection_on_by_default(self):
        with patch.dict(os.environ, {}, clear=True):
            from config import Settings

            settings = Settings()
            assert settings.THEFT_DETECTION_ENABLED is True
            assert settings.THEFT_DETECTION_INVALIDATE_FAMILY is True

    def test_default_log_level(self):
        """Test default log level is INFO."""
        with patch.dict(os.environ, {}, clear=True):
            from config import Settings

            settings = Settings()
            assert settings.LOG_LEVEL == "INFO"


class TestSettingsFromEnv:
    """Tests for Settings loading from environment variables."""

    def test_app_mode_from_env(self):
        """Test APP_MODE is loaded from environment."""
        with patch.dict(os.environ, {"APP_MODE": "prod"}, clear=True):
            from config import AppMode, Settings

            settings = Settings()
            assert settings.APP_MODE == AppMode.PROD

    def test_theft_switches_from_env(self):
        env_vars = {
            "THEFT_DETECTION_ENABLED": "false",
            "THEFT_DETECTION_INVALIDATE_FAMILY": "false",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            from config import Settings

            settings = Settings()
            assert settings.THEFT_DETECTION_ENABLED is False
            assert settings.THEFT_DETECTION_INVALIDATE_FAMILY is False

    def test_rate_limits_from_env(self):
        env_vars = {
            "RATE_LIMIT_IP_MAX_ATTEMPTS": "20",
            "RATE_LIMIT_ACCOUNT_MAX_ATTEMPTS": "3",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            from config import Settings

            settings = Settings()
            assert settings.RATE_LIMIT_IP_MAX_ATTEMPTS == 20
            assert settings.RATE_LIMIT_ACCOUNT_MAX_ATTEMPTS == 3


class TestCookieSettings:
    """Tests for refresh cookie attributes."""

    def test_dev_cookie_is_lax_and_not_secure(self):
        with patch.dict(os.environ, {"APP_MODE": "dev"}, clear=True):
            from config import Settings

            settings = Settings()
            assert settings.effective_cookie_secure is False
            assert settings.effective_cookie_samesite == "lax"

    def test_prod_cookie_is_strict_and_secure(self):
        with patch.dict(os.environ, {"APP_MODE": "prod"}, clear=True):
            from config import Settings

            settings = Settings()
            assert settings.effective_cookie_secure is True
            assert settings.effective_cookie_samesite == "strict"

    def test_cookie_secure_override(self):
        with patch.dict(os.environ, {"APP_MODE": "prod", "COOKIE_SECURE": "false"}, clear=True):
            from config import Settings

            settings = Settings()
            assert settings.effective_cookie_secure is False


class TestCORSOrigins:
    """Tests for CORS origins configuration."""

    def test_cors_origins_dev_mode(self):
        """Test CORS origins in dev mode."""
        with patch.dict(os.environ, {"APP_MODE": "dev"}, clear=True):
            from config import Settings

            origins = Settings().CORS_ORIGINS

            assert "http://localhost:4200" in origins

    def test_cors_origins_prod_mode_default(self):
        """Test CORS origins in prod mode with no custom origins."""
        with patch.dict(os.environ, {"APP_MODE": "prod"}, clear=True):
            from config import Settings

            assert Settings().CORS_ORIGINS == []

    def test_cors_allowed_origins_with_spaces(self):
        """Test CORS_ALLOWED_ORIGINS handles spaces correctly."""
        env_vars = {
            "APP_MODE": "prod",
            "CORS_ALLOWED_ORIGINS": "https://dmarc.example.com, https://ops.example.com ",
        }
        with patch.dict(os.environ, env_vars, clear=True):
            from config import Settings

            origins = Settings().CORS_ORIGINS

            assert origins == ["https://dmarc.example.com", "https://ops.example.com"]


class TestSettingsValidation:
    """Security guardrails applied by get_settings."""

    def test_prod_rejects_default_secret(self):
        with patch.dict(os.environ, {"APP_MODE": "prod"}, clear=True):
            import config

            with pytest.raises(ValueError, match="Default SECRET_KEY"):
                config.get_settings()

    def test_prod_rejects_debug(self):
        env_vars = {"APP_MODE": "prod", "SECRET_KEY": STRONG_SECRET, "DEBUG": "true"}
        with patch.dict(os.environ, env_vars, clear=True):
            import config

            with pytest.raises(ValueError, match="DEBUG=True"):
                config.get_settings()

    def test_prod_warns_on_short_secret(self):
        env_vars = {"APP_MODE": "prod", "SECRET_KEY": "short-but-not-default"}
        with patch.dict(os.environ, env_vars, clear=True):
            import config

            with pytest.warns(config.SecurityWarning, match="SECRET_KEY"):
                config.get_settings()

    def test_prod_warns_on_cheap_bcrypt(self):
        env_vars = {"APP_MODE": "prod", "SECRET_KEY": STRONG_SECRET, "BCRYPT_ROUNDS": "4"}
        with patch.dict(os.environ, env_vars, clear=True):
            import config

            with pytest.warns(config.SecurityWarning, match="BCRYPT_ROUNDS"):
                config.get_settings()

    def test_prod_with_strong_settings_is_quiet(self):
        env_vars = {"APP_MODE": "prod", "SECRET_KEY": STRONG_SECRET, "BCRYPT_ROUNDS": "12"}
        with patch.dict(os.environ, env_vars, clear=True):
            import config

            with warnings.catch_warnings():
                warnings.simplefilter("error", config.SecurityWarning)
                settings = config.get_settings()

            assert settings.APP_MODE == config.AppMode.PROD

    @pytest.mark.parametrize("rounds", ["3", "32"])
    def test_bcrypt_rounds_out_of_range(self, rounds):
        with patch.dict(os.environ, {"BCRYPT_ROUNDS": rounds}, clear=True):
            import config

            with pytest.raises(ValueError, match="BCRYPT_ROUNDS"):
                config.get_settings()


class TestGetSettings:
    """Tests for get_settings function."""

    def test_get_settings_returns_settings(self):
        """Test get_settings returns Settings instance."""
        from config import Settings, get_settings

        assert isinstance(get_settings(), Settings)

    def test_get_settings_is_cached(self):
        """Test get_settings returns cached instance."""
        from config import get_settings

        assert get_settings() is get_settings()


class TestDatabaseUrl:
    """Tests for async driver selection."""

    @pytest.mark.parametrize(
        "url,expected",
        [
            ("postgresql://u:p@db:5432/dmarc", "postgresql+asyncpg://u:p@db:5432/dmarc"),
            ("sqlite:///./dmarc_auth.db", "sqlite+aiosqlite:///./dmarc_auth.db"),
            ("sqlite+aiosqlite:///./dmarc_auth.db", "sqlite+aiosqlite:///./dmarc_auth.db"),
        ],
    )
    def test_normalize_database_url(self, url, expected):
        from db.database import normalize_database_url

        assert normalize_database_url(url) == expected
