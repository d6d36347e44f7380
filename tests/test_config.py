"""Tests for process configuration."""

import pytest

from payments_core.config import Settings, normalize_database_url
from payments_core.exceptions import ConfigurationError

from conftest import ENCRYPTION_KEY, OLD_ENCRYPTION_KEY


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@db/payments")
    monkeypatch.setenv("PAYMENT_CREDENTIALS_ENCRYPTION_KEY", ENCRYPTION_KEY)
    for name in (
        "PAYMENT_CREDENTIALS_ENCRYPTION_KEY_OLD",
        "STRIPE_WEBHOOK_SECRET",
        "API_KEY",
        "APP_BASE_URL",
        "API_BASE_URL",
        "PAYMENT_RESULT_PATH",
        "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestNormalizeDatabaseUrl:

    @pytest.mark.parametrize("url,expected", [
        ("postgresql://u@h/db", "postgresql+asyncpg://u@h/db"),
        ("postgres://u@h/db", "postgresql+asyncpg://u@h/db"),
        ("postgresql+asyncpg://u@h/db", "postgresql+asyncpg://u@h/db"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
    ])
    def test_normalize(self, url, expected):
        assert normalize_database_url(url) == expected


class TestSettingsFromEnv:
    """Tests for reading settings from the environment."""

    def test_defaults(self, env):
        settings = Settings.from_env()

        assert settings.database_url == "postgresql+asyncpg://user:pw@db/payments"
        assert settings.encryption_key == ENCRYPTION_KEY
        assert settings.previous_encryption_key is None
        assert settings.stripe_webhook_secret is None
        assert settings.admin_api_key is None
        assert settings.app_base_url == "http://localhost:3000"
        assert settings.api_base_url == "http://localhost:8000"
        assert settings.payment_result_path == "/khairat/payment-result"
        assert settings.log_level == "INFO"

    def test_all_values(self, env):
        env.setenv("PAYMENT_CREDENTIALS_ENCRYPTION_KEY_OLD", OLD_ENCRYPTION_KEY)
        env.setenv("STRIPE_WEBHOOK_SECRET", "whsec_live")
        env.setenv("API_KEY", "admin-key")
        env.setenv("APP_BASE_URL", "https://khairat.example")
        env.setenv("API_BASE_URL", "https://api.khairat.example")
        env.setenv("LOG_LEVEL", "DEBUG")

        settings = Settings.from_env()

        assert settings.previous_encryption_key == OLD_ENCRYPTION_KEY
        assert settings.stripe_webhook_secret == "whsec_live"
        assert settings.admin_api_key == "admin-key"
        assert settings.app_base_url == "https://khairat.example"
        assert settings.api_base_url == "https://api.khairat.example"
        assert settings.log_level == "DEBUG"

    def test_missing_database_url(self, env):
        env.delenv("DATABASE_URL")
        with pytest.raises(ConfigurationError, match="DATABASE_URL"):
            Settings.from_env()

    def test_missing_encryption_key(self, env):
        env.delenv("PAYMENT_CREDENTIALS_ENCRYPTION_KEY")
        with pytest.raises(ConfigurationError):
            Settings.from_env()

    def test_short_encryption_key(self, env):
        env.setenv("PAYMENT_CREDENTIALS_ENCRYPTION_KEY", "x" * 31)
        with pytest.raises(ConfigurationError, match="at least 32"):
            Settings.from_env()

    def test_short_previous_key_is_ignored(self, env):
        env.setenv("PAYMENT_CREDENTIALS_ENCRYPTION_KEY_OLD", "short")
        assert Settings.from_env().previous_encryption_key is None

    def test_secrets_are_not_in_repr(self, env):
        env.setenv("STRIPE_WEBHOOK_SECRET", "whsec_live")
        text = repr(Settings.from_env())
        assert ENCRYPTION_KEY not in text
        assert "whsec_live" not in text
