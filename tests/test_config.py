"""Tests for application configuration."""

from budgetflow.config import Settings


def test_settings_defaults() -> None:
    """Test that settings have expected default values."""
    settings = Settings()
    assert settings.api_port == 8000
    assert settings.debug is False
    assert "postgresql" in settings.database_url
    assert settings.jwt_algorithm == "HS256"


def test_pool_is_bounded() -> None:
    """Test that the connection pool has finite size and timeout."""
    settings = Settings()
    assert settings.db_pool_size > 0
    assert settings.db_max_overflow >= 0
    assert settings.db_pool_timeout > 0


def test_settings_read_environment(monkeypatch) -> None:
    """Test that environment variables override defaults."""
    monkeypatch.setenv("NOTIFICATION_DELAY_SECONDS", "5")
    monkeypatch.setenv("CHAT_SERVICE_URL", "http://chat.internal")
    settings = Settings()
    assert settings.notification_delay_seconds == 5
    assert settings.chat_service_url == "http://chat.internal"
