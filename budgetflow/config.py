"""Application configuration using pydantic-settings."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = "postgresql://localhost:5432/budgetflow"
    db_pool_size: int = 10
    db_max_overflow: int = 5
    db_pool_timeout: int = 30  # seconds

    # Redis (for Celery)
    redis_url: str = "redis://localhost:6379/0"

    # Bearer tokens are issued by the auth service; we only verify them
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"

    # Purchase request verification tokens
    verification_secret: str = "change-me"

    # Collaborators
    email_service_url: str = "http://localhost:8025"
    chat_service_url: str = "http://localhost:8026"
    collaborator_timeout: float = 10.0  # seconds

    # Stage-waiting emails are delayed so rapid successive commits coalesce
    notification_delay_seconds: int = 1

    # Application
    debug: bool = False
    api_host: str = "0.0.0.0"
    api_port: int = 8000


settings = Settings()
