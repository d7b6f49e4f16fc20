from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./chatcore.db"

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Presence: a user with no heartbeat inside this window is marked offline
    HEARTBEAT_TIMEOUT_SECONDS: float = 30.0
    PRESENCE_SWEEP_INTERVAL_SECONDS: float = 1.0

    # Message persistence retry (exponential backoff)
    PERSIST_MAX_ATTEMPTS: int = 5
    PERSIST_BASE_DELAY_SECONDS: float = 0.05
    PERSIST_MAX_DELAY_SECONDS: float = 2.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
