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

    # Storage
    DATA_DIR: str = "./data"
    MESSAGE_RETENTION: int = 1000
    ERROR_RETENTION: int = 100

    # Logging
    LOG_LEVEL: str = "INFO"

    # HTTP server
    HOST: str = "0.0.0.0"
    PORT: int = 8080
    DEFAULT_MESSAGES_LIMIT: int = 50

    # Chat client, "module:callable" returning a ChatClient.
    # Empty means no transport is available and fallback mode is used.
    CLIENT_FACTORY: str = ""
    CLIENT_INIT_DELAY_SECONDS: float = 2.0
    REINIT_DELAY_SECONDS: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
