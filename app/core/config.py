from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    database_url: str = "sqlite+aiosqlite:///./shopify_app.db"
    db_connect_attempts: int = 3
    db_connect_retry_delay: float = 2.0

    # Shopify app credentials
    shopify_api_key: str = ""
    shopify_api_secret: str = ""
    shopify_app_url: str = ""
    scopes: str = ""

    # Airbyte handler
    airbyte_api_url: str = "https://your-airbyte-handler.com/api"

    # Optional settings
    log_level: str = "INFO"
    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
