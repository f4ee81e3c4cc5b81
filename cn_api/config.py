# ABOUTME: Application configuration and settings
# ABOUTME: Loads settings from environment variables using pydantic-settings

from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""
    model_config = SettingsConfigDict(env_file=".env")

    environment: str = "development"
    database_url: str = "sqlite:///./data/cn_api.db"
    admin_api_key: str | None = None
    api_key_prefix: str = "cn_live_"
    default_tier: str = "basic"
    default_monthly_call_limit: int = 1000
    auth_timeout_seconds: float = 5.0
    usage_history_months: int = 3
    usage_recorder_workers: int = 4
    create_tables_on_startup: bool = True
    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    """Returns cached settings instance."""
    return Settings()
