from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Celery worker configuration."""

    redis_url: str = "redis://redis:6379/0"
    timezone: str = "America/New_York"
    dispatch_interval_seconds: float = 30.0
    dispatch_batch_size: int = 100
    stale_claim_sweep_seconds: float = 60.0

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
