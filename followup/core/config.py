from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "Follow-up Reminder Engine"
    database_url: str = (
        "postgresql+psycopg2://followup:followup@db:5432/followup"  # pragma: allowlist secret
    )
    redis_url: str = "redis://redis:6379/0"
    timezone: str = "America/New_York"
    log_level: str = "INFO"

    # Reminder policy
    enable_automatic_reminders: bool = True
    default_lead_time_hours: int = 24
    late_booking_buffer_seconds: int = 60
    max_delivery_attempts: int = 5
    retry_backoff_base_seconds: int = 60
    retry_backoff_multiplier: int = 2
    provider_timeout_seconds: float = 10.0
    stale_claim_seconds: int = 300
    confirmation_keywords: list[str] = ["YES", "CONFIRM"]

    # Channel providers
    channels_mock_mode: bool = False
    twilio_api_base_url: str = "https://api.twilio.com/2010-04-01"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    sendgrid_api_base_url: str = "https://api.sendgrid.com/v3"
    sendgrid_api_key: str = ""
    from_email: str = ""
    evolution_api_base_url: str = "http://localhost:8080"
    evolution_instance_name: str = ""
    evolution_api_key: str = ""
    webhook_verify_token: str = ""
    inbox_max_messages: int = 100
    inbox_ttl_seconds: int = 60 * 60 * 24 * 30

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


settings = get_settings()
