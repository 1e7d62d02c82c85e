"""Application configuration."""
from functools import lru_cache
from pydantic_settings import BaseSettings
from pydantic import ConfigDict


class Settings(BaseSettings):
    model_config = ConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")
    app_env: str = "development"
    debug: bool = True
    public_base_url: str | None = None

    database_url: str | None = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "salon_notify"
    postgres_user: str = "salon_notify"
    postgres_password: str = "changeme"

    redis_host: str = "localhost"
    redis_port: int = 6379

    admin_default_email: str = "admin@localhost"
    admin_default_password: str = "changeme"

    jwt_secret: str = "your-jwt-secret-min-32-chars"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60

    # console | live
    sender_backend: str = "console"
    send_timeout_seconds: int = 20

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_secure: str = "tls"  # tls | ssl | none
    smtp_from_email: str = ""
    smtp_from_name: str = "Salon"

    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_api_base: str = "https://api.twilio.com/2010-04-01"
    twilio_validate_webhooks: bool = True

    mailgun_webhook_signing_key: str = ""
    mailgun_strict_signature: bool = True

    worker_enabled: bool = True
    worker_poll_interval_seconds: int = 30
    worker_max_concurrency: int = 5
    stale_sending_seconds: int = 900
    maintenance_interval_seconds: int = 300
    notification_retention_days: int = 90
    dlq_retention_days: int = 30
    rq_notifications_queue_name: str = "notifications"


@lru_cache
def get_settings() -> Settings:
    return Settings()
