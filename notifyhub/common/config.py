"""Central environment-driven settings shared by all services.

Each service process loads this once at startup. Service-specific behavior is
controlled by environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "unknown-service"
    log_level: str = "INFO"
    kafka_bootstrap_servers: str = "kafka:9092"
    redis_url: str = "redis://redis:6379/0"
    postgres_dsn: str
    api_key: str
    otel_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"

    # Dispatcher / queue
    worker_count: int = 4
    poll_interval_seconds: float = 1.0
    lease_seconds: int = 60
    default_max_attempts: int = 3
    retry_base_delay_seconds: float = 120.0
    retry_max_delay_seconds: float = 1800.0
    retry_jitter_ratio: float = 0.1
    rate_limit_per_minute: int = 60
    reminder_hours_before: int = 24
    lifecycle_topic: str = "appointments.lifecycle"

    # Inbound callbacks
    callback_dedupe_ttl_seconds: int = 86400
    callback_max_age_seconds: int = 300

    # Conversational messaging (WhatsApp Cloud API)
    whatsapp_api_url: str = "https://graph.facebook.com/v19.0"
    whatsapp_phone_number_id: str = ""
    whatsapp_access_token: str = ""
    whatsapp_app_secret: str = ""
    whatsapp_verify_token: str = ""

    # SMS (Twilio)
    twilio_api_url: str = "https://api.twilio.com/2010-04-01"
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_status_callback_url: str = ""

    # Email (SendGrid v3 mail API)
    email_api_url: str = "https://api.sendgrid.com"
    email_api_key: str = ""
    email_from_address: str = "no-reply@example.com"
    email_from_name: str = "Notifications"
    email_webhook_secret: str = ""

    provider_timeout_seconds: float = 10.0
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = CommonSettings()
