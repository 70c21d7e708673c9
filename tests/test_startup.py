"""Startup config logging never leaks credentials."""

from notifyhub.common.config import settings
from notifyhub.common.startup import log_startup_config, safe_value


def test_secrets_are_redacted():
    assert safe_value("whatsapp_app_secret", "s3cret") == "<redacted>"
    assert safe_value("api_key", "abc") == "<redacted>"
    assert safe_value("twilio_auth_token", "") == "<unset>"


def test_connection_string_password_is_masked():
    masked = safe_value("postgres_dsn", "postgresql+psycopg://notifyhub:hunter2@db:5432/notifyhub")

    assert masked == "postgresql+psycopg://notifyhub:***@db:5432/notifyhub"
    assert safe_value("redis_url", "redis://redis:6379/0") == "redis://redis:6379/0"


def test_log_startup_config_reads_effective_settings():
    config = log_startup_config(settings, ["worker_count", "api_key"])

    assert config["worker_count"] == str(settings.worker_count)
    assert config["api_key"] == "<redacted>"
