"""Startup-time config logging with credentials masked."""

from urllib.parse import urlsplit, urlunsplit

from notifyhub.common.config import CommonSettings
from notifyhub.common.logging import logger


SECRET_MARKERS = ("key", "secret", "password", "token")
URL_MARKERS = ("dsn", "url", "servers")


def _mask_url(value: str) -> str:
    """Keep scheme/host/path of a connection string, drop any password."""

    parts = urlsplit(value)
    if parts.password is None:
        return value
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


def safe_value(name: str, value) -> str:
    if value in (None, ""):
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    if any(marker in name for marker in URL_MARKERS):
        return _mask_url(str(value))
    return str(value)


def log_startup_config(settings: CommonSettings, fields: list[str]) -> dict[str, str]:
    """Log the effective value of selected settings fields and return them."""

    config = {"service": settings.service_name}
    for name in fields:
        config[name] = safe_value(name, getattr(settings, name))
    logger.info("startup_config=%s", config)
    return config
