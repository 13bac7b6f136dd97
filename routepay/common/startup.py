"""Startup-time logging of the effective settings."""

from routepay.common.config import settings
from routepay.common.logging import logger

SECRET_MARKERS = ("dsn", "secret", "password", "token", "key")


def effective_config(fields: list[str]) -> dict[str, object]:
    """Selected settings after env/.env/defaults are applied, secrets redacted."""

    values = settings.model_dump()
    config = {}
    for field in fields:
        if field not in values:
            config[field] = "<unknown>"
        elif any(marker in field for marker in SECRET_MARKERS):
            config[field] = "<redacted>" if values[field] else "<unset>"
        else:
            config[field] = values[field]
    return config


def log_startup_config(service_name: str, fields: list[str]) -> None:
    """Log selected settings once per process for quick troubleshooting."""

    logger.info("startup_config service=%s config=%s", service_name, effective_config(fields))
