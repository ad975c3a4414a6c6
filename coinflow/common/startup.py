"""Process bootstrap shared by every service entrypoint."""

import os

from coinflow.common.config import settings
from coinflow.common.logging import configure_logging, logger
from coinflow.common.tracing import setup_tracing

BASE_STARTUP_KEYS = ["SERVICE_NAME", "POSTGRES_DSN", "KAFKA_BOOTSTRAP_SERVERS"]


def _safe_env(name: str) -> str:
    """Return env value with simple redaction for secret-like variable names."""

    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(secret in name for secret in ["KEY", "SECRET", "PASSWORD", "TOKEN", "DSN"]):
        return "<redacted>"
    return value


def log_startup_config(service_name: str, keys: list[str]) -> None:
    """Log selected startup config keys for quick troubleshooting."""

    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s", config)


def bootstrap_service(extra_keys: list[str] | None = None) -> None:
    """Logging, tracing and a redacted config dump, in that order."""

    configure_logging()
    setup_tracing(settings.service_name)
    log_startup_config(settings.service_name, BASE_STARTUP_KEYS + list(extra_keys or []))
