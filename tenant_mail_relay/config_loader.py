"""Settings loader: INI file with environment variable fallbacks."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .logger import get_logger

logger = get_logger("TenantMailRelay.config")

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


def parse_domain_list(value: Optional[str]) -> List[str]:
    """Split a comma separated domain list, dropping blanks."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def load_settings(config_path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with TMR_):
      TMR_CONFIG - Path to config.ini file (default: config.ini)
      TMR_LOG_LEVEL - Logging level (default: INFO)
      TMR_DB_PATH - Database path (default: relay.db)
      TMR_HOST - Server host (default: 0.0.0.0)
      TMR_PORT - Server port (default: 8080)
      TMR_API_TOKEN - Admin API token (default: none, admin endpoints open)
      TMR_SMTP_HOST / TMR_SMTP_PORT - Outbound relay (default: localhost:1025)
      TMR_SMTP_USER / TMR_SMTP_PASS - Relay credentials (default: none)
      TMR_SMTP_TIMEOUT - Relay connection timeout in seconds (default: 60)
      TMR_QUEUE_POLL_SECONDS - Delivery worker poll interval (default: 5)
      TMR_BATCH_SIZE - Messages claimed per worker cycle (default: 10)
      TMR_ARCHIVE_MAX_ROWS - Archive ceiling (default: 100000)
      TMR_ARCHIVE_CULL_INTERVAL_SECONDS - Culler interval (default: 600)
      TMR_DOMAINS - Comma separated domains seeded at startup
      TMR_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [smtp] host, port, user, password, timeout
      [delivery] poll_seconds, batch_size
      [archive] max_rows, cull_interval_seconds
      [domains] seed
      [logging] level, delivery_activity
    """
    path = Path(config_path or os.getenv("TMR_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
    else:
        logger.debug("Config file %s not found, using environment only", path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in TRUE_VALUES:
            return True
        if normalized in FALSE_VALUES:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    settings: Dict[str, Any] = {
        "log_level": get("logging", "level", os.getenv("TMR_LOG_LEVEL", "INFO")),
        "db_path": get("storage", "db_path", os.getenv("TMR_DB_PATH", "relay.db")),
        "http_host": get("server", "host", os.getenv("TMR_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", os.getenv("TMR_PORT"), default=8080),
        "api_token": get("server", "api_token", os.getenv("TMR_API_TOKEN")),
        "smtp_host": get("smtp", "host", os.getenv("TMR_SMTP_HOST", "localhost")),
        "smtp_port": get_int("smtp", "port", os.getenv("TMR_SMTP_PORT"), default=1025),
        "smtp_user": get("smtp", "user", os.getenv("TMR_SMTP_USER", "")),
        "smtp_password": get("smtp", "password", os.getenv("TMR_SMTP_PASS", "")),
        "smtp_timeout": get_float("smtp", "timeout", os.getenv("TMR_SMTP_TIMEOUT"), default=60.0),
        "queue_poll_seconds": get_float("delivery", "poll_seconds", os.getenv("TMR_QUEUE_POLL_SECONDS"), default=5.0),
        "batch_size": get_int("delivery", "batch_size", os.getenv("TMR_BATCH_SIZE"), default=10),
        "archive_max_rows": get_int("archive", "max_rows", os.getenv("TMR_ARCHIVE_MAX_ROWS"), default=100_000),
        "archive_cull_interval_seconds": get_float(
            "archive",
            "cull_interval_seconds",
            os.getenv("TMR_ARCHIVE_CULL_INTERVAL_SECONDS"),
            default=600.0,
        ),
        "seed_domains": parse_domain_list(get("domains", "seed", os.getenv("TMR_DOMAINS"))),
        "log_delivery_activity": get_bool(
            "logging",
            "delivery_activity",
            os.getenv("TMR_LOG_DELIVERY_ACTIVITY"),
            default=False,
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


def core_kwargs(settings: Dict[str, Any]) -> Dict[str, Any]:
    """Extract the :class:`RelayCore` keyword arguments from ``settings``."""
    keys = (
        "db_path",
        "smtp_host",
        "smtp_port",
        "smtp_user",
        "smtp_password",
        "smtp_timeout",
        "queue_poll_seconds",
        "batch_size",
        "archive_max_rows",
        "archive_cull_interval_seconds",
        "seed_domains",
        "log_delivery_activity",
    )
    return {key: settings[key] for key in keys if settings.get(key) is not None}
