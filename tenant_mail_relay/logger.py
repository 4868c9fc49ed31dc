"""Logging helpers for the mail relay."""

import logging

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "TenantMailRelay") -> logging.Logger:
    """Return a :class:`logging.Logger` bound to ``name``.

    Note: handlers and levels are configured once by :func:`configure_logging`
    from the process entry point to avoid duplicate handlers.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO") -> None:
    """Configure the root logger for the relay process."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        force=True,
    )
