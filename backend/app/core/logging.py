"""Process-wide logging setup with request and user correlation."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from typing import Dict

from app.core.context import get_request_id, get_user_id

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(request_id)s | user=%(user_id)s | %(message)s"

# Third-party loggers that drown out goal logs at INFO.
QUIET_LOGGERS: Dict[str, str] = {
    "sqlalchemy.engine": "WARNING",
    "apscheduler.executors.default": "WARNING",
    "httpx": "WARNING",
    "openai": "WARNING",
}


class RequestContextFilter(logging.Filter):
    """Stamp ``request_id`` and ``user_id`` onto every record, ``-`` outside a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id() or "-"
        record.user_id = get_user_id() or "-"
        return True


def configure_logging(*, log_level: str = "INFO") -> None:
    """Install the console handler once; later calls are ignored."""
    if getattr(configure_logging, "_configured", False):
        return

    level = log_level.upper()
    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "filters": {"request_context": {"()": "app.core.logging.RequestContextFilter"}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                    "level": level,
                    "filters": ["request_context"],
                }
            },
            "root": {"handlers": ["console"], "level": level},
            "loggers": {name: {"level": quiet_level} for name, quiet_level in QUIET_LOGGERS.items()},
        }
    )

    logging.getLogger(__name__).debug("Logging configured at %s", level)
    setattr(configure_logging, "_configured", True)
