"""
Logging setup for the push relay.
"""
import json
import logging
import sys
from datetime import datetime

from ..config import Settings

# Extra attributes copied into JSON log lines when present on the record
_EXTRA_FIELDS = (
    "campaign_id",
    "delivery_id",
    "subscription_id",
    "error_code",
    "attempt",
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(settings: Settings) -> logging.Logger:
    """Configure the package logger from settings."""
    logger = logging.getLogger("pushrelay")
    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    logger.handlers = []

    handler = logging.StreamHandler(sys.stdout)
    if settings.log_json:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    logger.propagate = False

    return logger
