"""
Logging configuration for the League Dashboard backend.

Provides structured JSON logging for production and readable text logging for development.
Fields passed through ``extra`` whose names look like credentials are dropped.
"""

import json
import logging
import re
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional

SENSITIVE_KEY_PATTERN = re.compile(
    r"(token|cookie|secret|password|authorization|apikey|api_key|refresh)", re.IGNORECASE
)

_RESERVED_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName", "levelname", "levelno",
    "lineno", "module", "msecs", "message", "pathname", "process", "processName",
    "relativeCreated", "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "extra", "taskName",
}


def sanitize(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop None values and keys that may carry credentials."""
    if not metadata:
        return {}
    return {
        key: value
        for key, value in metadata.items()
        if value is not None and not SENSITIVE_KEY_PATTERN.search(key)
    }


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }
        log_data.update(sanitize(extras))

        return json.dumps(log_data, default=str)

    def formatException(self, exc_info):
        """Format exception as a list of lines."""
        return traceback.format_exception(*exc_info)


def setup_logging(config=None):
    """
    Set up logging configuration.

    Args:
        config: Optional Config object. If None, uses environment variables.
    """
    import os

    log_level = os.getenv("LOG_LEVEL", "INFO")
    log_format = os.getenv("LOG_FORMAT", "json")

    if config:
        log_level = config.log_level
        log_format = config.log_format

    level = getattr(logging, log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    if log_format == "json":
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)

    # Third-party loggers are noisy at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("hpack").setLevel(logging.WARNING)
