"""Logging configuration for the tailer process."""

import json
import logging
import sys
from typing import Any, Dict

_LOG_RECORD_DEFAULTS = set(logging.LogRecord(
    name="", level=0, pathname="", lineno=0, msg="", args=(), exc_info=None
).__dict__.keys()) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """A minimal JSON formatter that keeps the `extra` context of each record."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = {
            k: v for k, v in record.__dict__.items() if k not in _LOG_RECORD_DEFAULTS
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        payload.update(extras)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO", log_format: str = "plain") -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name
        log_format: "plain" for human-readable lines, "json" for structured output
    """
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
        )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Driver heartbeat and topology logs are noise for this process
    logging.getLogger("pymongo").setLevel(logging.WARNING)
