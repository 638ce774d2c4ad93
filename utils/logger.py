import json
import logging
import sys
import threading
from typing import Any, Dict

from config.settings import settings

_configured = False
_configure_lock = threading.Lock()

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_RESERVED_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, including any ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _configure_root() -> None:
    global _configured
    if _configured:
        return

    with _configure_lock:
        if _configured:
            return

        handler = logging.StreamHandler(sys.stderr)
        if settings.LOG_JSON:
            handler.setFormatter(JsonFormatter())
        else:
            handler.setFormatter(
                logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
            )

        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(settings.LOG_LEVEL.upper())
        _configured = True


def get_logger(name: str) -> logging.Logger:
    """Return a module logger, configuring the process-wide handler on first use."""
    _configure_root()
    return logging.getLogger(name)
