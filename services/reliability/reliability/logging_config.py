import logging
import json
import os
import sys
from typing import Any, Dict, Optional, TextIO

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_LEVEL = logging.INFO

# Keys lifted from logger.*(..., extra={...}) into JSON output
EXTRA_KEYS = (
    "event",
    "job_id",
    "job_type",
    "worker_id",
    "state",
    "attempts",
    "breaker",
    "runtime_s",
    "error",
)

# Chatty third-party loggers; one line per webhook post or HTTP request otherwise
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": record.created,
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        payload.update({k: getattr(record, k) for k in EXTRA_KEYS if hasattr(record, k)})
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: int = LOG_LEVEL, stream: Optional[TextIO] = None) -> None:
    """Route every logger to one stdout handler.

    LOG_FORMAT=json switches to one JSON object per line; LOG_LEVEL overrides level.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    if os.environ.get("LOG_FORMAT", "plain").lower() == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(os.environ.get("LOG_LEVEL", logging.getLevelName(level)).upper())
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
