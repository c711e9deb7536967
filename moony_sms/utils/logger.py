import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """
    JSON formatter for Lambda logs.
    Produces one JSON object per log line; fields passed with ``extra=`` are
    emitted as top-level keys so CloudWatch Insights can filter on them.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S,%f%z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, value in record.__dict__.items():
            if key in _RESERVED or key.startswith("_"):
                continue
            payload[key] = value

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


def get_logger(name: str = "moony") -> logging.Logger:
    """
    Returns a JSON-logging logger under the ``moony`` namespace.
    Safe to call many times; the handler is only attached once.
    """
    qualified = name if name == "moony" or name.startswith("moony.") else f"moony.{name}"
    logger = logging.getLogger(qualified)

    root = logging.getLogger("moony")
    if not getattr(root, "_configured", False):
        root.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
        # We emit JSON ourselves; keep Lambda's root handler out of it.
        root.propagate = False
        root._configured = True  # type: ignore[attr-defined]

    return logger
