"""Structured JSON logging for the API, the batch job and the CLI."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict

STRUCTURED_FIELDS = (
    "route",
    "departure_date",
    "stage",
    "model",
    "assess_size",
    "max_tokens",
    "request_path",
    "method",
    "status_code",
    "latency_ms",
    "client",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # noqa: D401
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for attr in STRUCTURED_FIELDS:
            value = getattr(record, attr, None)
            if value is not None:
                payload[attr] = value if isinstance(value, (int, float, bool)) else str(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True)


def setup_logging(default_level: str | int = logging.INFO) -> None:
    """Configure root logger for JSON output; reuse existing handlers when present."""
    level = os.environ.get("LOG_LEVEL", default_level)
    root = logging.getLogger()
    root.setLevel(level)

    # Prophet's Stan backend logs every optimisation at INFO
    logging.getLogger("cmdstanpy").setLevel(logging.WARNING)

    if any(isinstance(handler, logging.StreamHandler) for handler in root.handlers):
        for handler in root.handlers:
            handler.setFormatter(JsonFormatter())
        return

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root.addHandler(handler)
