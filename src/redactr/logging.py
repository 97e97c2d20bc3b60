"""Structured logging helpers (JSON).

Use ``get_logger(__name__)`` to emit one JSON object per record. Fields passed
through ``extra=`` are merged into the payload, so detection runs and loop steps
can be correlated by ``request_id`` / ``step``.
"""

from __future__ import annotations

import logging
import os

import orjson

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None)).keys()
) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload = {
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _RESERVED and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return orjson.dumps(payload, default=str).decode("utf-8")


def get_logger(name: str = "redactr") -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        h = logging.StreamHandler()
        h.setFormatter(JsonFormatter())
        logger.addHandler(h)
        level = os.environ.get("REDACTR_LOG_LEVEL", "INFO").upper()
        logger.setLevel(getattr(logging, level, logging.INFO))
    return logger


__all__ = ["JsonFormatter", "get_logger"]
