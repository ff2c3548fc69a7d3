"""Structured JSON logging for the remediation engine."""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

# Extra attributes copied from ``LogRecord`` into the JSON payload.
_CONTEXT_FIELDS = ("session_id", "incident_id", "entry_id", "cause_id", "probe_id", "action_id", "resource", "context")


class _JSONFormatter(logging.Formatter):
    """Emit JSON log lines with session context support."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _CONTEXT_FIELDS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = str(record.exc_info[1])
        return json.dumps(payload, default=str)


_CONFIGURED: set[str] = set()


def get_logger(name: str) -> logging.Logger:
    """Return a JSON-structured logger for *name*."""
    logger = logging.getLogger(name)
    if name not in _CONFIGURED:
        logger.setLevel(logging.DEBUG)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_JSONFormatter())
        logger.addHandler(handler)
        logger.propagate = False
        _CONFIGURED.add(name)
    return logger
