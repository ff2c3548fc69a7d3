"""
File: telemetry.py
Purpose: Structured logging for knowledge-base loading.
Dependencies: Standard library only (logging, json).
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any, Dict


class _JSONFormatter(logging.Formatter):
    """Emit structured JSON log lines tagged with the runbook entry id."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "entry_id"):
            payload["entry_id"] = record.entry_id
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = str(record.exc_info[1])
        return json.dumps(payload, default=str)


_CONFIGURED: set[str] = set()


def get_logger(name: str) -> logging.Logger:
    """Return a JSON-structured logger for *name*."""
    logger = logging.getLogger(name)
    if name not in _CONFIGURED:
        logger.setLevel(logging.INFO)
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(_JSONFormatter())
        logger.addHandler(handler)
        logger.propagate = False
        _CONFIGURED.add(name)
    return logger
