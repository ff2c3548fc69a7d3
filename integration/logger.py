"""Structured logging with session IDs via *structlog*."""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog

_session_id: ContextVar[str] = ContextVar("session_id", default="")

_CONFIGURED = False


# ── public helpers ─────────────────────────────────────────────────


def get_session_id() -> str:
    """Return the current context's session ID (empty if unset)."""
    return _session_id.get()


def set_session_id(session_id: str) -> None:
    """Bind *session_id* to every log entry in the current context."""
    _session_id.set(session_id)


# ── structlog processors ──────────────────────────────────────────


def _add_session_id(
    logger: Any,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Inject the current session ID into every log entry."""
    sid = _session_id.get()
    if sid:
        event_dict.setdefault("session_id", sid)
    return event_dict


# ── setup ──────────────────────────────────────────────────────────

_COMPONENT_PREFIXES = ("engine", "knowledge_base", "audit_store")


def set_component_level(level: int) -> None:
    """Apply *level* to the JSON loggers of the engine-side packages."""
    for name in list(logging.root.manager.loggerDict):
        if name.split(".")[0] in _COMPONENT_PREFIXES:
            logging.getLogger(name).setLevel(level)


def setup_logging(log_level: str = "INFO") -> None:
    """Configure *structlog* + stdlib logging.

    Rendered structlog events are handed to the stdlib root logger,
    which writes them to stderr.  Safe to call multiple times;
    subsequent calls are no-ops.

    Args:
        log_level: One of ``DEBUG``, ``INFO``, ``WARNING``, ``ERROR``.
    """
    global _CONFIGURED  # noqa: PLW0603
    if _CONFIGURED:
        return
    _CONFIGURED = True

    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=numeric_level,
    )
    set_component_level(numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _add_session_id,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer()
            if sys.stderr.isatty()
            else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a bound structlog logger, optionally named *name*."""
    log = structlog.get_logger()
    if name:
        log = log.bind(logger=name)
    return log
