"""Error categorisation and per-session error bookkeeping."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from knowledge_base.schema import KnowledgeBaseError

from .schema import (
    ConcurrencyConflictError,
    ProbeExecutionError,
    RemediationError,
)
from .telemetry import get_logger

_logger = get_logger(__name__)


class SessionError(BaseModel):
    """One error captured while driving a session."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    error_type: str
    error_message: str
    stage: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ErrorHandler:
    """Categorise engine exceptions and record them per session.

    Only the failing session is affected by what is recorded here; the
    handler never decides anything for other sessions.
    """

    def __init__(self) -> None:
        self._errors: Dict[str, List[SessionError]] = {}

    # ---- public -----------------------------------------------------------

    @staticmethod
    def categorize_error(error: BaseException) -> str:
        """Return a canonical error-type label for *error*.

        Args:
            error: The exception.

        Returns:
            One of ``TIMEOUT``, ``NON_ZERO_EXIT``, ``MALFORMED_PAYLOAD``,
            ``LOCK_CONFLICT``, ``REMEDIATION``, ``KNOWLEDGE_BASE``,
            ``VALIDATION_ERROR``, ``UNKNOWN``.
        """
        if isinstance(error, ProbeExecutionError):
            return error.error_type
        if isinstance(error, asyncio.TimeoutError):
            return "TIMEOUT"
        if isinstance(error, ConcurrencyConflictError):
            return "LOCK_CONFLICT"
        if isinstance(error, RemediationError):
            return "REMEDIATION"
        if isinstance(error, KnowledgeBaseError):
            return "KNOWLEDGE_BASE"
        if isinstance(error, ValidationError):
            return "VALIDATION_ERROR"
        return "UNKNOWN"

    def handle_session_error(
        self,
        session_id: str,
        error: BaseException,
        stage: str = "",
    ) -> SessionError:
        """Record *error* against *session_id*.

        Args:
            session_id: Session whose driver raised.
            error: The exception caught.
            stage: Session status label at the time of failure.

        Returns:
            The recorded error.
        """
        record = SessionError(
            session_id=session_id,
            error_type=self.categorize_error(error),
            error_message=str(error),
            stage=stage,
        )
        self._errors.setdefault(session_id, []).append(record)
        _logger.error(
            f"Session error ({record.error_type}) during {stage or 'unknown stage'}: {error}",
            extra={"session_id": session_id},
        )
        return record

    def get_errors(self, session_id: str) -> List[SessionError]:
        """Return errors recorded for *session_id*."""
        return list(self._errors.get(session_id, []))

    def reset(self) -> None:
        """Clear all recorded errors."""
        self._errors.clear()
