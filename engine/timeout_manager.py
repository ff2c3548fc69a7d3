"""Command deadlines for probes and actions, with a violation log.

Every command the engine sends to a target context goes through
:meth:`TimeoutManager.run`, which bounds it by the probe's or action's
declared timeout.  A missed deadline is recorded as a
:class:`TimeoutViolation` (kept in a bounded history so sessions and
contexts can be inspected afterwards) and counted in the metrics
collector before ``asyncio.TimeoutError`` propagates to the caller.
"""

from __future__ import annotations

import asyncio
import collections
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Deque, Dict, List, Optional

from .metrics_collector import MetricsCollector
from .target_context import CommandResult, CommandRunner, TargetContext
from .telemetry import get_logger

_logger = get_logger(__name__)

PROBE = "probe"
ACTION = "action"
_KINDS = (PROBE, ACTION)


@dataclass(frozen=True)
class TimeoutViolation:
    """One command that outlived its timeout."""

    kind: str
    command_id: str
    session_id: str
    context_name: str
    limit: float
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.command_id}"


class TimeoutManager:
    """Run target-context commands under a deadline.

    Args:
        metrics: Optional collector fed one timeout per violation.
        history: Number of most recent violations kept for inspection.
    """

    def __init__(self, metrics: Optional[MetricsCollector] = None, history: int = 500) -> None:
        self.metrics = metrics
        self._violations: Deque[TimeoutViolation] = collections.deque(maxlen=history)
        self._counts: Dict[str, int] = collections.defaultdict(int)

    async def run(
        self,
        runner: CommandRunner,
        command: str,
        context: TargetContext,
        timeout: float,
        *,
        kind: str,
        command_id: str,
        session_id: str = "",
    ) -> CommandResult:
        """Run *command* on *context*, giving up after *timeout* seconds.

        Args:
            runner: Executes the command on the target.
            command: Rendered command line.
            context: Target the command runs against.
            timeout: Seconds allowed; must be positive.
            kind: ``"probe"`` or ``"action"``.
            command_id: Probe or action id.
            session_id: Owning session.

        Raises:
            ValueError: If *timeout* is not positive or *kind* is unknown.
            asyncio.TimeoutError: If the command misses its deadline.
        """
        if kind not in _KINDS:
            raise ValueError(f"kind must be one of {_KINDS}, got '{kind}'")
        if timeout <= 0:
            raise ValueError(f"{kind} '{command_id}' timeout must be > 0")

        try:
            return await asyncio.wait_for(runner.run(command, context, timeout), timeout=timeout)
        except asyncio.TimeoutError:
            self._record(TimeoutViolation(kind, command_id, session_id, context.name, timeout))
            raise

    def violations(
        self,
        *,
        session_id: Optional[str] = None,
        context_name: Optional[str] = None,
        kind: Optional[str] = None,
    ) -> List[TimeoutViolation]:
        """Recorded violations, oldest first, optionally filtered."""
        return [
            v for v in self._violations
            if (session_id is None or v.session_id == session_id)
            and (context_name is None or v.context_name == context_name)
            and (kind is None or v.kind == kind)
        ]

    def get_timeout_stats(self) -> Dict[str, int]:
        """Return mapping of ``kind:command_id`` → timeout count."""
        return dict(self._counts)

    def context_stats(self) -> Dict[str, int]:
        """Return mapping of context name → violations still in the history."""
        counts: Dict[str, int] = collections.Counter(v.context_name for v in self._violations)
        return dict(counts)

    def reset_stats(self) -> None:
        """Clear counts and history."""
        self._counts.clear()
        self._violations.clear()

    def _record(self, violation: TimeoutViolation) -> None:
        self._violations.append(violation)
        self._counts[violation.key] += 1
        if self.metrics is not None:
            self.metrics.record_timeout(violation.kind, violation.command_id)
        _logger.warning(
            f"{violation.kind.capitalize()} {violation.command_id} exceeded its {violation.limit}s timeout",
            extra={"session_id": violation.session_id, "context": violation.context_name},
        )
