"""RemediationRuntime — wires configuration into a running engine.

Assembly:
  1. Load the runbook knowledge base      (knowledge_base)
  2. Build the command runner             (subprocess or scripted)
  3. Open the audit database              (audit_store)
  4. Construct the remediation engine     (engine)

``run_incident`` then drives one session end-to-end, consulting an
approver callback whenever an action waits at the approval gate.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from audit_store.connection import DatabaseConnection
from audit_store.repository import AuditRepository
from engine.engine import RemediationEngine
from engine.schema import PendingApproval, SessionSnapshot
from engine.target_context import (
    CommandRunner,
    ScriptedCommandRunner,
    SubprocessCommandRunner,
    TargetContext,
)
from integration.config_manager import SystemConfig
from integration.logger import get_logger, set_session_id
from knowledge_base.loader import load_knowledge_base
from knowledge_base.store import KnowledgeBaseStore

_log = get_logger(__name__)

# Returns the approving actor, or ``None`` to decline (which cancels).
Approver = Callable[[PendingApproval], Optional[str]]


# ── Result container ───────────────────────────────────────────────


@dataclass
class IncidentRunResult:
    """Aggregated result of one driven session."""

    session_id: str = ""
    outcome: str = ""
    execution_time: float = 0.0
    approvals: List[str] = field(default_factory=list)
    snapshot: Optional[SessionSnapshot] = None


# ── Runtime ────────────────────────────────────────────────────────


class RemediationRuntime:
    """Own the knowledge base, runner, audit store and engine.

    Args:
        config: Validated :class:`SystemConfig`.
        runner: Overrides the runner the config describes.
        store: Overrides the knowledge base at ``knowledge_base.path``.
    """

    def __init__(
        self,
        config: SystemConfig,
        *,
        runner: Optional[CommandRunner] = None,
        store: Optional[KnowledgeBaseStore] = None,
    ) -> None:
        self.config = config
        self.store = store if store is not None else load_knowledge_base(
            config.knowledge_base.path, strict=config.knowledge_base.strict,
        )
        self.runner = runner if runner is not None else build_runner(config)
        self.db: Optional[DatabaseConnection] = None
        self.repository: Optional[AuditRepository] = None
        if config.audit.enable:
            self.db = DatabaseConnection(config.to_audit_config())
            self.db.create_tables()
            self.repository = AuditRepository(self.db)
        self.engine = RemediationEngine(
            self.store,
            runner=self.runner,
            config=config.to_engine_config(),
            default_context=config.to_target_context(),
            archive=self.repository,
        )

    # ── public interface ───────────────────────────────────────────

    async def run_incident(
        self,
        observation: Mapping[str, Any],
        *,
        approver: Approver,
        incident_id: Optional[str] = None,
        context: Optional[TargetContext] = None,
        timeout: Optional[float] = None,
        poll_interval: float = 0.05,
    ) -> IncidentRunResult:
        """Start a session for *observation* and drive it to an outcome.

        Each action that waits for approval is passed to *approver*; a
        returned actor name approves it, ``None`` cancels the session.

        Args:
            observation: Flat symptom mapping (``True`` flags plus fields).
            approver: Approval callback.
            incident_id: Optional incident key.
            context: Target overriding the configured default.
            timeout: Give up waiting after this many seconds.
            poll_interval: How often to look for a pending approval.
        """
        start = time.monotonic()
        engine = self.engine
        session_id = await engine.start_session(observation, incident_id=incident_id, context=context)
        set_session_id(session_id)
        _log.info("session_started", incident_id=incident_id or session_id)

        result = IncidentRunResult(session_id=session_id)
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            pending = await engine.wait_for_approval(
                session_id, timeout=remaining, poll_interval=poll_interval,
            )
            if pending is None:
                break
            actor = approver(pending)
            if actor:
                await engine.approve_action(session_id, pending.action_id, actor=actor)
                result.approvals.append(pending.action_id)
                _log.info("action_approved", action_id=pending.action_id, actor=actor)
                await self._wait_past(session_id, pending, poll_interval)
            else:
                await engine.cancel(session_id, actor="operator")
                _log.info("approval_declined", action_id=pending.action_id)
                break

        remaining = None if deadline is None else max(0.0, deadline - loop.time())
        snapshot = await engine.wait_for(session_id, timeout=remaining)
        result.snapshot = snapshot
        result.outcome = snapshot.outcome.value if snapshot.outcome else snapshot.status.value
        result.execution_time = time.monotonic() - start
        _log.info("session_finished", outcome=result.outcome, duration=round(result.execution_time, 3))
        return result

    def run_incident_sync(self, observation: Mapping[str, Any], **kwargs: Any) -> IncidentRunResult:
        """Synchronous wrapper around :meth:`run_incident`."""
        async def _run() -> IncidentRunResult:
            try:
                return await self.run_incident(observation, **kwargs)
            finally:
                await self.engine.shutdown(timeout=5.0)

        return asyncio.run(_run())

    def close(self) -> None:
        """Release the audit database."""
        if self.db is not None:
            self.db.close()

    # ── internals ──────────────────────────────────────────────────

    async def _wait_past(self, session_id: str, offered: PendingApproval, poll_interval: float) -> None:
        # The approval is queued; wait until the session has consumed it
        # so the same pending record is not offered twice.
        while self.engine.tracker.is_active(session_id):
            if self.engine.tracker.get(session_id).pending_approval != offered:
                return
            await asyncio.sleep(poll_interval)


def build_runner(config: SystemConfig) -> CommandRunner:
    """Return the command runner described by ``config.runner``."""
    if config.runner.mode == "scripted":
        if not config.runner.script:
            raise ValueError("runner.script is required when runner.mode is 'scripted'")
        return ScriptedCommandRunner.from_file(config.runner.script)
    return SubprocessCommandRunner(shell=config.runner.shell)


def auto_approver(actor: str = "operator") -> Approver:
    """Approver that approves every pending action as *actor*."""
    def _approve(pending: PendingApproval) -> Optional[str]:
        return actor
    return _approve


def summarize(snapshot: SessionSnapshot) -> Dict[str, Any]:
    """JSON-friendly summary of a session snapshot."""
    return {
        "session_id": snapshot.session_id,
        "incident_id": snapshot.incident_id,
        "outcome": snapshot.outcome.value if snapshot.outcome else None,
        "status": snapshot.status.value,
        "visited_entries": list(snapshot.visited_entries),
        "confirmed": [h.cause_id for h in snapshot.hypotheses if h.status.value == "confirmed"],
        "actions": [f"{a.action_id}:{a.event.value}" for a in snapshot.actions],
        "reason": snapshot.report.reason if snapshot.report else "",
    }
