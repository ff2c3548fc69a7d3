"""
File: engine.py
Purpose: Session control surface of the diagnosis and remediation engine.
Dependencies: asyncio plus every engine component.
Performance: One driver task per session; probes share one worker pool.

Usage::

    engine = RemediationEngine(store, runner=ScriptedCommandRunner.from_file("script.yaml"))
    session_id = await engine.start_session({"high_latency": True, "service": "backend-service"})
    await engine.approve_action(session_id, "scale-database-replicas", actor="alice")
    snapshot = await engine.wait_for(session_id)
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, List, Mapping, Optional, Protocol, Union

from knowledge_base.store import KnowledgeBaseStore

from .config import EngineConfig
from .diagnostic_executor import DiagnosticExecutor
from .error_handler import ErrorHandler
from .graph_navigator import RunbookGraphNavigator
from .hypothesis_ranker import HypothesisRanker
from .metrics_collector import MetricsCollector
from .remediation_orchestrator import RemediationOrchestrator
from .resource_lock import ResourceLockManager
from .retry_policy import RetryPolicy
from .schema import (
    ApprovalError,
    PendingApproval,
    SessionNotFoundError,
    SessionSnapshot,
    SessionStatus,
    SymptomSet,
)
from .session import SessionInbox, SessionInterrupted, SessionState, SessionTracker
from .session_driver import SessionDriver
from .symptom_matcher import SymptomMatcher
from .target_context import CommandRunner, SubprocessCommandRunner, TargetContext
from .telemetry import get_logger
from .timeout_manager import TimeoutManager

_logger = get_logger(__name__)

SymptomInput = Union[SymptomSet, Mapping[str, Any]]


class SessionArchive(Protocol):
    """Anything that can persist a finished session snapshot and load it back."""

    def archive_session(self, snapshot: SessionSnapshot) -> Any:
        ...

    def load_snapshot(self, session_id: str) -> Optional[SessionSnapshot]:
        ...


class RemediationEngine:
    """Start, observe, approve and cancel incident sessions.

    Sessions run independently: each has its own driver task and inbox,
    and they share only the worker pool, the resource locks and the
    read-only knowledge base.

    Args:
        store: Read-only knowledge base.
        runner: Target-context command runner (defaults to the local shell).
        config: Engine configuration.
        default_context: Target used when ``start_session`` gets none.
        archive: Optional store for finished sessions, also used to look
            up finished sessions evicted from memory.
    """

    def __init__(
        self,
        store: KnowledgeBaseStore,
        runner: Optional[CommandRunner] = None,
        config: Optional[EngineConfig] = None,
        *,
        default_context: Optional[TargetContext] = None,
        archive: Optional[SessionArchive] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store
        self.runner: CommandRunner = runner or SubprocessCommandRunner()
        self.default_context = default_context or TargetContext()
        self.archive = archive

        self.metrics = MetricsCollector(self.config)
        self.error_handler = ErrorHandler()
        self.timeout_manager = TimeoutManager(metrics=self.metrics)
        self.locks = ResourceLockManager(self.config, metrics=self.metrics)
        self.executor = DiagnosticExecutor(
            self.config,
            self.runner,
            locks=self.locks,
            retry_policy=RetryPolicy(self.config),
            timeout_manager=self.timeout_manager,
            metrics=self.metrics,
        )
        self.matcher = SymptomMatcher(self.config)
        self.navigator = RunbookGraphNavigator(store, self.matcher)
        self.orchestrator = RemediationOrchestrator(
            self.config,
            self.runner,
            self.executor,
            locks=self.locks,
            timeout_manager=self.timeout_manager,
            metrics=self.metrics,
        )
        self.driver = SessionDriver(store, self.matcher, self.navigator, self.executor, self.orchestrator)
        self.tracker = SessionTracker(
            archive=self._archive if archive is not None else None,
            restore=archive.load_snapshot if archive is not None else None,
            retain_finished=self.config.finished_session_retention,
        )

        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._inboxes: Dict[str, SessionInbox] = {}

        _logger.info(
            f"Engine ready: {len(store)} entries, worker pool {self.executor.pool_size}",
        )

    # ---- control surface --------------------------------------------------

    async def start_session(
        self,
        symptoms: SymptomInput,
        *,
        incident_id: Optional[str] = None,
        context: Optional[TargetContext] = None,
    ) -> str:
        """Open a session for *symptoms* and start diagnosing.

        Starting a session for an incident that already has a live one
        returns the live session's id.

        Returns:
            The session id.
        """
        symptom_set = symptoms if isinstance(symptoms, SymptomSet) else SymptomSet.from_observation(symptoms)
        session_id = str(uuid.uuid4())
        incident_id = incident_id or session_id

        existing = self.tracker.active_for(incident_id)
        if existing is not None:
            _logger.info(
                "Incident already has an active session",
                extra={"session_id": existing.session_id, "incident_id": incident_id},
            )
            return existing.session_id

        state = SessionState(
            session_id=session_id,
            incident_id=incident_id,
            symptoms=symptom_set,
            context=context or self.default_context,
            ranker=HypothesisRanker(self.config),
            ttl=self.config.session_ttl,
            automated_actor=self.config.approval_policy.automated_actor,
            metrics=self.metrics,
        )
        inbox = SessionInbox()
        self.tracker.register(state)
        self._inboxes[session_id] = inbox
        self.metrics.session_started()
        self._tasks[session_id] = asyncio.create_task(
            self._run_session(state, inbox), name=f"session:{session_id}",
        )
        _logger.info(
            f"Session started with {len(symptom_set.tags)} tags, {len(symptom_set.signals)} signals",
            extra={"session_id": session_id, "incident_id": incident_id},
        )
        return session_id

    async def get_status(self, session_id: str) -> SessionSnapshot:
        """Return a snapshot of a live or finished session.

        Finished sessions no longer held in memory are loaded back from
        the archive.

        Raises:
            SessionNotFoundError: If the id is unknown.
        """
        return self.tracker.snapshot(session_id)

    async def approve_action(self, session_id: str, action_id: str, actor: str) -> None:
        """Record *actor*'s approval of the action waiting in *session_id*.

        Raises:
            SessionNotFoundError: If the id is unknown.
            ApprovalError: If *action_id* is not the action awaiting approval.
        """
        if not self.tracker.is_active(session_id):
            self.tracker.snapshot(session_id)
            raise ApprovalError(session_id, action_id, "session has finished")
        state = self.tracker.get(session_id)
        pending = state.pending_approval
        if pending is None or pending.action_id != action_id:
            raise ApprovalError(session_id, action_id, "action is not awaiting approval")
        if not actor:
            raise ApprovalError(session_id, action_id, "an approving actor is required")
        self._inboxes[session_id].put("approve", (action_id, actor))
        _logger.info(f"Approval queued by {actor}", extra={"session_id": session_id, "action_id": action_id})

    async def cancel(self, session_id: str, actor: str) -> None:
        """Ask *session_id* to stop at its next checkpoint.

        Cancelling a finished session does nothing.

        Raises:
            SessionNotFoundError: If the id is unknown.
        """
        if not self.tracker.is_active(session_id):
            self.tracker.snapshot(session_id)
            return
        self._inboxes[session_id].put("cancel", actor)
        _logger.info(f"Cancel requested by {actor}", extra={"session_id": session_id})

    async def wait_for(self, session_id: str, timeout: Optional[float] = None) -> SessionSnapshot:
        """Wait up to *timeout* seconds for the session to finish.

        Returns:
            The latest snapshot (terminal unless the wait timed out).
        """
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait({task}, timeout=timeout)
        return self.tracker.snapshot(session_id)

    async def wait_for_approval(
        self,
        session_id: str,
        timeout: Optional[float] = None,
        poll_interval: float = 0.01,
    ) -> Optional[PendingApproval]:
        """Wait until the session is blocked on an approval.

        Returns:
            The pending approval, or ``None`` if the session finished or
            *timeout* elapsed first.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            if not self.tracker.is_active(session_id):
                self.tracker.snapshot(session_id)
                return None
            pending = self.tracker.get(session_id).pending_approval
            if pending is not None:
                return pending
            if deadline is not None and loop.time() >= deadline:
                return None
            await asyncio.sleep(poll_interval)

    def list_sessions(self) -> List[SessionSnapshot]:
        """Snapshots of live sessions and of the finished ones still held in memory."""
        return self.tracker.list()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Cancel every live session and wait for the drivers to exit.

        Running actions still finish first.  Drivers still alive after
        *timeout* are cancelled outright.
        """
        for session_id, inbox in list(self._inboxes.items()):
            if self.tracker.is_active(session_id):
                inbox.put("cancel", "system")
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def export_metrics(self) -> str:
        """Prometheus text exposition of engine metrics."""
        return self.metrics.export_metrics()

    # ---- internals --------------------------------------------------------

    async def _run_session(self, state: SessionState, inbox: SessionInbox) -> None:
        try:
            await self.driver.run(state, inbox)
        except asyncio.CancelledError:
            state.interrupt(SessionInterrupted(SessionStatus.CANCELLED, "system", "engine shutdown"))
            raise
        except Exception as exc:
            record = self.error_handler.handle_session_error(state.session_id, exc, stage=state.status.value)
            state.errors.append(f"{record.error_type}: {record.error_message}")
            if not state.is_terminal:
                state.escalate(f"internal error: {exc}")
        finally:
            self._finalize(state)

    def _finalize(self, state: SessionState) -> None:
        if not state.is_terminal and state.status != SessionStatus.FAILED:
            state.escalate("session ended without an outcome")
        outcome = state.close()
        self.metrics.record_session_outcome(outcome.value)
        self.tracker.finish(state.session_id)
        self._inboxes.pop(state.session_id, None)
        _logger.info(
            f"Session finished: {outcome.value}",
            extra={"session_id": state.session_id, "incident_id": state.incident_id},
        )

    def _archive(self, snapshot: SessionSnapshot) -> None:
        if self.archive is not None:
            self.archive.archive_session(snapshot)
