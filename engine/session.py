"""Per-incident session state, its inbox, and the session tracker.

A :class:`SessionState` is written only by its own driver task.  Other
tasks talk to it by posting messages to its :class:`SessionInbox`.
"""

from __future__ import annotations

import asyncio
import collections
import time
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from knowledge_base.schema import RiskClass

from .graph_navigator import VisitedSet
from .hypothesis_ranker import HypothesisRanker
from .metrics_collector import MetricsCollector
from .schema import (
    ActionEvent,
    ActionRecord,
    AuditRecord,
    DiagnosisReport,
    Evidence,
    PendingApproval,
    ProbeRun,
    SessionNotFoundError,
    SessionOutcome,
    SessionSnapshot,
    SessionStatus,
    SymptomSet,
)
from .state_machine import IncidentStateMachine, outcome_for
from .target_context import TargetContext
from .telemetry import get_logger

_logger = get_logger(__name__)

Message = Tuple[str, Any]


class SessionInterrupted(Exception):
    """Raised at a checkpoint when the session must stop early."""

    def __init__(self, status: SessionStatus, actor: str, reason: str) -> None:
        self.status = status
        self.actor = actor
        self.reason = reason
        super().__init__(f"{status.value} by {actor}: {reason}")


# ---------------------------------------------------------------------------
# Session state
# ---------------------------------------------------------------------------

class SessionState:
    """Mutable state of one incident session.

    Args:
        session_id: Unique session id.
        incident_id: External incident id (one active session each).
        symptoms: Observed symptoms.
        context: Explicit execution target.
        ranker: Hypothesis ranker owned by this session.
        ttl: Wall-clock budget in seconds.
        automated_actor: Actor name used for engine-driven transitions.
        metrics: Optional metrics collector.
    """

    def __init__(
        self,
        session_id: str,
        incident_id: str,
        symptoms: SymptomSet,
        context: TargetContext,
        ranker: HypothesisRanker,
        ttl: float,
        automated_actor: str = "automated",
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.session_id = session_id
        self.incident_id = incident_id
        self.symptoms = symptoms
        self.context = context
        self.ranker = ranker
        self.automated_actor = automated_actor
        self.metrics = metrics

        self.machine = IncidentStateMachine()
        self.visited = VisitedSet()
        self.active_entry_id: Optional[str] = None
        self.evidence: List[Evidence] = []
        self.probe_runs: List[ProbeRun] = []
        self.actions: List[ActionRecord] = []
        self.audit: List[AuditRecord] = []
        self.attempted_actions: List[str] = []
        self.confirming_probe: Dict[str, str] = {}
        self.pending_approval: Optional[PendingApproval] = None
        self.outcome: Optional[SessionOutcome] = None
        self.report: Optional[DiagnosisReport] = None
        self.errors: List[str] = []

        self.created_at = datetime.now(timezone.utc)
        self.updated_at = self.created_at
        self.deadline = time.monotonic() + ttl
        self._evidence_mark = 0

        self.audit.append(AuditRecord(
            session_id=session_id,
            sequence=0,
            actor=automated_actor,
            from_status=None,
            to_status=SessionStatus.DIAGNOSING,
            reason="session started",
        ))

    # ---- properties -------------------------------------------------------

    @property
    def status(self) -> SessionStatus:
        return self.machine.get_current_state()

    @property
    def is_terminal(self) -> bool:
        return self.machine.is_terminal()

    def time_left(self) -> float:
        """Seconds until the session TTL expires."""
        return self.deadline - time.monotonic()

    # ---- writes (driver task only) ----------------------------------------

    def add_evidence(self, evidence: Evidence) -> None:
        """Append *evidence* to the log.  Evidence is never removed."""
        self.evidence.append(evidence)
        self.updated_at = datetime.now(timezone.utc)

    def transition(
        self,
        to_status: SessionStatus,
        *,
        actor: Optional[str] = None,
        reason: str = "",
        action_id: Optional[str] = None,
    ) -> AuditRecord:
        """Move the state machine and append the matching audit record.

        Raises:
            StateMachineError: If the transition is invalid.
        """
        previous = self.machine.transition(to_status)
        ids = [e.evidence_id for e in self.evidence]
        record = AuditRecord(
            session_id=self.session_id,
            sequence=len(self.audit),
            actor=actor or self.automated_actor,
            from_status=previous,
            to_status=to_status,
            reason=reason,
            action_id=action_id,
            evidence_before=ids[: self._evidence_mark],
            evidence_after=ids,
        )
        self._evidence_mark = len(ids)
        self.audit.append(record)
        self.updated_at = record.timestamp
        if self.metrics is not None:
            self.metrics.record_transition(to_status.value)
        _logger.info(
            f"{previous.value} → {to_status.value}: {reason}",
            extra={"session_id": self.session_id, "action_id": action_id},
        )
        return record

    def record_action(
        self,
        action_id: str,
        event: ActionEvent,
        *,
        cause_id: str = "",
        actor: Optional[str] = None,
        risk: Optional[RiskClass] = None,
        detail: str = "",
        exit_code: Optional[int] = None,
    ) -> ActionRecord:
        """Append one remediation event to the action log."""
        record = ActionRecord(
            session_id=self.session_id,
            action_id=action_id,
            cause_id=cause_id,
            event=event,
            actor=actor or self.automated_actor,
            risk=risk,
            detail=detail,
            exit_code=exit_code,
        )
        self.actions.append(record)
        self.updated_at = record.timestamp
        return record

    def build_report(self, reason: str) -> DiagnosisReport:
        """Partial-diagnosis report from everything gathered so far."""
        return DiagnosisReport(
            session_id=self.session_id,
            reason=reason,
            visited_entries=self.visited.as_list(),
            evidence=list(self.evidence),
            beliefs=self.ranker.snapshot(),
        )

    def escalate(self, reason: str, actor: Optional[str] = None) -> None:
        """Escalate with a partial-diagnosis report."""
        self.pending_approval = None
        self.report = self.build_report(reason)
        self.transition(SessionStatus.ESCALATED, actor=actor, reason=reason)

    def interrupt(self, exc: SessionInterrupted) -> None:
        """Apply a cancel or TTL interrupt caught at a checkpoint."""
        if self.is_terminal:
            return
        if exc.status == SessionStatus.ESCALATED:
            self.escalate(exc.reason, actor=exc.actor)
        else:
            self.pending_approval = None
            self.transition(exc.status, actor=exc.actor, reason=exc.reason)

    def close(self) -> SessionOutcome:
        """Move a finished session to ``closed`` and fix its outcome."""
        status = self.status
        if status == SessionStatus.CLOSED:
            return self.outcome or SessionOutcome.FAILED
        outcome = outcome_for(status)
        if outcome is None:
            # Only a failed rollback leaves the session in FAILED.
            outcome = SessionOutcome.FAILED
        self.outcome = outcome
        self.transition(SessionStatus.CLOSED, reason=f"archived with outcome {outcome.value}")
        return outcome

    # ---- reads ------------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        """Immutable view of the session."""
        return SessionSnapshot(
            session_id=self.session_id,
            incident_id=self.incident_id,
            status=self.status,
            outcome=self.outcome,
            symptoms=self.symptoms,
            context_name=self.context.name,
            active_entry_id=self.active_entry_id,
            visited_entries=self.visited.as_list(),
            hypotheses=self.ranker.snapshot(),
            evidence=list(self.evidence),
            actions=list(self.actions),
            audit=list(self.audit),
            pending_approval=self.pending_approval,
            report=self.report,
            errors=list(self.errors),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

class SessionInbox:
    """Queue of messages for one session's driver task.

    Message kinds: ``probe_result``, ``probe_error``, ``approve`` and
    ``cancel``.  Every wait is a checkpoint: a ``cancel`` message or an
    expired TTL raises :class:`SessionInterrupted`.
    """

    def __init__(self) -> None:
        self.queue: "asyncio.Queue[Message]" = asyncio.Queue()
        self._deferred: Deque[Message] = collections.deque()

    def put(self, kind: str, payload: Any = None) -> None:
        self.queue.put_nowait((kind, payload))

    def checkpoint(self, state: SessionState) -> None:
        """Observe pending cancels and the TTL without blocking."""
        while True:
            try:
                message = self.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._screen(message)
            self._deferred.append(message)
        self._check_ttl(state)

    async def wait(self, state: SessionState, timeout: Optional[float] = None) -> Optional[Message]:
        """Return the next message, or ``None`` once *timeout* elapses.

        Raises:
            SessionInterrupted: On cancel or TTL expiry.
        """
        if self._deferred:
            return self._deferred.popleft()
        self._check_ttl(state)
        budget = state.time_left()
        limit = budget if timeout is None else min(timeout, budget)
        try:
            message = await asyncio.wait_for(self.queue.get(), timeout=max(limit, 0.0))
        except asyncio.TimeoutError:
            self._check_ttl(state)
            return None
        self._screen(message)
        return message

    async def sleep(self, state: SessionState, seconds: float) -> None:
        """Sleep for *seconds* while still honouring cancels and the TTL.

        Other messages that arrive meanwhile are kept for :meth:`wait`.
        """
        loop = asyncio.get_running_loop()
        until = loop.time() + seconds
        while True:
            self._check_ttl(state)
            remaining = until - loop.time()
            if remaining <= 0:
                return
            try:
                message = await asyncio.wait_for(
                    self.queue.get(), timeout=min(remaining, max(state.time_left(), 0.0)),
                )
            except asyncio.TimeoutError:
                continue
            self._screen(message)
            self._deferred.append(message)

    @staticmethod
    def _screen(message: Message) -> None:
        kind, payload = message
        if kind == "cancel":
            raise SessionInterrupted(SessionStatus.CANCELLED, str(payload), "cancelled by operator")

    @staticmethod
    def _check_ttl(state: SessionState) -> None:
        if state.time_left() <= 0:
            raise SessionInterrupted(SessionStatus.ESCALATED, state.automated_actor, "session TTL exceeded")


# ---------------------------------------------------------------------------
# Tracker
# ---------------------------------------------------------------------------

class SessionTracker:
    """Registry of live and finished sessions.

    Exactly one live session may exist per incident id.  A finished
    session's final snapshot is handed to the optional *archive*
    callback and kept in memory for the *retain_finished* most recently
    finished or read sessions.  Older snapshots are answered through the
    optional *restore* lookup (normally the archive itself).
    """

    def __init__(
        self,
        archive: Optional[Callable[[SessionSnapshot], None]] = None,
        *,
        restore: Optional[Callable[[str], Optional[SessionSnapshot]]] = None,
        retain_finished: int = 100,
    ) -> None:
        self._active: Dict[str, SessionState] = {}
        self._by_incident: Dict[str, str] = {}
        self._finished: "collections.OrderedDict[str, SessionSnapshot]" = collections.OrderedDict()
        self._archive = archive
        self._restore = restore
        self.retain_finished = retain_finished

    def active_for(self, incident_id: str) -> Optional[SessionState]:
        """Live session for *incident_id*, if any."""
        session_id = self._by_incident.get(incident_id)
        return self._active.get(session_id) if session_id else None

    def register(self, state: SessionState) -> None:
        """Track a new live session.

        Raises:
            ValueError: If the incident already has a live session.
        """
        if state.incident_id in self._by_incident:
            raise ValueError(f"Incident '{state.incident_id}' already has an active session")
        self._active[state.session_id] = state
        self._by_incident[state.incident_id] = state.session_id

    def get(self, session_id: str) -> SessionState:
        """Return the live session *session_id*.

        Raises:
            SessionNotFoundError: If no live session has that id.
        """
        state = self._active.get(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        return state

    def is_active(self, session_id: str) -> bool:
        return session_id in self._active

    def finish(self, session_id: str) -> SessionSnapshot:
        """Retire a live session and archive its final snapshot."""
        state = self._active.pop(session_id)
        self._by_incident.pop(state.incident_id, None)
        snapshot = state.snapshot()
        if self._archive is not None:
            try:
                self._archive(snapshot)
            except Exception as exc:
                state.errors.append(f"archive failed: {exc}")
                _logger.error(f"Archiving failed: {exc}", extra={"session_id": session_id})
                snapshot = state.snapshot()
        self._retain(snapshot)
        return snapshot

    def snapshot(self, session_id: str) -> SessionSnapshot:
        """Snapshot of a live or finished session.

        Raises:
            SessionNotFoundError: If the id is unknown.
        """
        state = self._active.get(session_id)
        if state is not None:
            return state.snapshot()
        snapshot = self._finished.get(session_id)
        if snapshot is not None:
            self._finished.move_to_end(session_id)
            return snapshot
        if self._restore is not None:
            snapshot = self._restore(session_id)
        if snapshot is None:
            raise SessionNotFoundError(session_id)
        self._retain(snapshot)
        return snapshot

    def list(self) -> List[SessionSnapshot]:
        """Snapshots of live and retained finished sessions, oldest first."""
        snapshots = [s.snapshot() for s in self._active.values()]
        snapshots.extend(self._finished.values())
        return sorted(snapshots, key=lambda s: s.created_at)

    def active_count(self) -> int:
        return len(self._active)

    def retained_count(self) -> int:
        return len(self._finished)

    def _retain(self, snapshot: SessionSnapshot) -> None:
        self._finished[snapshot.session_id] = snapshot
        self._finished.move_to_end(snapshot.session_id)
        while len(self._finished) > self.retain_finished:
            evicted, _ = self._finished.popitem(last=False)
            _logger.debug("Finished session evicted from memory", extra={"session_id": evicted})
