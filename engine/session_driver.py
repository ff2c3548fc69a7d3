"""Diagnosis loop run by each session's driver task.

Matcher → Ranker → Executor → Ranker → (Orchestrator | Navigator).
"""

from __future__ import annotations

from typing import Dict, List, Optional, Set, Tuple

from knowledge_base.schema import Cause, RunbookEntry
from knowledge_base.store import KnowledgeBaseStore

from .diagnostic_executor import DiagnosticExecutor, ProbeRequest, ProbeResult
from .graph_navigator import RunbookGraphNavigator
from .remediation_orchestrator import RemediationOrchestrator
from .schema import EvidenceOutcome, SessionStatus
from .session import SessionInbox, SessionInterrupted, SessionState
from .symptom_matcher import SymptomMatcher
from .telemetry import get_logger

_logger = get_logger(__name__)


class SessionDriver:
    """Run one session from symptoms to an outcome.

    The driver is stateless between sessions; everything it writes lives
    on the :class:`SessionState` passed in, and only the session's own
    task calls :meth:`run`.
    """

    def __init__(
        self,
        store: KnowledgeBaseStore,
        matcher: SymptomMatcher,
        navigator: RunbookGraphNavigator,
        executor: DiagnosticExecutor,
        orchestrator: RemediationOrchestrator,
    ) -> None:
        self.store = store
        self.matcher = matcher
        self.navigator = navigator
        self.executor = executor
        self.orchestrator = orchestrator

    async def run(self, state: SessionState, inbox: SessionInbox) -> None:
        """Drive *state* until it reaches an outcome, a cancel or its TTL."""
        try:
            await self._run(state, inbox)
        except SessionInterrupted as exc:
            _logger.info(f"Session interrupted: {exc}", extra={"session_id": state.session_id})
            state.interrupt(exc)

    async def _run(self, state: SessionState, inbox: SessionInbox) -> None:
        ranked = self.matcher.rank(state.symptoms, self.store.entries())
        if not ranked:
            state.escalate("no runbook entry matches the observed symptoms")
            return

        entry = self.store.get(ranked[0].entry_id)
        if entry is None:
            state.escalate(f"matched entry '{ranked[0].entry_id}' is missing from the knowledge base")
            return
        state.visited.add(entry.id)
        _logger.info(
            f"Top match {entry.id} (score {ranked[0].score:.2f})",
            extra={"session_id": state.session_id, "entry_id": entry.id},
        )

        # One entry per iteration; the visited set caps iterations at node_count.
        for _ in range(self.store.node_count):
            inbox.checkpoint(state)
            state.active_entry_id = entry.id
            state.ranker.load_entry(entry)

            cause = await self._evaluate_entry(state, inbox, entry)
            if cause is not None:
                hypothesis = state.ranker.get(cause.id)
                belief = hypothesis.belief if hypothesis else 0.0
                state.transition(
                    SessionStatus.HYPOTHESIS_CONFIRMED,
                    reason=f"cause '{cause.id}' confirmed (belief {belief:.2f})",
                )
                await self.orchestrator.remediate(state, inbox, entry, cause)
                return

            if not state.ranker.all_refuted():
                state.escalate(
                    f"diagnosis of '{entry.id}' inconclusive: probes exhausted without confirming a cause"
                )
                return

            nav = self.navigator.next_entry(entry.id, state.visited, state.symptoms, state.evidence)
            if nav.entry is None:
                state.escalate("all causes refuted and no unvisited related runbook entry remains")
                return
            entry = nav.entry

        state.escalate("runbook graph exhausted")

    async def _evaluate_entry(
        self,
        state: SessionState,
        inbox: SessionInbox,
        entry: RunbookEntry,
    ) -> Optional[Cause]:
        """Probe *entry*'s causes round by round until one is confirmed.

        Each round runs the next probe of every pending cause
        concurrently.  Results are consumed one at a time from the inbox.

        Returns:
            The confirmed cause, or ``None`` when the causes are all
            refuted or out of probes.
        """
        next_probe: Dict[str, int] = {c.id: 0 for c in entry.causes}

        while True:
            pending = set(state.ranker.pending())
            requests: List[ProbeRequest] = []
            for cause in entry.causes:
                index = next_probe[cause.id]
                if cause.id in pending and index < len(cause.probes):
                    requests.append(ProbeRequest(probe=cause.probes[index], cause_id=cause.id, entry_id=entry.id))
                    next_probe[cause.id] = index + 1
            if not requests:
                return None

            inbox.checkpoint(state)
            outstanding: Set[Tuple[str, str]] = {(r.cause_id, r.probe.id) for r in requests}
            tasks = self.executor.run_probes(
                requests, state.context, inbox.queue,
                session_id=state.session_id, values=state.symptoms.signals,
            )
            try:
                while outstanding:
                    message = await inbox.wait(state)
                    if message is None:
                        continue
                    kind, payload = message
                    if kind == "probe_error":
                        request, error = payload
                        if (request.cause_id, request.probe.id) in outstanding:
                            raise error
                        continue
                    if kind != "probe_result":
                        continue
                    result: ProbeResult = payload
                    key = (result.request.cause_id, result.request.probe.id)
                    if key not in outstanding:
                        continue
                    outstanding.discard(key)

                    confirmed = self._absorb(state, result)
                    if confirmed is not None:
                        return entry.cause(confirmed)
                    if state.ranker.all_refuted():
                        return None
            finally:
                # Read-only probes may be abandoned; their late results are ignored.
                for task in tasks:
                    if not task.done():
                        task.cancel()

    @staticmethod
    def _absorb(state: SessionState, result: ProbeResult) -> Optional[str]:
        """Append *result* to the session and update beliefs."""
        evidence = result.evidence
        state.probe_runs.append(result.run)
        state.add_evidence(evidence)
        if evidence.outcome == EvidenceOutcome.PASS:
            state.confirming_probe[evidence.cause_id] = evidence.probe_id
        update = state.ranker.update(evidence.cause_id, evidence.outcome, evidence.probe_id)
        _logger.info(
            f"Belief {update.belief_before:.3f} → {update.belief_after:.3f} after {evidence.outcome.value}",
            extra={"session_id": state.session_id, "cause_id": evidence.cause_id, "probe_id": evidence.probe_id},
        )
        confirmed = state.ranker.confirmed()
        return confirmed.cause_id if confirmed is not None else None
