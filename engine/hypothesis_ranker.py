"""
File: hypothesis_ranker.py
Purpose: Bayesian-style belief updates over the causes of the active entry.
Dependencies: Schema models only.
Performance: O(c) per evidence update, c = causes of the active entry.

Update rule (per evidence item)::

    belief'(c) = belief(c) * likelihood(outcome)   for the probed cause
    belief'    = normalize(belief') over active (non-refuted) causes

Status rules, evaluated after every update:

  * Refuted   — belief < refutation floor, or every probe of the cause
                has reported and none passed.
  * Confirmed — belief >= confirmation threshold and at least one probe
                of the cause passed.

Refuted causes leave the normalisation set but keep their last belief
for the log.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from knowledge_base.schema import RunbookEntry

from .config import EngineConfig
from .schema import EvidenceOutcome, HypothesisState, HypothesisStatus
from .telemetry import get_logger

_logger = get_logger(__name__)


class RankingUpdate(BaseModel):
    """What changed after one evidence update."""
    model_config = ConfigDict(frozen=True)

    cause_id: str
    outcome: EvidenceOutcome
    belief_before: float
    belief_after: float
    newly_confirmed: List[str] = Field(default_factory=list)
    newly_refuted: List[str] = Field(default_factory=list)
    all_refuted: bool = False


@dataclass
class _Tally:
    probe_count: int
    reported: set[str] = field(default_factory=set)
    passes: int = 0
    fails: int = 0


class HypothesisRanker:
    """Track belief scores for one session.

    Hypotheses from previously visited entries are retained for the log
    but only the active entry's causes take part in updates.

    Args:
        config: Engine configuration with likelihoods and thresholds.
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        self._config = config or EngineConfig()
        self._states: Dict[str, HypothesisState] = {}
        self._tallies: Dict[str, _Tally] = {}
        self._active_entry: Optional[str] = None
        self._active_causes: List[str] = []

    # ---- loading ----------------------------------------------------------

    def load_entry(self, entry: RunbookEntry) -> List[HypothesisState]:
        """Make *entry*'s causes the active hypothesis set.

        Initial belief is the declared prior when every cause declares
        one (renormalised to sum to 1), otherwise uniform.

        Returns:
            The initial hypothesis states.
        """
        causes = list(entry.causes)
        if causes and all(c.prior is not None for c in causes):
            total = sum(float(c.prior) for c in causes)  # type: ignore[arg-type]
            beliefs = [float(c.prior) / total for c in causes]  # type: ignore[arg-type]
        else:
            beliefs = [1.0 / len(causes)] * len(causes) if causes else []

        self._active_entry = entry.id
        self._active_causes = [c.id for c in causes]
        for cause, belief in zip(causes, beliefs):
            self._states[cause.id] = HypothesisState(
                cause_id=cause.id,
                entry_id=entry.id,
                belief=belief,
                status=HypothesisStatus.PENDING,
            )
            self._tallies[cause.id] = _Tally(probe_count=len(cause.probes))

        _logger.info(
            f"Loaded {len(causes)} hypotheses",
            extra={"entry_id": entry.id},
        )
        return self.active()

    # ---- updates ----------------------------------------------------------

    def update(
        self,
        cause_id: str,
        outcome: EvidenceOutcome,
        probe_id: Optional[str] = None,
    ) -> RankingUpdate:
        """Apply one evidence *outcome* for *cause_id*.

        Raises:
            KeyError: If *cause_id* is not an active hypothesis.
        """
        state = self._states.get(cause_id)
        if state is None or cause_id not in self._active_causes:
            raise KeyError(f"Cause '{cause_id}' is not part of the active entry")

        before = state.belief
        tally = self._tallies[cause_id]
        if probe_id is not None:
            tally.reported.add(probe_id)
        if outcome == EvidenceOutcome.PASS:
            tally.passes += 1
        elif outcome == EvidenceOutcome.FAIL:
            tally.fails += 1

        if state.status == HypothesisStatus.REFUTED:
            # Late evidence for an already refuted cause is logged only.
            return RankingUpdate(
                cause_id=cause_id, outcome=outcome,
                belief_before=before, belief_after=before,
                all_refuted=self.all_refuted(),
            )

        self._states[cause_id] = state.model_copy(
            update={"belief": before * self._config.likelihood(outcome.value)}
        )
        self._normalize()

        newly_refuted = self._apply_refutations()
        newly_confirmed = self._apply_confirmations()

        after = self._states[cause_id].belief
        return RankingUpdate(
            cause_id=cause_id,
            outcome=outcome,
            belief_before=before,
            belief_after=after,
            newly_confirmed=newly_confirmed,
            newly_refuted=newly_refuted,
            all_refuted=self.all_refuted(),
        )

    def _normalize(self) -> None:
        active = [c for c in self._active_causes if self._states[c].status != HypothesisStatus.REFUTED]
        total = sum(self._states[c].belief for c in active)
        if total <= 0:
            return
        for c in active:
            self._states[c] = self._states[c].model_copy(
                update={"belief": min(1.0, self._states[c].belief / total)}
            )

    def _apply_refutations(self) -> List[str]:
        refuted: List[str] = []
        changed = True
        while changed:
            changed = False
            for c in self._active_causes:
                st = self._states[c]
                if st.status != HypothesisStatus.PENDING:
                    continue
                tally = self._tallies[c]
                exhausted = (
                    tally.probe_count > 0
                    and len(tally.reported) >= tally.probe_count
                    and tally.passes == 0
                    and tally.fails > 0
                )
                if st.belief < self._config.refutation_floor or exhausted:
                    self._states[c] = st.model_copy(update={"status": HypothesisStatus.REFUTED})
                    refuted.append(c)
                    changed = True
            if changed:
                self._normalize()
        return refuted

    def _apply_confirmations(self) -> List[str]:
        confirmed: List[str] = []
        for c in self._active_causes:
            st = self._states[c]
            if (
                st.status == HypothesisStatus.PENDING
                and st.belief >= self._config.confirmation_threshold
                and self._tallies[c].passes > 0
            ):
                self._states[c] = st.model_copy(update={"status": HypothesisStatus.CONFIRMED})
                confirmed.append(c)
        return confirmed

    # ---- queries ----------------------------------------------------------

    @property
    def active_entry_id(self) -> Optional[str]:
        return self._active_entry

    def get(self, cause_id: str) -> Optional[HypothesisState]:
        """Return the current state of *cause_id*."""
        return self._states.get(cause_id)

    def active(self) -> List[HypothesisState]:
        """Non-refuted hypotheses of the active entry."""
        return [
            self._states[c] for c in self._active_causes
            if self._states[c].status != HypothesisStatus.REFUTED
        ]

    def pending(self) -> List[str]:
        """Cause ids of the active entry still awaiting a verdict."""
        return [
            c for c in self._active_causes
            if self._states[c].status == HypothesisStatus.PENDING
        ]

    def active_belief_sum(self) -> float:
        """Sum of active beliefs (1.0 unless every cause is refuted)."""
        return sum(h.belief for h in self.active())

    def all_refuted(self) -> bool:
        """``True`` when every cause of the active entry is refuted."""
        return bool(self._active_causes) and all(
            self._states[c].status == HypothesisStatus.REFUTED for c in self._active_causes
        )

    def confirmed(self) -> Optional[HypothesisState]:
        """Highest-belief confirmed cause of the active entry, if any."""
        confirmed = [
            self._states[c] for c in self._active_causes
            if self._states[c].status == HypothesisStatus.CONFIRMED
        ]
        if not confirmed:
            return None
        return sorted(confirmed, key=lambda h: (-h.belief, h.cause_id))[0]

    def ranked(self) -> List[HypothesisState]:
        """Active hypotheses ordered by belief, best first."""
        return sorted(self.active(), key=lambda h: (-h.belief, h.cause_id))

    def snapshot(self) -> List[HypothesisState]:
        """Every hypothesis tracked in this session, in load order."""
        return list(self._states.values())
