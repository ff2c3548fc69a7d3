"""
File: graph_navigator.py
Purpose: Walk the "related runbooks" graph once every cause of the
    active entry has been refuted.
Dependencies: Knowledge-base store, symptom matcher.
Performance: O(d * s) per step, d = out-degree, s = signals per entry.

The related-runbook links form a directed, generally cyclic graph.  The
navigator never recurses: each call looks one hop ahead from the
current entry, and the chosen entry is added to the session's visited
set *before* it is evaluated.  A session therefore visits each entry at
most once and takes at most ``store.node_count`` steps.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from knowledge_base.schema import RunbookEntry
from knowledge_base.store import KnowledgeBaseStore

from .schema import Evidence, EvidencePurpose, MatchResult, SymptomSet
from .symptom_matcher import SymptomMatcher
from .telemetry import get_logger

_logger = get_logger(__name__)


class VisitedSet:
    """Insertion-ordered set of visited entry ids."""

    def __init__(self) -> None:
        self._order: List[str] = []
        self._seen: set[str] = set()

    def add(self, entry_id: str) -> bool:
        """Add *entry_id*; return ``False`` if it was already present."""
        if entry_id in self._seen:
            return False
        self._seen.add(entry_id)
        self._order.append(entry_id)
        return True

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._seen

    def __len__(self) -> int:
        return len(self._order)

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def as_list(self) -> List[str]:
        return list(self._order)


class NavigationResult(BaseModel):
    """Outcome of one navigation step."""
    model_config = ConfigDict(frozen=True)

    from_entry_id: str
    entry: Optional[RunbookEntry] = None
    score: float = 0.0
    candidates: List[MatchResult] = Field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        """``True`` when no unvisited neighbour was left."""
        return self.entry is None


def residual_symptoms(symptoms: SymptomSet, evidence: Iterable[Evidence]) -> SymptomSet:
    """Observed symptoms enriched with signals parsed from diagnosis evidence.

    Later evidence overrides earlier evidence; observed fields override both.
    """
    gathered: Dict[str, str] = {}
    for item in evidence:
        if item.purpose == EvidencePurpose.DIAGNOSIS:
            gathered.update(item.signals)
    return symptoms.merged(gathered)


class RunbookGraphNavigator:
    """Pick the next entry to evaluate from the current entry's neighbours.

    Args:
        store: Read-only knowledge base (provides the adjacency arena).
        matcher: Scoring function shared with initial matching.
    """

    def __init__(self, store: KnowledgeBaseStore, matcher: SymptomMatcher) -> None:
        self.store = store
        self.matcher = matcher

    def candidates(
        self,
        current_entry_id: str,
        visited: VisitedSet,
        symptoms: SymptomSet,
    ) -> List[MatchResult]:
        """Score unvisited neighbours of *current_entry_id*.

        Neighbours with no residual overlap are kept (they are still
        related); ordering is by score, then entry id.
        """
        results = [
            self.matcher.match(symptoms, entry)
            for entry in self.store.neighbors(current_entry_id)
            if entry.id not in visited
        ]
        results.sort(key=lambda r: (-r.score, r.entry_id))
        return results

    def next_entry(
        self,
        current_entry_id: str,
        visited: VisitedSet,
        symptoms: SymptomSet,
        evidence: Iterable[Evidence] = (),
    ) -> NavigationResult:
        """Choose the next entry and mark it visited.

        Args:
            current_entry_id: Entry whose causes were all refuted.
            visited: The session's visited set (updated in place).
            symptoms: Observed symptoms.
            evidence: Evidence gathered so far.

        Returns:
            The chosen entry, or an exhausted result when every
            neighbour has been visited already.
        """
        residual = residual_symptoms(symptoms, evidence)
        ranked = self.candidates(current_entry_id, visited, residual)
        if not ranked or len(visited) >= self.store.node_count:
            _logger.info(
                "No unvisited related entry left",
                extra={"entry_id": current_entry_id},
            )
            return NavigationResult(from_entry_id=current_entry_id, candidates=ranked)

        best = ranked[0]
        visited.add(best.entry_id)
        _logger.info(
            f"Navigating {current_entry_id} → {best.entry_id} (score {best.score:.2f})",
            extra={"entry_id": best.entry_id},
        )
        return NavigationResult(
            from_entry_id=current_entry_id,
            entry=self.store.get(best.entry_id),
            score=best.score,
            candidates=ranked,
        )
