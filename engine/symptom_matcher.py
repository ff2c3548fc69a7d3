"""
File: symptom_matcher.py
Purpose: Deterministic scoring of runbook entries against observed symptoms.
Dependencies: Schema models only.
Performance: O(e * s) where e = entries, s = signals per entry.

Score for one entry::

    (w1 * matched_tags + w2 * matched_fields)
    / (w1 * entry_tags + w2 * entry_fields)

Normalising by the entry's own signal count keeps partial matches
below fuller ones.  The matcher holds no state: identical input always
yields the identical ranking, which the audit trail depends on.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from knowledge_base.schema import RunbookEntry

from .config import EngineConfig
from .schema import MatchResult, SymptomSet


class SymptomMatcher:
    """Rank runbook entries by weighted symptom overlap.

    Args:
        config: Engine configuration (uses ``tag_weight`` and
            ``signal_weight``).
    """

    def __init__(self, config: Optional[EngineConfig] = None) -> None:
        cfg = config or EngineConfig()
        self.tag_weight = cfg.tag_weight
        self.signal_weight = cfg.signal_weight

    def match(self, symptoms: SymptomSet, entry: RunbookEntry) -> MatchResult:
        """Score a single *entry* against *symptoms*."""
        observed_tags = set(symptoms.tags)
        matched_tags = [t for t in entry.symptoms if t in observed_tags]
        matched_signals = sorted(
            k for k, v in entry.signals.items() if symptoms.signals.get(k) == v
        )

        denominator = (
            self.tag_weight * len(entry.symptoms)
            + self.signal_weight * len(entry.signals)
        )
        if denominator <= 0:
            score = 0.0
        else:
            numerator = (
                self.tag_weight * len(matched_tags)
                + self.signal_weight * len(matched_signals)
            )
            score = min(1.0, numerator / denominator)

        return MatchResult(
            entry_id=entry.id,
            score=score,
            matched_tags=matched_tags,
            matched_signals=matched_signals,
            entry=entry,
        )

    def score(self, symptoms: SymptomSet, entry: RunbookEntry) -> float:
        """Return only the match score of *entry*."""
        return self.match(symptoms, entry).score

    def rank(
        self,
        symptoms: SymptomSet,
        entries: Iterable[RunbookEntry],
    ) -> List[MatchResult]:
        """Rank *entries* by score, best first.

        Empty symptom input yields an empty list.  Entries scoring zero
        are omitted.  Ties break by entry id ascending.
        """
        if symptoms.is_empty():
            return []
        results = [self.match(symptoms, e) for e in entries]
        results = [r for r in results if r.score > 0.0]
        results.sort(key=lambda r: (-r.score, r.entry_id))
        return results
