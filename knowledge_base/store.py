"""Read-only knowledge-base store with an explicit node-id arena."""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional, Tuple

from .schema import Cause, RunbookEntry


class KnowledgeBaseStore:
    """Immutable collection of validated :class:`RunbookEntry` records.

    Entries live in an arena (``_nodes``) addressed by integer node ids;
    ``_adjacency[i]`` lists the node ids of entry *i*'s ``related``
    references in declaration order.  Graph walks iterate over these
    integer lists and never recurse.

    Args:
        entries: Validated entries.  ``related`` references must all
            resolve (the loader guarantees this).
        rejected: Mapping of entry id → rejection reason.
    """

    def __init__(
        self,
        entries: List[RunbookEntry],
        rejected: Optional[Dict[str, str]] = None,
    ) -> None:
        self._nodes: List[RunbookEntry] = sorted(entries, key=lambda e: e.id)
        self._index: Dict[str, int] = {e.id: i for i, e in enumerate(self._nodes)}
        if len(self._index) != len(self._nodes):
            raise ValueError("Duplicate entry ids in knowledge base")

        self._adjacency: List[List[int]] = []
        for entry in self._nodes:
            neighbours: List[int] = []
            for ref in entry.related:
                if ref not in self._index:
                    raise ValueError(f"Entry '{entry.id}' has dangling related reference '{ref}'")
                node = self._index[ref]
                if node not in neighbours:
                    neighbours.append(node)
            self._adjacency.append(neighbours)

        self._cause_owner: Dict[str, int] = {}
        for i, entry in enumerate(self._nodes):
            for cause in entry.causes:
                self._cause_owner[cause.id] = i

        self._rejected: Dict[str, str] = dict(rejected or {})

    # ---- container protocol -----------------------------------------------

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._index

    def __iter__(self) -> Iterator[RunbookEntry]:
        return iter(self._nodes)

    # ---- queries ----------------------------------------------------------

    @property
    def node_count(self) -> int:
        """Number of nodes in the runbook graph."""
        return len(self._nodes)

    @property
    def rejected(self) -> Dict[str, str]:
        """Entries excluded at load time (entry id → reason)."""
        return dict(self._rejected)

    def entries(self) -> List[RunbookEntry]:
        """Return all entries ordered by id."""
        return list(self._nodes)

    def get(self, entry_id: str) -> Optional[RunbookEntry]:
        """Return the entry called *entry_id*, or ``None``."""
        node = self._index.get(entry_id)
        return None if node is None else self._nodes[node]

    def node_id(self, entry_id: str) -> int:
        """Return the arena node id of *entry_id*.

        Raises:
            KeyError: If the entry is unknown.
        """
        return self._index[entry_id]

    def neighbors(self, entry_id: str) -> List[RunbookEntry]:
        """Return the entries *entry_id* links to via ``related``."""
        node = self._index.get(entry_id)
        if node is None:
            return []
        return [self._nodes[n] for n in self._adjacency[node]]

    def find_cause(self, cause_id: str) -> Optional[Tuple[RunbookEntry, Cause]]:
        """Return ``(entry, cause)`` for *cause_id*, or ``None``."""
        node = self._cause_owner.get(cause_id)
        if node is None:
            return None
        entry = self._nodes[node]
        cause = entry.cause(cause_id)
        return (entry, cause) if cause is not None else None
