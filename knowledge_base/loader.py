"""Knowledge-base loading — parse YAML runbooks, validate, reject bad entries."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

import yaml
from pydantic import ValidationError

from .schema import Cause, KnowledgeBaseError, RunbookEntry
from .store import KnowledgeBaseStore
from .telemetry import get_logger

_logger = get_logger(__name__)

# Commands that change cluster state.  A probe whose template matches
# one of these is rejected even when it claims to be read-only.
_MUTATING_COMMAND_RE = re.compile(
    r"\b(?:"
    r"kubectl\s+(?:[\w.=/-]+\s+)*?(?:delete|apply|create|patch|edit|scale|replace|"
    r"label|annotate|drain|cordon|uncordon|taint|expose|autoscale|set|"
    r"rollout\s+(?:restart|undo|pause|resume))"
    r"|helm\s+(?:install|upgrade|uninstall|rollback|delete)"
    r"|rm\s+-"
    r")\b"
)

_YAML_SUFFIXES = (".yaml", ".yml")


def is_mutating_command(command: str) -> bool:
    """Return ``True`` if *command* looks like a state-changing command."""
    return bool(_MUTATING_COMMAND_RE.search(command))


# ── raw document reading ───────────────────────────────────────────


def read_documents(path: str | Path) -> List[Tuple[str, Dict[str, Any]]]:
    """Read raw entry dicts from a YAML file or a directory of YAML files.

    Each file may hold a single entry mapping, a list of entries, or a
    mapping with a top-level ``runbooks`` list.

    Returns:
        List of ``(source_label, raw_entry)`` pairs in file order.

    Raises:
        FileNotFoundError: If *path* does not exist.
        yaml.YAMLError: If a file contains invalid YAML.
    """
    root = Path(path)
    if not root.exists():
        raise FileNotFoundError(f"Knowledge base path not found: {root}")

    files = (
        sorted(p for p in root.rglob("*") if p.suffix in _YAML_SUFFIXES)
        if root.is_dir()
        else [root]
    )

    docs: List[Tuple[str, Dict[str, Any]]] = []
    for file in files:
        with open(file, encoding="utf-8") as fh:
            for doc in yaml.safe_load_all(fh):
                if doc is None:
                    continue
                if isinstance(doc, dict) and "runbooks" in doc:
                    doc = doc["runbooks"]
                items = doc if isinstance(doc, list) else [doc]
                for i, item in enumerate(items):
                    docs.append((f"{file.name}#{i}", item))
    return docs


# ── per-entry validation ───────────────────────────────────────────


def parse_entry(raw: Any, source: str = "<memory>") -> RunbookEntry:
    """Validate one raw entry into a :class:`RunbookEntry`.

    Raises:
        KnowledgeBaseError: On schema errors or unsafe probes/actions.
    """
    if not isinstance(raw, dict):
        raise KnowledgeBaseError(source, f"expected a mapping, got {type(raw).__name__}")

    entry_id = str(raw.get("id") or source)
    try:
        entry = RunbookEntry.model_validate(raw)
    except ValidationError as exc:
        raise KnowledgeBaseError(entry_id, f"malformed entry: {exc.error_count()} error(s): {exc}") from exc

    if not entry.causes:
        raise KnowledgeBaseError(entry.id, "entry declares no causes")

    cause_ids = [c.id for c in entry.causes]
    if len(cause_ids) != len(set(cause_ids)):
        raise KnowledgeBaseError(entry.id, "duplicate cause ids")

    for cause in entry.causes:
        _check_cause(entry.id, cause)
    return entry


def _check_cause(entry_id: str, cause: Cause) -> None:
    probe_ids = [p.id for p in cause.probes]
    if len(probe_ids) != len(set(probe_ids)):
        raise KnowledgeBaseError(entry_id, f"cause '{cause.id}' has duplicate probe ids")
    action_ids = [a.id for a in cause.actions]
    if len(action_ids) != len(set(action_ids)):
        raise KnowledgeBaseError(entry_id, f"cause '{cause.id}' has duplicate action ids")

    for probe in cause.probes:
        if not probe.read_only:
            raise KnowledgeBaseError(
                entry_id, f"probe '{probe.id}' is not marked read_only",
            )
        if is_mutating_command(probe.command_template):
            raise KnowledgeBaseError(
                entry_id,
                f"probe '{probe.id}' is marked read_only but its command mutates state",
            )

    for action in cause.actions:
        if action.rollback_ref is not None:
            if action.rollback_ref == action.id:
                raise KnowledgeBaseError(entry_id, f"action '{action.id}' rolls back to itself")
            if cause.action(action.rollback_ref) is None:
                raise KnowledgeBaseError(
                    entry_id,
                    f"action '{action.id}' references unknown rollback '{action.rollback_ref}'",
                )
        if action.verify_probe_ref is not None and cause.probe(action.verify_probe_ref) is None:
            raise KnowledgeBaseError(
                entry_id,
                f"action '{action.id}' references unknown verify probe '{action.verify_probe_ref}'",
            )


# ── whole knowledge base ───────────────────────────────────────────


def build_store(
    raw_entries: Iterable[Tuple[str, Any]],
    *,
    strict: bool = False,
) -> KnowledgeBaseStore:
    """Validate *raw_entries* and build a read-only store.

    Rejected entries are excluded, logged, and listed in
    :attr:`KnowledgeBaseStore.rejected`.  With *strict* the first
    rejection is raised instead.

    Raises:
        KnowledgeBaseError: Only when *strict* is ``True``.
    """
    accepted: Dict[str, RunbookEntry] = {}
    rejected: Dict[str, str] = {}
    seen_causes: Dict[str, str] = {}

    def _reject(err: KnowledgeBaseError) -> None:
        if strict:
            raise err
        _logger.error(
            f"Knowledge base entry rejected: {err.reason}",
            extra={"entry_id": err.entry_id},
        )
        rejected[err.entry_id] = err.reason

    for source, raw in raw_entries:
        try:
            entry = parse_entry(raw, source)
            if entry.id in accepted:
                raise KnowledgeBaseError(entry.id, "duplicate entry id")
            for cause in entry.causes:
                owner = seen_causes.get(cause.id)
                if owner is not None:
                    raise KnowledgeBaseError(
                        entry.id, f"cause id '{cause.id}' already defined by '{owner}'",
                    )
        except KnowledgeBaseError as err:
            _reject(err)
            continue
        accepted[entry.id] = entry
        for cause in entry.causes:
            seen_causes[cause.id] = entry.id

    # Dangling related references cascade: dropping one entry can leave
    # another pointing at nothing, so iterate to a fixed point.
    changed = True
    while changed:
        changed = False
        for entry_id in sorted(accepted):
            entry = accepted[entry_id]
            missing = [r for r in entry.related if r not in accepted]
            if missing:
                _reject(KnowledgeBaseError(
                    entry_id, f"dangling related reference(s): {', '.join(missing)}",
                ))
                del accepted[entry_id]
                changed = True

    store = KnowledgeBaseStore(list(accepted.values()), rejected=rejected)
    _logger.info(
        f"Knowledge base loaded: {len(store)} entries, {len(rejected)} rejected",
    )
    return store


def load_knowledge_base(
    path: str | Path,
    *,
    strict: bool = False,
) -> KnowledgeBaseStore:
    """Load every runbook under *path* into a :class:`KnowledgeBaseStore`."""
    return build_store(read_documents(path), strict=strict)


def load_entries(
    entries: Iterable[Dict[str, Any]],
    *,
    strict: bool = False,
) -> KnowledgeBaseStore:
    """Build a store from in-memory raw entry dicts."""
    return build_store(
        ((f"<memory>#{i}", raw) for i, raw in enumerate(entries)),
        strict=strict,
    )
