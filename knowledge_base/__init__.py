"""Knowledge Base — structured runbook entries consumed read-only by the engine.

Pipeline: YAML documents → schema validation → safety checks → store
"""

from knowledge_base.loader import load_entries, load_knowledge_base
from knowledge_base.schema import (
    Cause,
    ExpectedSignal,
    KnowledgeBaseError,
    Probe,
    RemediationAction,
    RiskClass,
    RunbookEntry,
)
from knowledge_base.store import KnowledgeBaseStore

__all__ = [
    "Cause",
    "ExpectedSignal",
    "KnowledgeBaseError",
    "KnowledgeBaseStore",
    "Probe",
    "RemediationAction",
    "RiskClass",
    "RunbookEntry",
    "load_entries",
    "load_knowledge_base",
]
