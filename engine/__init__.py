"""
Runbook remediation engine — diagnosis and remediation over a runbook
knowledge base.

Public API::

    from engine import EngineConfig, RemediationEngine, ScriptedCommandRunner

    engine = RemediationEngine(store, runner=ScriptedCommandRunner(...), config=EngineConfig())
    session_id = await engine.start_session({"high_latency": True})

Modules:
    engine                   — Session control surface (facade)
    session_driver           — Diagnosis loop per session
    symptom_matcher          — Deterministic entry scoring
    hypothesis_ranker        — Bayesian-style belief updates
    diagnostic_executor      — Read-only probe execution
    remediation_orchestrator — Propose / approve / execute / verify / roll back
    graph_navigator          — Related-runbook graph walk
    session                  — Session state, inbox, tracker
    target_context           — Explicit cluster target + command runners
"""

from engine.config import ApprovalPolicy, EngineConfig
from engine.engine import RemediationEngine
from engine.schema import (
    ApprovalError,
    EngineError,
    SessionNotFoundError,
    SessionOutcome,
    SessionSnapshot,
    SessionStatus,
    SymptomSet,
)
from engine.symptom_matcher import SymptomMatcher
from engine.target_context import (
    CommandResult,
    ScriptedCommandRunner,
    SubprocessCommandRunner,
    TargetContext,
)

__all__ = [
    "ApprovalError",
    "ApprovalPolicy",
    "CommandResult",
    "EngineConfig",
    "EngineError",
    "RemediationEngine",
    "ScriptedCommandRunner",
    "SessionNotFoundError",
    "SessionOutcome",
    "SessionSnapshot",
    "SessionStatus",
    "SubprocessCommandRunner",
    "SymptomMatcher",
    "SymptomSet",
    "TargetContext",
]
