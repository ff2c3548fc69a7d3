"""Shared fixtures for engine tests."""

from __future__ import annotations

import copy
from typing import Any, Callable, Dict, List, Optional

import pytest

from engine.config import ApprovalPolicy, EngineConfig
from engine.target_context import ScriptedCommandRunner
from knowledge_base.loader import load_entries
from knowledge_base.store import KnowledgeBaseStore


@pytest.fixture
def config() -> EngineConfig:
    """Engine config with fast back-off, polling and lock timeouts."""
    return EngineConfig(
        retry_backoff_base=0.001,
        retry_backoff_multiplier=2.0,
        retry_backoff_cap=0.01,
        verification_attempts=3,
        verification_interval=0.001,
        lock_acquire_timeout=0.05,
        lock_conflict_warning=3,
        session_ttl=30.0,
        enable_prometheus_metrics=False,
    )


@pytest.fixture
def make_config() -> Callable[..., EngineConfig]:
    """Build a fast config with overrides."""
    def _make(**overrides: Any) -> EngineConfig:
        values: Dict[str, Any] = dict(
            retry_backoff_base=0.001,
            retry_backoff_cap=0.01,
            verification_attempts=3,
            verification_interval=0.001,
            lock_acquire_timeout=0.05,
            lock_conflict_warning=3,
            session_ttl=30.0,
            enable_prometheus_metrics=False,
            approval_policy=ApprovalPolicy(),
        )
        values.update(overrides)
        return EngineConfig(**values)
    return _make


_LATENCY_ENTRY: Dict[str, Any] = {
    "id": "high-latency",
    "title": "Service latency breach",
    "symptoms": ["high_latency"],
    "signals": {"service": "backend-service"},
    "causes": [
        {
            "id": "database-bottleneck",
            "title": "Database is the slowest span",
            "probes": [
                {
                    "id": "trace-query",
                    "command_template": "trace-query --service {service}",
                    "read_only": True,
                    "expected_signal": {"field": "slowest_span", "operator": "==", "value": "database"},
                    "timeout": 1,
                    "retries": 2,
                },
                {
                    "id": "latency-check",
                    "command_template": "latency-check --service {service}",
                    "read_only": True,
                    "expected_signal": {"field": "p90_ms", "operator": ">", "value": 8000},
                    "timeout": 1,
                    "retries": 1,
                },
            ],
            "actions": [
                {
                    "id": "scale-database-replicas",
                    "command_template": "kubectl scale statefulset/postgres --replicas=3",
                    "risk": "moderate",
                    "rollback_ref": "revert-replica-count",
                    "verify_probe_ref": "latency-check",
                    "target": "statefulset/postgres",
                },
                {
                    "id": "revert-replica-count",
                    "command_template": "kubectl scale statefulset/postgres --replicas=1",
                    "risk": "moderate",
                    "target": "statefulset/postgres",
                },
            ],
        },
        {
            "id": "application-regression",
            "title": "Recent rollout made the service slower",
            "probes": [
                {
                    "id": "recent-rollout",
                    "command_template": "rollout-age --deployment {service}",
                    "read_only": True,
                    "expected_signal": {"field": "minutes", "operator": "<", "value": 60},
                    "timeout": 1,
                    "retries": 1,
                },
            ],
            "actions": [
                {
                    "id": "undo-rollout",
                    "command_template": "kubectl rollout undo deployment/{service}",
                    "risk": "moderate",
                },
            ],
        },
    ],
    "related": ["pod-crashloop"],
}

_CRASHLOOP_ENTRY: Dict[str, Any] = {
    "id": "pod-crashloop",
    "title": "Pods in CrashLoopBackOff",
    "symptoms": ["crashloop_backoff"],
    "signals": {"reason": "oomkilled"},
    "causes": [
        {
            "id": "memory-limit-too-low",
            "probes": [
                {
                    "id": "oom-events",
                    "command_template": "kubectl describe pods -l app={service}",
                    "read_only": True,
                    "expected_signal": {"pattern": "OOMKilled"},
                    "timeout": 1,
                    "retries": 1,
                },
            ],
            "actions": [
                {
                    "id": "raise-memory-limit",
                    "command_template": "kubectl set resources deployment/{service} --limits=memory=1Gi",
                    "risk": "safe",
                    "target": "deployment/{service}",
                },
            ],
        },
    ],
    "related": ["high-latency"],
}


@pytest.fixture
def latency_entry() -> Dict[str, Any]:
    return copy.deepcopy(_LATENCY_ENTRY)


@pytest.fixture
def crashloop_entry() -> Dict[str, Any]:
    return copy.deepcopy(_CRASHLOOP_ENTRY)


@pytest.fixture
def store(latency_entry: Dict[str, Any], crashloop_entry: Dict[str, Any]) -> KnowledgeBaseStore:
    """Two-entry knowledge base whose entries link to each other."""
    kb = load_entries([latency_entry, crashloop_entry], strict=True)
    assert len(kb) == 2
    return kb


@pytest.fixture
def make_store() -> Callable[[List[Dict[str, Any]]], KnowledgeBaseStore]:
    def _make(entries: List[Dict[str, Any]]) -> KnowledgeBaseStore:
        return load_entries(entries, strict=True)
    return _make


@pytest.fixture
def scenario_runner() -> ScriptedCommandRunner:
    """Runner for the latency scenario: the database is slow and stays slow."""
    return ScriptedCommandRunner(rules=[
        {"match": "trace-query", "responses": [{"stdout": '{"slowest_span": "database", "service": "backend-service"}'}]},
        {"match": "rollout-age", "responses": [{"stdout": '{"minutes": 600}'}]},
        {"match": "latency-check", "responses": [{"stdout": '{"p90_ms": 9500}'}]},
        {"match": r"--replicas=3", "responses": [{"stdout": "statefulset.apps/postgres scaled"}]},
        {"match": r"--replicas=1", "responses": [{"stdout": "statefulset.apps/postgres scaled"}]},
    ])


@pytest.fixture
def make_runner() -> Callable[..., ScriptedCommandRunner]:
    def _make(rules: Optional[List[Dict[str, Any]]] = None, default: Optional[Dict[str, Any]] = None) -> ScriptedCommandRunner:
        return ScriptedCommandRunner(rules=rules or [], default=default)
    return _make
