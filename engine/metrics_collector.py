"""Prometheus metrics collection and export."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Tuple

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from .config import EngineConfig
from .telemetry import get_logger

_logger = get_logger(__name__)


class MetricsCollector:
    """Aggregate probe, remediation and session metrics.

    In-memory counters are always kept.  Prometheus objects are created
    in an isolated registry per instance when
    ``config.enable_prometheus_metrics`` is ``True``.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self._enabled = config.enable_prometheus_metrics

        # In-memory accumulators (always active)
        self._probe_outcomes: Dict[str, int] = defaultdict(int)
        self._probe_retries: Dict[str, int] = defaultdict(int)
        self._timeouts: Dict[Tuple[str, str], int] = defaultdict(int)
        self._session_outcomes: Dict[str, int] = defaultdict(int)
        self._transitions: Dict[str, int] = defaultdict(int)
        self._lock_conflicts: int = 0
        self._active_sessions: int = 0

        if self._enabled:
            self._registry = CollectorRegistry()
            self._prom_probe_exec = Histogram(
                "probe_execution_seconds",
                "Probe execution time in seconds",
                labelnames=["outcome"],
                registry=self._registry,
            )
            self._prom_probe_retries = Counter(
                "probe_retry_attempts_total",
                "Probe retry attempts",
                labelnames=["probe_id"],
                registry=self._registry,
            )
            self._prom_timeouts = Counter(
                "command_timeouts_total",
                "Probe and action commands that missed their timeout",
                labelnames=["kind", "command_id"],
                registry=self._registry,
            )
            self._prom_sessions = Counter(
                "sessions_total",
                "Sessions reaching a terminal outcome",
                labelnames=["outcome"],
                registry=self._registry,
            )
            self._prom_transitions = Counter(
                "session_transitions_total",
                "Incident state transitions",
                labelnames=["to_status"],
                registry=self._registry,
            )
            self._prom_lock_conflicts = Counter(
                "resource_lock_conflicts_total",
                "Target-resource lock conflicts",
                registry=self._registry,
            )
            self._prom_approval_wait = Histogram(
                "approval_wait_seconds",
                "Time actions spent waiting for approval",
                labelnames=["risk"],
                registry=self._registry,
            )
            self._prom_active = Gauge(
                "active_sessions",
                "Sessions currently running",
                registry=self._registry,
            )

    # ---- recording --------------------------------------------------------

    def record_probe(self, probe_id: str, outcome: str, duration: float) -> None:
        """Record a finished probe.

        Args:
            probe_id: Probe identifier.
            outcome: ``pass``, ``fail`` or ``inconclusive``.
            duration: Wall-clock seconds including retries.
        """
        self._probe_outcomes[outcome] += 1
        if self._enabled:
            self._prom_probe_exec.labels(outcome=outcome).observe(duration)

    def record_retry(self, probe_id: str) -> None:
        """Record a probe retry attempt."""
        self._probe_retries[probe_id] += 1
        if self._enabled:
            self._prom_probe_retries.labels(probe_id=probe_id).inc()

    def record_timeout(self, kind: str, command_id: str) -> None:
        """Record a probe attempt or action command that timed out.

        Args:
            kind: ``probe`` or ``action``.
            command_id: Probe or action identifier.
        """
        self._timeouts[(kind, command_id)] += 1
        if self._enabled:
            self._prom_timeouts.labels(kind=kind, command_id=command_id).inc()

    def record_lock_conflict(self) -> None:
        self._lock_conflicts += 1
        if self._enabled:
            self._prom_lock_conflicts.inc()

    def record_transition(self, to_status: str) -> None:
        """Record an incident state transition."""
        self._transitions[to_status] += 1
        if self._enabled:
            self._prom_transitions.labels(to_status=to_status).inc()

    def record_approval_wait(self, risk: str, seconds: float) -> None:
        if self._enabled:
            self._prom_approval_wait.labels(risk=risk).observe(seconds)

    def session_started(self) -> None:
        self._active_sessions += 1
        if self._enabled:
            self._prom_active.inc()

    def record_session_outcome(self, outcome: str) -> None:
        """Record a session reaching *outcome*."""
        self._session_outcomes[outcome] += 1
        self._active_sessions = max(0, self._active_sessions - 1)
        if self._enabled:
            self._prom_sessions.labels(outcome=outcome).inc()
            self._prom_active.dec()

    # ---- export -----------------------------------------------------------

    def export_metrics(self) -> str:
        """Export metrics in Prometheus text exposition format.

        Returns:
            Multi-line string in Prometheus format, or ``""`` if disabled.
        """
        if not self._enabled:
            return ""
        return generate_latest(self._registry).decode("utf-8")

    def get_summary(self) -> Dict[str, object]:
        """Return the in-memory accumulators as plain dicts."""
        return {
            "probe_outcomes": dict(self._probe_outcomes),
            "probe_retries": sum(self._probe_retries.values()),
            "probe_timeouts": sum(n for (kind, _), n in self._timeouts.items() if kind == "probe"),
            "action_timeouts": sum(n for (kind, _), n in self._timeouts.items() if kind == "action"),
            "session_outcomes": dict(self._session_outcomes),
            "transitions": dict(self._transitions),
            "lock_conflicts": self._lock_conflicts,
            "active_sessions": self._active_sessions,
        }

    # ---- lifecycle --------------------------------------------------------

    def reset(self) -> None:
        """Clear in-memory accumulators."""
        self._probe_outcomes.clear()
        self._probe_retries.clear()
        self._timeouts.clear()
        self._session_outcomes.clear()
        self._transitions.clear()
        self._lock_conflicts = 0
