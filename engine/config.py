"""Frozen-dataclass configuration for the remediation engine."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

from knowledge_base.schema import RiskClass


@dataclass(frozen=True)
class ApprovalPolicy:
    """Which remediation actions may skip the manual approval gate.

    Only ``safe`` actions can ever be auto-approved.  ``moderate`` and
    ``destructive`` actions always wait for an operator.  A rollback undoes
    an action that was already approved and runs without a second approval,
    unless the rollback itself is ``destructive``.
    """

    auto_approve_safe: bool = True
    automated_actor: str = "automated"

    def allows_auto_approval(self, risk: RiskClass) -> bool:
        """Return ``True`` if an action of *risk* may be approved automatically."""
        return risk == RiskClass.SAFE and self.auto_approve_safe

    def rollback_needs_approval(self, risk: RiskClass) -> bool:
        """Return ``True`` if a rollback of *risk* must wait for an operator."""
        return risk == RiskClass.DESTRUCTIVE


@dataclass(frozen=True)
class EngineConfig:
    """Master configuration for the diagnosis and remediation engine.

    All values carry sensible defaults.  Override via constructor kwargs.
    """

    # ---- Symptom matcher -------------------------------------------------
    tag_weight: float = 1.0
    signal_weight: float = 2.0

    # ---- Hypothesis ranker -----------------------------------------------
    likelihood_pass: float = 3.0
    likelihood_fail: float = 0.2
    likelihood_inconclusive: float = 1.0
    confirmation_threshold: float = 0.7
    refutation_floor: float = 0.05

    # ---- Probe retry policy ----------------------------------------------
    probe_max_attempts: int = 3
    retry_backoff_base: float = 2.0
    retry_backoff_multiplier: float = 2.0
    retry_backoff_cap: float = 30.0
    retry_jitter: float = 0.0

    # ---- Worker pool -----------------------------------------------------
    expected_cluster_nodes: int = 50
    worker_pool_size: Optional[int] = None

    # ---- Target-resource locking -----------------------------------------
    lock_acquire_timeout: float = 5.0
    lock_conflict_warning: int = 20

    # ---- Verification ----------------------------------------------------
    verification_attempts: int = 5
    verification_interval: float = 10.0

    # ---- Session ---------------------------------------------------------
    session_ttl: float = 1800.0
    finished_session_retention: int = 100
    approval_policy: ApprovalPolicy = field(default_factory=ApprovalPolicy)

    # ---- Telemetry -------------------------------------------------------
    enable_prometheus_metrics: bool = True

    def effective_worker_pool_size(self) -> int:
        """Return the shared probe worker-pool size.

        An explicit ``worker_pool_size`` wins; otherwise one worker per
        ten expected cluster nodes, clamped to ``[2, 32]``.
        """
        if self.worker_pool_size is not None:
            return self.worker_pool_size
        return max(2, min(32, math.ceil(self.expected_cluster_nodes / 10)))

    def likelihood(self, outcome: str) -> float:
        """Return the likelihood multiplier for an evidence *outcome* label."""
        _map = {
            "pass": self.likelihood_pass,
            "fail": self.likelihood_fail,
            "inconclusive": self.likelihood_inconclusive,
        }
        return _map[outcome]

    def __post_init__(self) -> None:
        """Validate invariants at construction time."""
        if self.tag_weight < 0 or self.signal_weight < 0:
            raise ValueError("matcher weights must be >= 0")
        if self.tag_weight == 0 and self.signal_weight == 0:
            raise ValueError("at least one matcher weight must be > 0")
        for name in ("likelihood_pass", "likelihood_fail", "likelihood_inconclusive"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if not 0.0 < self.confirmation_threshold <= 1.0:
            raise ValueError("confirmation_threshold must be in (0, 1]")
        if not 0.0 <= self.refutation_floor < self.confirmation_threshold:
            raise ValueError("refutation_floor must be in [0, confirmation_threshold)")
        if self.probe_max_attempts < 1:
            raise ValueError("probe_max_attempts must be >= 1")
        if self.retry_backoff_base < 0:
            raise ValueError("retry_backoff_base must be >= 0")
        if self.retry_backoff_cap < self.retry_backoff_base:
            raise ValueError("retry_backoff_cap must be >= retry_backoff_base")
        if self.expected_cluster_nodes <= 0:
            raise ValueError("expected_cluster_nodes must be > 0")
        if self.worker_pool_size is not None and self.worker_pool_size <= 0:
            raise ValueError("worker_pool_size must be > 0")
        if self.lock_acquire_timeout <= 0:
            raise ValueError("lock_acquire_timeout must be > 0")
        if self.verification_attempts < 1:
            raise ValueError("verification_attempts must be >= 1")
        if self.verification_interval < 0:
            raise ValueError("verification_interval must be >= 0")
        if self.session_ttl <= 0:
            raise ValueError("session_ttl must be > 0")
        if self.lock_conflict_warning < 1:
            raise ValueError("lock_conflict_warning must be >= 1")
        if self.finished_session_retention < 0:
            raise ValueError("finished_session_retention must be >= 0")
