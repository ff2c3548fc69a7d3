"""Configuration management — load, validate, merge YAML + env vars.

Uses Pydantic v2 for schema validation and PyYAML for file parsing.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from audit_store.config import AuditStoreConfig
from engine.config import ApprovalPolicy, EngineConfig
from engine.target_context import TargetContext


# ── Pydantic settings models ───────────────────────────────────────


class SystemSettings(BaseModel):
    """Top-level system settings."""

    model_config = ConfigDict(frozen=True)

    project_name: str = "Runbook Remediation Engine"
    version: str = "1.0.0"
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        upper = v.upper()
        if upper not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}, got '{v}'")
        return upper


class KnowledgeBaseSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    path: str = "runbooks"
    strict: bool = False


class TargetSettings(BaseModel):
    """Default cluster target used when a session names none."""

    model_config = ConfigDict(frozen=True)

    name: str = "default"
    kube_context: Optional[str] = None
    namespace: str = "default"
    variables: Dict[str, str] = Field(default_factory=dict)


class RunnerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    mode: str = "subprocess"
    script: Optional[str] = None
    shell: Optional[str] = None

    @field_validator("mode")
    @classmethod
    def _validate_mode(cls, v: str) -> str:
        if v not in ("subprocess", "scripted"):
            raise ValueError(f"runner.mode must be 'subprocess' or 'scripted', got '{v}'")
        return v


class MatcherSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    tag_weight: float = 1.0
    signal_weight: float = 2.0


class RankerSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    likelihood_pass: float = 3.0
    likelihood_fail: float = 0.2
    likelihood_inconclusive: float = 1.0
    confirmation_threshold: float = 0.7
    refutation_floor: float = 0.05


class ProbeSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    backoff_cap_seconds: float = 30.0
    jitter: float = 0.0
    expected_cluster_nodes: int = 50
    worker_pool_size: Optional[int] = None


class LockSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    acquire_timeout_seconds: float = 5.0
    conflict_warning: int = 20


class RemediationSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    verification_attempts: int = 5
    verification_interval_seconds: float = 10.0
    auto_approve_safe: bool = True
    automated_actor: str = "automated"


class SessionSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    ttl_seconds: float = 1800.0
    finished_retention: int = 100


class AuditSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    enable: bool = True
    database_url: str = "sqlite:///rbengine_audit.db"


class MetricsSettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    enable_prometheus: bool = True


class APISettings(BaseModel):
    model_config = ConfigDict(frozen=True)
    host: str = "127.0.0.1"
    port: int = 8000
    enable_cors: bool = True
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


# ── Top-level config ───────────────────────────────────────────────


class SystemConfig(BaseModel):
    """Complete system configuration."""

    model_config = ConfigDict(frozen=True)

    system: SystemSettings = Field(default_factory=SystemSettings)
    knowledge_base: KnowledgeBaseSettings = Field(default_factory=KnowledgeBaseSettings)
    target: TargetSettings = Field(default_factory=TargetSettings)
    runner: RunnerSettings = Field(default_factory=RunnerSettings)
    matcher: MatcherSettings = Field(default_factory=MatcherSettings)
    ranker: RankerSettings = Field(default_factory=RankerSettings)
    probes: ProbeSettings = Field(default_factory=ProbeSettings)
    locks: LockSettings = Field(default_factory=LockSettings)
    remediation: RemediationSettings = Field(default_factory=RemediationSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    api: APISettings = Field(default_factory=APISettings)

    def to_engine_config(self) -> EngineConfig:
        """Build the frozen :class:`EngineConfig` the engine consumes.

        Raises:
            ValueError: If the combined values break an engine invariant.
        """
        return EngineConfig(
            tag_weight=self.matcher.tag_weight,
            signal_weight=self.matcher.signal_weight,
            likelihood_pass=self.ranker.likelihood_pass,
            likelihood_fail=self.ranker.likelihood_fail,
            likelihood_inconclusive=self.ranker.likelihood_inconclusive,
            confirmation_threshold=self.ranker.confirmation_threshold,
            refutation_floor=self.ranker.refutation_floor,
            probe_max_attempts=self.probes.max_attempts,
            retry_backoff_base=self.probes.backoff_base_seconds,
            retry_backoff_multiplier=self.probes.backoff_multiplier,
            retry_backoff_cap=self.probes.backoff_cap_seconds,
            retry_jitter=self.probes.jitter,
            expected_cluster_nodes=self.probes.expected_cluster_nodes,
            worker_pool_size=self.probes.worker_pool_size,
            lock_acquire_timeout=self.locks.acquire_timeout_seconds,
            lock_conflict_warning=self.locks.conflict_warning,
            verification_attempts=self.remediation.verification_attempts,
            verification_interval=self.remediation.verification_interval_seconds,
            session_ttl=self.session.ttl_seconds,
            finished_session_retention=self.session.finished_retention,
            approval_policy=ApprovalPolicy(
                auto_approve_safe=self.remediation.auto_approve_safe,
                automated_actor=self.remediation.automated_actor,
            ),
            enable_prometheus_metrics=self.metrics.enable_prometheus,
        )

    def to_target_context(self) -> TargetContext:
        """Return the default :class:`TargetContext`."""
        return TargetContext(
            name=self.target.name,
            kube_context=self.target.kube_context,
            namespace=self.target.namespace,
            variables=dict(self.target.variables),
        )

    def to_audit_config(self) -> AuditStoreConfig:
        """Return the :class:`AuditStoreConfig` for the archive database."""
        return AuditStoreConfig(database_url=self.audit.database_url)


# ── ConfigManager ──────────────────────────────────────────────────


def _as_bool(value: str) -> bool:
    return value.lower() in ("1", "true", "yes")


# Environment variable → (config path, coercion).
_ENV_MAP: Dict[str, Tuple[str, Callable[[str], Any]]] = {
    "RBENGINE_LOG_LEVEL": ("system.log_level", str),
    "RBENGINE_KB_PATH": ("knowledge_base.path", str),
    "RBENGINE_KUBE_CONTEXT": ("target.kube_context", str),
    "RBENGINE_NAMESPACE": ("target.namespace", str),
    "RBENGINE_RUNNER_SCRIPT": ("runner.script", str),
    "RBENGINE_WORKER_POOL_SIZE": ("probes.worker_pool_size", int),
    "RBENGINE_SESSION_TTL": ("session.ttl_seconds", float),
    "RBENGINE_AUTO_APPROVE_SAFE": ("remediation.auto_approve_safe", _as_bool),
    "RBENGINE_DATABASE_URL": ("audit.database_url", str),
    "RBENGINE_API_PORT": ("api.port", int),
}


class ConfigManager:
    """Load, validate, and merge configuration from YAML + env vars."""

    @staticmethod
    def load(config_path: str = "config.yaml") -> SystemConfig:
        """Load config from *config_path*, validate, merge env vars.

        A missing file yields the defaults (plus any env overrides).

        Raises:
            yaml.YAMLError: If the file contains invalid YAML.
            pydantic.ValidationError: If the data fails validation.
        """
        path = Path(config_path)
        if path.exists():
            with open(path, encoding="utf-8") as fh:
                raw: Dict[str, Any] = yaml.safe_load(fh) or {}
        else:
            raw = {}

        config = SystemConfig.model_validate(raw)
        config = ConfigManager.merge_env_vars(config)
        return config

    @staticmethod
    def validate(config: SystemConfig) -> List[str]:
        """Return a list of human-readable validation issues.

        An empty list means the config is valid.
        """
        issues: List[str] = []

        if not Path(config.knowledge_base.path).exists():
            issues.append(f"knowledge_base.path '{config.knowledge_base.path}' does not exist")

        if config.runner.mode == "scripted" and not config.runner.script:
            issues.append("runner.script is required when runner.mode is 'scripted'")

        if config.audit.enable and not config.audit.database_url:
            issues.append("audit.database_url is required when the audit store is enabled")

        if config.api.port <= 0:
            issues.append("api.port must be a positive integer")

        try:
            config.to_engine_config()
        except ValueError as exc:
            issues.append(f"engine: {exc}")

        return issues

    @staticmethod
    def merge_env_vars(config: SystemConfig) -> SystemConfig:
        """Override config values from ``RBENGINE_*`` environment variables.

        Returns a **new** frozen :class:`SystemConfig` with overrides
        applied.
        """
        overrides: Dict[str, Any] = {}

        for env_key, (config_path, coerce) in _ENV_MAP.items():
            value = os.environ.get(env_key)
            if value is None:
                continue

            parts = config_path.split(".")
            d = overrides
            for p in parts[:-1]:
                d = d.setdefault(p, {})
            d[parts[-1]] = coerce(value)

        if not overrides:
            return config

        base = config.model_dump()
        _deep_merge(base, overrides)
        return SystemConfig.model_validate(base)

    @staticmethod
    def get_default_config() -> SystemConfig:
        """Return a :class:`SystemConfig` with all defaults."""
        return SystemConfig()

    @staticmethod
    def save(config: SystemConfig, path: str) -> None:
        """Dump *config* to a YAML file at *path*."""
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", encoding="utf-8") as fh:
            yaml.dump(
                config.model_dump(),
                fh,
                default_flow_style=False,
                sort_keys=False,
            )


# ── helpers ────────────────────────────────────────────────────────


def _deep_merge(base: dict, overrides: dict) -> None:
    """Recursively merge *overrides* into *base* (mutating)."""
    for k, v in overrides.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_merge(base[k], v)
        else:
            base[k] = v
