"""Pydantic v2 schemas for diagnosis sessions, evidence and the audit trail."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from knowledge_base.schema import RiskClass, RunbookEntry, normalise_token, normalise_value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class SessionStatus(str, Enum):
    """Incident-level session status."""
    DIAGNOSING = "diagnosing"
    HYPOTHESIS_CONFIRMED = "hypothesis_confirmed"
    REMEDIATION_PROPOSED = "remediation_proposed"
    REMEDIATION_APPROVED = "remediation_approved"
    EXECUTING = "executing"
    VERIFYING = "verifying"
    RESOLVED = "resolved"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    CLOSED = "closed"


class SessionOutcome(str, Enum):
    """Terminal outcome surfaced to callers."""
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    FAILED = "failed"


class EvidenceOutcome(str, Enum):
    """Result of evaluating a probe against its expected signal."""
    PASS = "pass"
    FAIL = "fail"
    INCONCLUSIVE = "inconclusive"


class EvidencePurpose(str, Enum):
    """Why a probe was run."""
    DIAGNOSIS = "diagnosis"
    VERIFICATION = "verification"


class HypothesisStatus(str, Enum):
    """Per-cause hypothesis status."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REFUTED = "refuted"


class ProbeStatus(str, Enum):
    """Per-probe execution status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ActionEvent(str, Enum):
    """Remediation events recorded in the action log."""
    PROPOSED = "proposed"
    APPROVED = "approved"
    EXECUTED = "executed"
    EXECUTION_FAILED = "execution_failed"
    VERIFIED = "verified"
    VERIFICATION_FAILED = "verification_failed"
    ROLLBACK_STARTED = "rollback_started"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"


# ---------------------------------------------------------------------------
# Input models
# ---------------------------------------------------------------------------

class SymptomSet(BaseModel):
    """Observed symptoms: free-form tags plus structured signal fields."""
    model_config = ConfigDict(frozen=True)

    tags: List[str] = Field(default_factory=list)
    signals: Dict[str, str] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def _normalise_tags(cls, v: List[str]) -> List[str]:
        return sorted({normalise_token(t) for t in v if normalise_token(t)})

    @field_validator("signals", mode="before")
    @classmethod
    def _normalise_signals(cls, v: Any) -> Any:
        if isinstance(v, Mapping):
            return {str(k): normalise_value(val) for k, val in v.items()}
        return v

    @classmethod
    def from_observation(cls, observation: Mapping[str, Any]) -> "SymptomSet":
        """Build a symptom set from a flat observation mapping.

        ``True`` flags become tags, ``False``/``None`` are dropped, and
        every other value becomes a structured signal field.
        """
        tags: List[str] = []
        signals: Dict[str, Any] = {}
        for key, value in observation.items():
            if value is True:
                tags.append(key)
            elif value is False or value is None:
                continue
            else:
                signals[key] = value
        return cls(tags=tags, signals=signals)

    def is_empty(self) -> bool:
        """Return ``True`` when there is nothing to match on."""
        return not self.tags and not self.signals

    def merged(self, extra_signals: Mapping[str, Any]) -> "SymptomSet":
        """Return a copy with *extra_signals* added (existing fields win)."""
        signals: Dict[str, Any] = dict(extra_signals)
        signals.update(self.signals)
        return SymptomSet(tags=list(self.tags), signals=signals)


class MatchResult(BaseModel):
    """One knowledge-base entry scored against a symptom set."""
    model_config = ConfigDict(frozen=True)

    entry_id: str
    score: float = Field(ge=0.0, le=1.0)
    matched_tags: List[str] = Field(default_factory=list)
    matched_signals: List[str] = Field(default_factory=list)
    entry: Optional[RunbookEntry] = None


# ---------------------------------------------------------------------------
# Evidence & hypotheses
# ---------------------------------------------------------------------------

class Evidence(BaseModel):
    """Outcome of one probe execution.  Immutable once appended."""
    model_config = ConfigDict(frozen=True)

    evidence_id: str = Field(default_factory=_new_id)
    session_id: str = ""
    probe_id: str
    cause_id: str
    entry_id: str = ""
    outcome: EvidenceOutcome
    purpose: EvidencePurpose = EvidencePurpose.DIAGNOSIS
    timestamp: datetime = Field(default_factory=_utcnow)
    payload: Dict[str, Any] = Field(default_factory=dict)
    signals: Dict[str, str] = Field(default_factory=dict)
    attempts: int = Field(default=1, ge=0)


class HypothesisState(BaseModel):
    """Belief that a cause explains the observed symptoms."""
    model_config = ConfigDict(frozen=True)

    cause_id: str
    entry_id: str
    belief: float = Field(ge=0.0, le=1.0)
    status: HypothesisStatus = HypothesisStatus.PENDING


class ProbeRun(BaseModel):
    """Execution record for one probe."""
    model_config = ConfigDict(frozen=True)

    probe_id: str
    status: ProbeStatus = ProbeStatus.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Logs
# ---------------------------------------------------------------------------

class ActionRecord(BaseModel):
    """One remediation event in a session's action log."""
    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=_new_id)
    session_id: str
    action_id: str
    cause_id: str = ""
    event: ActionEvent
    actor: str
    risk: Optional[RiskClass] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    detail: str = ""
    exit_code: Optional[int] = None


class AuditRecord(BaseModel):
    """One state transition in a session's audit log."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    sequence: int = Field(ge=0)
    timestamp: datetime = Field(default_factory=_utcnow)
    actor: str
    from_status: Optional[SessionStatus] = None
    to_status: SessionStatus
    reason: str = ""
    action_id: Optional[str] = None
    evidence_before: List[str] = Field(default_factory=list)
    evidence_after: List[str] = Field(default_factory=list)


class PendingApproval(BaseModel):
    """An action waiting at the approval gate."""
    model_config = ConfigDict(frozen=True)

    action_id: str
    cause_id: str
    risk: RiskClass
    command: str
    proposed_at: datetime = Field(default_factory=_utcnow)


class DiagnosisReport(BaseModel):
    """Partial-diagnosis report attached to an escalated session."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    reason: str
    visited_entries: List[str] = Field(default_factory=list)
    evidence: List[Evidence] = Field(default_factory=list)
    beliefs: List[HypothesisState] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=_utcnow)


class SessionSnapshot(BaseModel):
    """Read-only view of a session returned by ``get_status``."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    incident_id: str
    status: SessionStatus
    outcome: Optional[SessionOutcome] = None
    symptoms: SymptomSet
    context_name: str
    active_entry_id: Optional[str] = None
    visited_entries: List[str] = Field(default_factory=list)
    hypotheses: List[HypothesisState] = Field(default_factory=list)
    evidence: List[Evidence] = Field(default_factory=list)
    actions: List[ActionRecord] = Field(default_factory=list)
    audit: List[AuditRecord] = Field(default_factory=list)
    pending_approval: Optional[PendingApproval] = None
    report: Optional[DiagnosisReport] = None
    errors: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        """``True`` once the session reached an outcome."""
        return self.outcome is not None


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class EngineError(Exception):
    """Base class for engine errors."""


class ProbeExecutionError(EngineError):
    """Raised when a probe attempt times out, exits non-zero, or returns a
    malformed payload."""

    def __init__(self, probe_id: str, reason: str, error_type: str = "UNKNOWN") -> None:
        self.probe_id = probe_id
        self.reason = reason
        self.error_type = error_type
        super().__init__(f"Probe '{probe_id}' failed ({error_type}): {reason}")


class RemediationError(EngineError):
    """Raised when an action command or its verification fails."""

    def __init__(self, action_id: str, reason: str) -> None:
        self.action_id = action_id
        self.reason = reason
        super().__init__(f"Remediation '{action_id}' failed: {reason}")


class ActionNotStartedError(RemediationError):
    """Raised when an action command never reached the target: it could
    not be rendered or its process could not be launched."""


class ConcurrencyConflictError(EngineError):
    """Raised when a target-resource lock cannot be acquired in time."""

    def __init__(self, resource: str, waited: float) -> None:
        self.resource = resource
        self.waited = waited
        super().__init__(f"Resource '{resource}' busy after {waited:.2f}s")


class StateMachineError(EngineError):
    """Raised on an invalid state transition."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state} → {to_state}")


class SessionNotFoundError(EngineError):
    """Raised when a session id is unknown."""

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Unknown session '{session_id}'")


class ApprovalError(EngineError):
    """Raised when an approval does not match the action awaiting approval."""

    def __init__(self, session_id: str, action_id: str, reason: str) -> None:
        self.session_id = session_id
        self.action_id = action_id
        super().__init__(f"Cannot approve '{action_id}' in session '{session_id}': {reason}")
