"""
File: schema.py
Purpose: Pydantic v2 schemas for structured runbook entries.
Dependencies: pydantic >=2.0
Performance: Schema validation <1ms per entry.

A runbook entry maps a set of symptoms to an ordered list of candidate
causes.  Each cause carries the read-only probes that test it and the
remediation actions that fix it.  Everything here is frozen once
loaded; the engine never mutates the knowledge base.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ═══════════════════════════════════════════════════════════════
#  ENUMS
# ═══════════════════════════════════════════════════════════════


class RiskClass(str, Enum):
    """Blast-radius class of a remediation action."""
    SAFE = "safe"
    MODERATE = "moderate"
    DESTRUCTIVE = "destructive"


class SignalOperator(str, Enum):
    """Comparison applied to a JSON field in probe output."""
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="
    EQ = "=="
    NE = "!="
    CONTAINS = "contains"


# ═══════════════════════════════════════════════════════════════
#  PROBES & ACTIONS
# ═══════════════════════════════════════════════════════════════


class ExpectedSignal(BaseModel):
    """What a probe observes when its cause is present.

    Exactly one evaluation mode applies, checked in this order:
    ``pattern`` (regex on stdout), ``field``/``operator``/``value``
    (JSON field comparison), otherwise a zero exit status.
    """
    model_config = ConfigDict(frozen=True)

    pattern: Optional[str] = None
    field: Optional[str] = None
    operator: SignalOperator = SignalOperator.EQ
    value: Any = None

    @model_validator(mode="after")
    def _check_field_mode(self) -> "ExpectedSignal":
        if self.field is not None and self.value is None:
            raise ValueError("expected_signal.value is required when field is set")
        return self


class Probe(BaseModel):
    """A read-only diagnostic command."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    command_template: str = Field(min_length=1)
    read_only: bool = False
    expected_signal: ExpectedSignal = Field(default_factory=ExpectedSignal)
    timeout: float = Field(default=30.0, gt=0.0, description="Per-attempt timeout in seconds")
    retries: int = Field(default=3, ge=1, le=10, description="Maximum attempts")
    target: Optional[str] = Field(
        default=None,
        description="Resource identity template, e.g. 'deployment/{service}'",
    )


class RemediationAction(BaseModel):
    """A (potentially mutating) fix command."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    command_template: str = Field(min_length=1)
    risk: RiskClass = RiskClass.MODERATE
    rollback_ref: Optional[str] = None
    verify_probe_ref: Optional[str] = None
    timeout: float = Field(default=120.0, gt=0.0)
    target: Optional[str] = None


# ═══════════════════════════════════════════════════════════════
#  CAUSES & ENTRIES
# ═══════════════════════════════════════════════════════════════


class Cause(BaseModel):
    """One candidate explanation for an entry's symptoms."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    title: str = ""
    prior: Optional[float] = Field(default=None, gt=0.0, le=1.0)
    probes: List[Probe] = Field(default_factory=list)
    actions: List[RemediationAction] = Field(default_factory=list)

    def probe(self, probe_id: str) -> Optional[Probe]:
        """Return the probe called *probe_id*, if this cause owns one."""
        for p in self.probes:
            if p.id == probe_id:
                return p
        return None

    def action(self, action_id: str) -> Optional[RemediationAction]:
        """Return the action called *action_id*, if this cause owns one."""
        for a in self.actions:
            if a.id == action_id:
                return a
        return None

    def primary_actions(self) -> List[RemediationAction]:
        """Actions that are not only reachable as another action's rollback."""
        rollback_ids = {a.rollback_ref for a in self.actions if a.rollback_ref}
        return [a for a in self.actions if a.id not in rollback_ids]


class RunbookEntry(BaseModel):
    """A structured symptom → cause → fix knowledge-base record."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    title: str = ""
    symptoms: List[str] = Field(default_factory=list)
    signals: Dict[str, str] = Field(default_factory=dict)
    causes: List[Cause] = Field(default_factory=list)
    related: List[str] = Field(default_factory=list)

    @field_validator("symptoms")
    @classmethod
    def _normalise_symptoms(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for tag in v:
            norm = normalise_token(tag)
            if norm and norm not in seen:
                seen.append(norm)
        return seen

    @field_validator("signals", mode="before")
    @classmethod
    def _stringify_signals(cls, v: Any) -> Any:
        if isinstance(v, dict):
            return {str(k): normalise_value(val) for k, val in v.items()}
        return v

    @property
    def signal_count(self) -> int:
        """Total number of matchable signals (tags + structured fields)."""
        return len(self.symptoms) + len(self.signals)

    def cause(self, cause_id: str) -> Optional[Cause]:
        """Return the cause called *cause_id*, if this entry owns one."""
        for c in self.causes:
            if c.id == cause_id:
                return c
        return None


# ═══════════════════════════════════════════════════════════════
#  NORMALISATION HELPERS
# ═══════════════════════════════════════════════════════════════


def normalise_token(tag: Any) -> str:
    """Lower-case a free-form tag and fold separators to ``_``."""
    return str(tag).strip().lower().replace("-", "_").replace(" ", "_")


def normalise_value(value: Any) -> str:
    """Canonical string form for a structured signal value."""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().lower()


# ═══════════════════════════════════════════════════════════════
#  EXCEPTIONS
# ═══════════════════════════════════════════════════════════════


class KnowledgeBaseError(Exception):
    """Raised when a runbook entry cannot be admitted to the knowledge base."""

    def __init__(self, entry_id: str, reason: str) -> None:
        self.entry_id = entry_id
        self.reason = reason
        super().__init__(f"Runbook entry '{entry_id}' rejected: {reason}")
