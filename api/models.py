"""API-specific Pydantic v2 request / response models."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class TargetContextRequest(BaseModel):
    """Cluster target for one session."""
    model_config = ConfigDict(frozen=True)

    name: str = "default"
    kube_context: Optional[str] = None
    namespace: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)


class StartSessionRequest(BaseModel):
    """POST /api/v1/sessions request body."""
    model_config = ConfigDict(frozen=True)

    symptoms: List[str] = Field(default_factory=list, description="Free-form symptom tags.")
    signals: Dict[str, Any] = Field(default_factory=dict, description="Structured signal fields.")
    incident_id: Optional[str] = Field(default=None, description="Incident key; one live session per incident.")
    context: Optional[TargetContextRequest] = None


class ApproveRequest(BaseModel):
    """POST /api/v1/sessions/{id}/approve request body."""
    model_config = ConfigDict(frozen=True)

    action_id: str = Field(..., min_length=1)
    actor: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    """POST /api/v1/sessions/{id}/cancel request body."""
    model_config = ConfigDict(frozen=True)

    actor: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------

class SessionCreatedResponse(BaseModel):
    """POST /api/v1/sessions response."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    incident_id: str
    status: str


class SessionSummary(BaseModel):
    """One row of GET /api/v1/sessions."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    incident_id: str
    status: str
    outcome: Optional[str] = None
    context_name: str = ""
    active_entry_id: Optional[str] = None
    pending_action: Optional[str] = None


class SessionListResponse(BaseModel):
    """GET /api/v1/sessions response."""
    model_config = ConfigDict(frozen=True)

    sessions: List[SessionSummary]
    total: int


class ArchivedSessionListResponse(BaseModel):
    """GET /api/v1/sessions/archived response."""
    model_config = ConfigDict(frozen=True)

    sessions: List[Dict[str, Any]]
    total: int
    outcome_counts: Dict[str, int] = Field(default_factory=dict)


class AuditTrailResponse(BaseModel):
    """GET /api/v1/sessions/{id}/audit response."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    source: str
    audit: List[Dict[str, Any]]
    actions: List[Dict[str, Any]] = Field(default_factory=list)


class AcceptedResponse(BaseModel):
    """Acknowledgement for approve / cancel requests."""
    model_config = ConfigDict(frozen=True)

    session_id: str
    accepted: bool = True
    detail: str = ""


class HealthResponse(BaseModel):
    """GET /api/v1/health response."""
    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    uptime: float
    knowledge_base_entries: int
    rejected_entries: int
    active_sessions: int
    database: str
