"""Session control endpoints — start, inspect, approve, cancel."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from audit_store.repository import AuditRepository
from engine.engine import RemediationEngine
from engine.schema import ApprovalError, SessionNotFoundError, SessionSnapshot
from engine.target_context import TargetContext

from ..dependencies import get_engine, get_repository
from ..models import (
    AcceptedResponse,
    ApproveRequest,
    ArchivedSessionListResponse,
    AuditTrailResponse,
    CancelRequest,
    SessionCreatedResponse,
    SessionListResponse,
    SessionSummary,
    StartSessionRequest,
)

router = APIRouter(tags=["sessions"])


def _summary(snapshot: SessionSnapshot) -> SessionSummary:
    return SessionSummary(
        session_id=snapshot.session_id,
        incident_id=snapshot.incident_id,
        status=snapshot.status.value,
        outcome=snapshot.outcome.value if snapshot.outcome else None,
        context_name=snapshot.context_name,
        active_entry_id=snapshot.active_entry_id,
        pending_action=snapshot.pending_approval.action_id if snapshot.pending_approval else None,
    )


@router.post(
    "",
    response_model=SessionCreatedResponse,
    status_code=201,
    summary="Start a diagnosis session",
)
async def start_session(
    body: StartSessionRequest,
    engine: RemediationEngine = Depends(get_engine),
) -> SessionCreatedResponse:
    """Open a session for the observed symptoms.

    An incident that already has a live session gets that session back.
    """
    observation = {tag: True for tag in body.symptoms}
    observation.update(body.signals)
    context = None
    if body.context is not None:
        base = engine.default_context
        context = TargetContext(
            name=body.context.name,
            kube_context=body.context.kube_context or base.kube_context,
            namespace=body.context.namespace or base.namespace,
            variables={**base.variables, **body.context.variables},
            env=dict(base.env),
        )
    session_id = await engine.start_session(observation, incident_id=body.incident_id, context=context)
    snapshot = await engine.get_status(session_id)
    return SessionCreatedResponse(
        session_id=session_id,
        incident_id=snapshot.incident_id,
        status=snapshot.status.value,
    )


@router.get(
    "",
    response_model=SessionListResponse,
    summary="List sessions known to this engine",
)
def list_sessions(
    outcome: Optional[str] = Query(None, description="Filter by outcome"),
    engine: RemediationEngine = Depends(get_engine),
) -> SessionListResponse:
    """List live and finished sessions held in memory."""
    sessions = [_summary(s) for s in engine.list_sessions()]
    if outcome:
        sessions = [s for s in sessions if s.outcome == outcome]
    return SessionListResponse(sessions=sessions, total=len(sessions))


@router.get(
    "/archived",
    response_model=ArchivedSessionListResponse,
    summary="List archived sessions",
)
def list_archived(
    outcome: Optional[str] = Query(None, description="Filter by outcome"),
    limit: int = Query(50, ge=1, le=1000, description="Max results"),
    repo: Optional[AuditRepository] = Depends(get_repository),
) -> ArchivedSessionListResponse:
    """Query the audit store, newest first."""
    if repo is None:
        raise HTTPException(status_code=503, detail="Audit store disabled")
    sessions = repo.list_sessions(outcome=outcome, limit=limit)
    for s in sessions:
        for key in ("started_at", "finished_at", "archived_at"):
            val = s.get(key)
            if val is not None and hasattr(val, "isoformat"):
                s[key] = val.isoformat()
    return ArchivedSessionListResponse(
        sessions=sessions,
        total=len(sessions),
        outcome_counts=repo.outcome_counts(),
    )


@router.get(
    "/{session_id}",
    response_model=SessionSnapshot,
    summary="Get a session snapshot",
)
async def get_session(
    session_id: str,
    engine: RemediationEngine = Depends(get_engine),
) -> SessionSnapshot:
    """Full snapshot: hypotheses, evidence, action and audit logs."""
    try:
        return await engine.get_status(session_id)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get(
    "/{session_id}/audit",
    response_model=AuditTrailResponse,
    summary="Get a session's audit trail",
)
async def get_audit_trail(
    session_id: str,
    engine: RemediationEngine = Depends(get_engine),
    repo: Optional[AuditRepository] = Depends(get_repository),
) -> AuditTrailResponse:
    """Audit and action logs, from memory or else from the audit store."""
    try:
        snapshot = await engine.get_status(session_id)
    except SessionNotFoundError:
        snapshot = None
    if snapshot is not None:
        return AuditTrailResponse(
            session_id=session_id,
            source="engine",
            audit=[a.model_dump(mode="json") for a in snapshot.audit],
            actions=[a.model_dump(mode="json") for a in snapshot.actions],
        )
    if repo is None or repo.get_session(session_id) is None:
        raise HTTPException(status_code=404, detail=f"Unknown session '{session_id}'")
    audit = repo.get_audit_trail(session_id)
    actions = repo.get_actions(session_id)
    for row in audit + actions:
        val = row.get("timestamp")
        if val is not None and hasattr(val, "isoformat"):
            row["timestamp"] = val.isoformat()
    return AuditTrailResponse(session_id=session_id, source="archive", audit=audit, actions=actions)


@router.post(
    "/{session_id}/approve",
    response_model=AcceptedResponse,
    status_code=202,
    summary="Approve the action awaiting approval",
)
async def approve_action(
    session_id: str,
    body: ApproveRequest,
    engine: RemediationEngine = Depends(get_engine),
) -> AcceptedResponse:
    """Queue an operator approval for the pending action."""
    try:
        await engine.approve_action(session_id, body.action_id, actor=body.actor)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ApprovalError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return AcceptedResponse(session_id=session_id, detail=f"{body.action_id} approved by {body.actor}")


@router.post(
    "/{session_id}/cancel",
    response_model=AcceptedResponse,
    status_code=202,
    summary="Cancel a session",
)
async def cancel_session(
    session_id: str,
    body: CancelRequest,
    engine: RemediationEngine = Depends(get_engine),
) -> AcceptedResponse:
    """Ask the session to stop at its next checkpoint.

    Cancelling a finished session is accepted and does nothing.
    """
    try:
        await engine.cancel(session_id, actor=body.actor)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return AcceptedResponse(session_id=session_id, detail=f"cancel requested by {body.actor}")
