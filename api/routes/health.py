"""Health-check and Prometheus metrics endpoints."""

from __future__ import annotations

import time

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST

from integration.pipeline import RemediationRuntime

from ..dependencies import get_runtime
from ..models import HealthResponse

router = APIRouter(tags=["health"])

_start_time = time.monotonic()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
def health(runtime: RemediationRuntime = Depends(get_runtime)) -> HealthResponse:
    """Return knowledge-base, session and database status."""
    if runtime.db is None:
        db_status = "disabled"
    else:
        db_status = "connected" if runtime.db.ping() else "disconnected"

    degraded = db_status == "disconnected" or len(runtime.store) == 0
    return HealthResponse(
        status="degraded" if degraded else "healthy",
        version=runtime.config.system.version,
        uptime=round(time.monotonic() - _start_time, 2),
        knowledge_base_entries=len(runtime.store),
        rejected_entries=len(runtime.store.rejected),
        active_sessions=runtime.engine.tracker.active_count(),
        database=db_status,
    )


@router.get(
    "/metrics",
    response_class=PlainTextResponse,
    summary="Prometheus metrics",
)
def prometheus_metrics(runtime: RemediationRuntime = Depends(get_runtime)) -> PlainTextResponse:
    """Export engine metrics in text exposition format."""
    return PlainTextResponse(runtime.engine.export_metrics(), media_type=CONTENT_TYPE_LATEST)
