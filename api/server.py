"""FastAPI application — initialisation, middleware, lifecycle events."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from engine.schema import EngineError
from integration.logger import get_logger

from .dependencies import init_dependencies, is_initialised, shutdown_dependencies
from .routes import health, sessions


# ------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup: build the runtime unless already built.  Shutdown: cancel
    live sessions and close the audit database."""
    if not is_initialised():
        init_dependencies()
    yield
    await shutdown_dependencies()


# ------------------------------------------------------------------
# Application
# ------------------------------------------------------------------

app = FastAPI(
    title="Runbook Remediation Engine API",
    version="1.0.0",
    description="Start, observe, approve and cancel incident diagnosis sessions.",
    lifespan=_lifespan,
)


# ------------------------------------------------------------------
# Middleware
# ------------------------------------------------------------------

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_logger = get_logger("api")


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Log every request with method, path, status, and duration."""
    start = time.monotonic()
    try:
        response = await call_next(request)
    except Exception:
        _logger.exception("unhandled_error", method=request.method, path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )
    _logger.info(
        "request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        duration_ms=round((time.monotonic() - start) * 1000, 2),
    )
    return response


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    """Map uncaught engine errors to 400 responses."""
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# ------------------------------------------------------------------
# Routers
# ------------------------------------------------------------------

app.include_router(sessions.router, prefix="/api/v1/sessions")
app.include_router(health.router, prefix="/api/v1")
