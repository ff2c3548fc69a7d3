"""Shared FastAPI dependencies — the runtime singleton and accessors."""

from __future__ import annotations

from typing import Optional

from audit_store.repository import AuditRepository
from engine.engine import RemediationEngine
from engine.target_context import CommandRunner
from integration.config_manager import ConfigManager, SystemConfig
from integration.pipeline import RemediationRuntime
from knowledge_base.store import KnowledgeBaseStore

# Module-level singleton (initialised at startup)
_runtime: Optional[RemediationRuntime] = None


def init_dependencies(
    config: Optional[SystemConfig] = None,
    *,
    runner: Optional[CommandRunner] = None,
    store: Optional[KnowledgeBaseStore] = None,
) -> RemediationRuntime:
    """Initialise the shared runtime.  Called once during app startup."""
    global _runtime  # noqa: PLW0603
    _runtime = RemediationRuntime(
        config or ConfigManager.load(),
        runner=runner,
        store=store,
    )
    return _runtime


def is_initialised() -> bool:
    return _runtime is not None


async def shutdown_dependencies(timeout: float = 10.0) -> None:
    """Cancel live sessions and release the audit database."""
    global _runtime  # noqa: PLW0603
    if _runtime is None:
        return
    runtime, _runtime = _runtime, None
    await runtime.engine.shutdown(timeout=timeout)
    runtime.close()


def get_runtime() -> RemediationRuntime:
    """Return the shared :class:`RemediationRuntime`."""
    if _runtime is None:
        return init_dependencies()
    return _runtime


def get_engine() -> RemediationEngine:
    """Return the shared :class:`RemediationEngine`."""
    return get_runtime().engine


def get_repository() -> Optional[AuditRepository]:
    """Return the audit repository, or ``None`` when archiving is disabled."""
    return get_runtime().repository
