"""Per-target-resource mutexes shared by all sessions."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional, Tuple

from .config import EngineConfig
from .metrics_collector import MetricsCollector
from .schema import ConcurrencyConflictError
from .telemetry import get_logger

_logger = get_logger(__name__)

ResourceKey = Tuple[str, str]

#: Called with the running conflict count after every timed-out try. It
#: may raise to abandon the wait (a cancel or TTL checkpoint).
ConflictHook = Callable[[int], None]


class ResourceLockManager:
    """Serialise probes/actions that touch the same target resource.

    Locks are keyed by ``(context name, resource identity)`` so that the
    same Deployment name in two different clusters never contends.
    Acquisition waits up to ``lock_acquire_timeout`` per try. A busy
    resource is never an error for :meth:`wait_acquire` and :meth:`hold`:
    the caller stays queued, and each timed-out try is counted as a
    conflict and handed to the caller's ``on_conflict`` hook, which is
    where a session applies its cancel and TTL checks. Once the conflicts
    for one wait reach ``lock_conflict_warning`` the wait is logged at
    WARNING.
    """

    def __init__(self, config: EngineConfig, metrics: Optional[MetricsCollector] = None) -> None:
        self.acquire_timeout = config.lock_acquire_timeout
        self.metrics = metrics
        self.conflict_warning = config.lock_conflict_warning
        self._locks: Dict[ResourceKey, asyncio.Lock] = {}
        self._conflicts: Dict[ResourceKey, int] = defaultdict(int)

    def _lock_for(self, key: ResourceKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def acquire(self, context_name: str, resource: str) -> asyncio.Lock:
        """Try once to take the lock for *resource*.

        Raises:
            ConcurrencyConflictError: If the lock stays busy for
                ``acquire_timeout`` seconds.
        """
        key = (context_name, resource)
        lock = self._lock_for(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.acquire_timeout)
        except asyncio.TimeoutError as exc:
            self._conflicts[key] += 1
            if self.metrics is not None:
                self.metrics.record_lock_conflict()
            raise ConcurrencyConflictError(f"{context_name}/{resource}", self.acquire_timeout) from exc
        return lock

    async def wait_acquire(
        self,
        context_name: str,
        resource: Optional[str],
        *,
        session_id: str = "",
        on_conflict: Optional[ConflictHook] = None,
    ) -> Optional[asyncio.Lock]:
        """Wait, however long it takes, for the lock on *resource*.

        Returns the held lock (the caller releases it), or ``None`` when
        *resource* is ``None`` and there is nothing to lock. Whatever
        *on_conflict* raises aborts the wait and propagates.
        """
        if resource is None:
            return None

        conflicts = 0
        while True:
            try:
                return await self.acquire(context_name, resource)
            except ConcurrencyConflictError:
                conflicts += 1
            log = _logger.warning if conflicts >= self.conflict_warning else _logger.info
            log(
                f"Resource busy, still queued (conflict {conflicts})",
                extra={"session_id": session_id, "resource": f"{context_name}/{resource}"},
            )
            if on_conflict is not None:
                on_conflict(conflicts)

    @asynccontextmanager
    async def hold(
        self,
        context_name: str,
        resource: Optional[str],
        *,
        session_id: str = "",
        on_conflict: Optional[ConflictHook] = None,
    ) -> AsyncIterator[None]:
        """Hold the lock for *resource* for the duration of the block.

        ``None`` means the caller touches no identifiable resource and
        runs unlocked. See :meth:`wait_acquire` for how contention is
        waited out.
        """
        lock = await self.wait_acquire(
            context_name, resource, session_id=session_id, on_conflict=on_conflict,
        )
        try:
            yield
        finally:
            if lock is not None:
                lock.release()

    def is_locked(self, context_name: str, resource: str) -> bool:
        """Return ``True`` if *resource* is currently held."""
        lock = self._locks.get((context_name, resource))
        return lock is not None and lock.locked()

    def get_conflict_stats(self) -> Dict[str, int]:
        """Return mapping of ``context/resource`` → conflict count."""
        return {f"{ctx}/{res}": n for (ctx, res), n in self._conflicts.items()}
