"""Tests for engine.timeout_manager and engine.resource_lock."""

from __future__ import annotations

import asyncio

import pytest

from engine.config import EngineConfig
from engine.metrics_collector import MetricsCollector
from engine.resource_lock import ResourceLockManager
from engine.session import SessionInterrupted
from engine.schema import SessionStatus
from engine.target_context import ScriptedCommandRunner, TargetContext
from engine.timeout_manager import TimeoutManager

PROD = TargetContext(name="prod")
STAGING = TargetContext(name="staging")


@pytest.fixture
def metrics() -> MetricsCollector:
    return MetricsCollector(EngineConfig(enable_prometheus_metrics=False))


@pytest.fixture
def tm(metrics: MetricsCollector) -> TimeoutManager:
    return TimeoutManager(metrics=metrics)


@pytest.fixture
def runner() -> ScriptedCommandRunner:
    return ScriptedCommandRunner(rules=[
        {"match": "fast", "responses": [{"stdout": "ok"}]},
        {"match": "slow", "responses": [{"delay": 5}]},
    ])


class TestTimeoutManager:
    @pytest.mark.asyncio
    async def test_result_within_timeout(self, tm: TimeoutManager, runner: ScriptedCommandRunner) -> None:
        result = await tm.run(runner, "fast check", PROD, 1.0, kind="probe", command_id="p")
        assert result.stdout == "ok"
        assert tm.violations() == []

    @pytest.mark.asyncio
    async def test_violation_recorded_per_kind_and_context(
        self, tm: TimeoutManager, runner: ScriptedCommandRunner, metrics: MetricsCollector,
    ) -> None:
        with pytest.raises(asyncio.TimeoutError):
            await tm.run(runner, "slow check", PROD, 0.02, kind="probe", command_id="pod-events", session_id="s1")
        with pytest.raises(asyncio.TimeoutError):
            await tm.run(runner, "slow restart", STAGING, 0.02, kind="action", command_id="restart", session_id="s2")

        assert tm.get_timeout_stats() == {"probe:pod-events": 1, "action:restart": 1}
        assert tm.context_stats() == {"prod": 1, "staging": 1}
        (violation,) = tm.violations(session_id="s2")
        assert (violation.kind, violation.command_id, violation.context_name, violation.limit) == (
            "action", "restart", "staging", 0.02,
        )
        assert [v.command_id for v in tm.violations(kind="probe")] == ["pod-events"]
        assert tm.violations(context_name="dev") == []
        summary = metrics.get_summary()
        assert (summary["probe_timeouts"], summary["action_timeouts"]) == (1, 1)

    @pytest.mark.asyncio
    async def test_history_is_bounded(self, runner: ScriptedCommandRunner) -> None:
        tm = TimeoutManager(history=2)
        for n in range(3):
            with pytest.raises(asyncio.TimeoutError):
                await tm.run(runner, "slow check", PROD, 0.01, kind="probe", command_id=f"p{n}")
        assert [v.command_id for v in tm.violations()] == ["p1", "p2"]
        assert tm.get_timeout_stats()["probe:p0"] == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("timeout, kind", [(0, "probe"), (-1, "action"), (1.0, "hook")])
    async def test_rejects_bad_arguments(self, tm: TimeoutManager, runner: ScriptedCommandRunner, timeout, kind) -> None:
        with pytest.raises(ValueError):
            await tm.run(runner, "fast check", PROD, timeout, kind=kind, command_id="p")
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_reset_stats(self, tm: TimeoutManager, runner: ScriptedCommandRunner) -> None:
        with pytest.raises(asyncio.TimeoutError):
            await tm.run(runner, "slow check", PROD, 0.01, kind="probe", command_id="p")
        tm.reset_stats()
        assert tm.get_timeout_stats() == {}
        assert tm.violations() == []


def _locks(**overrides) -> ResourceLockManager:
    values = dict(lock_acquire_timeout=0.02, lock_conflict_warning=2, enable_prometheus_metrics=False)
    values.update(overrides)
    config = EngineConfig(**values)
    return ResourceLockManager(config, metrics=MetricsCollector(config))


class TestResourceLock:
    @pytest.mark.asyncio
    async def test_hold_and_release(self) -> None:
        locks = _locks()
        async with locks.hold("prod", "deployment/api"):
            assert locks.is_locked("prod", "deployment/api")
        assert not locks.is_locked("prod", "deployment/api")

    @pytest.mark.asyncio
    async def test_none_resource_runs_unlocked(self) -> None:
        locks = _locks()
        async with locks.hold("prod", None):
            assert locks.get_conflict_stats() == {}

    @pytest.mark.asyncio
    async def test_contexts_do_not_contend(self) -> None:
        locks = _locks()
        async with locks.hold("cluster-a", "deployment/api"):
            async with locks.hold("cluster-b", "deployment/api"):
                assert locks.is_locked("cluster-a", "deployment/api")
                assert locks.is_locked("cluster-b", "deployment/api")

    @pytest.mark.asyncio
    async def test_busy_resource_is_waited_out(self) -> None:
        locks = _locks()
        seen = []

        async def holder() -> None:
            async with locks.hold("prod", "deployment/api"):
                await asyncio.sleep(0.15)

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)
        async with locks.hold("prod", "deployment/api", session_id="other", on_conflict=seen.append):
            assert locks.is_locked("prod", "deployment/api")
        await task

        conflicts = locks.get_conflict_stats()["prod/deployment/api"]
        assert conflicts >= 3
        assert seen == list(range(1, conflicts + 1))
        assert locks.metrics.get_summary()["lock_conflicts"] == conflicts
        assert not locks.is_locked("prod", "deployment/api")

    @pytest.mark.asyncio
    async def test_conflict_hook_can_abandon_wait(self) -> None:
        locks = _locks()

        def cancelled(conflicts: int) -> None:
            if conflicts == 2:
                raise SessionInterrupted(SessionStatus.CANCELLED, "bob", "cancelled by operator")

        async with locks.hold("prod", "deployment/api"):
            with pytest.raises(SessionInterrupted):
                await locks.wait_acquire("prod", "deployment/api", on_conflict=cancelled)
        assert locks.get_conflict_stats() == {"prod/deployment/api": 2}
        assert not locks.is_locked("prod", "deployment/api")

    @pytest.mark.asyncio
    async def test_wait_acquire_without_resource(self) -> None:
        assert await _locks().wait_acquire("prod", None) is None

    @pytest.mark.asyncio
    async def test_waiter_gets_lock_after_release(self) -> None:
        locks = _locks(lock_acquire_timeout=0.5)
        order = []

        async def worker(name: str, hold_for: float) -> None:
            async with locks.hold("prod", "node/n1"):
                order.append(f"{name}-in")
                await asyncio.sleep(hold_for)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a", 0.02), worker("b", 0.0))
        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_released_on_error(self) -> None:
        locks = _locks()
        with pytest.raises(RuntimeError):
            async with locks.hold("prod", "deployment/api"):
                raise RuntimeError("boom")
        assert not locks.is_locked("prod", "deployment/api")
