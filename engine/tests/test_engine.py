"""End-to-end session tests for engine.engine.RemediationEngine."""

from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from audit_store import AuditRepository, AuditStoreConfig, DatabaseConnection
from engine import (
    ApprovalError,
    RemediationEngine,
    ScriptedCommandRunner,
    SessionNotFoundError,
    SessionOutcome,
    SessionSnapshot,
    SessionStatus,
    TargetContext,
)
from engine.config import EngineConfig
from engine.schema import ActionEvent, EvidencePurpose
from engine.target_context import CommandResult
from knowledge_base.schema import RunbookEntry
from knowledge_base.store import KnowledgeBaseStore

S = SessionStatus
LATENCY = {"high_latency": True, "service": "backend-service"}
CRASHLOOP = {"crashloop_backoff": True, "reason": "OOMKilled", "service": "api"}


def _statuses(snapshot: SessionSnapshot) -> List[SessionStatus]:
    return [record.to_status for record in snapshot.audit]


def _events(snapshot: SessionSnapshot) -> List[tuple]:
    return [(record.action_id, record.event) for record in snapshot.actions]


async def _wait_status(engine: RemediationEngine, session_id: str, status: SessionStatus, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while (await engine.get_status(session_id)).status != status:
        assert loop.time() < deadline, f"session never reached {status.value}"
        await asyncio.sleep(0.005)


def _oom_runner(delay: float = 0.0) -> ScriptedCommandRunner:
    """OOMKilled during diagnosis, healthy after the fix."""
    return ScriptedCommandRunner(rules=[
        {"match": "describe pods", "responses": [{"stdout": "Reason: OOMKilled"}, {"stdout": "Status: Running"}]},
        {"match": "set resources", "responses": [{"stdout": "deployment.apps updated", "delay": delay}]},
        {"match": "trace-query", "responses": [{"stdout": '{"slowest_span": "network"}'}]},
        {"match": "latency-check", "responses": [{"stdout": '{"p90_ms": 120}'}]},
        {"match": "rollout-age", "responses": [{"stdout": '{"minutes": 600}'}]},
    ])


class BrokenContextRunner:
    """Scripted runner that raises for one named context."""

    def __init__(self, inner: ScriptedCommandRunner, broken: str) -> None:
        self.inner = inner
        self.broken = broken

    async def run(self, command: str, context: TargetContext, timeout: Optional[float] = None) -> CommandResult:
        if context.name == self.broken:
            raise RuntimeError("kube api unreachable")
        return await self.inner.run(command, context, timeout)


class LaunchFailingRunner:
    """Scripted runner whose commands matching *pattern* cannot be launched."""

    def __init__(self, inner: ScriptedCommandRunner, pattern: str) -> None:
        self.inner = inner
        self.pattern = pattern

    async def run(self, command: str, context: TargetContext, timeout: Optional[float] = None) -> CommandResult:
        if self.pattern in command:
            raise FileNotFoundError(2, "No such file or directory", "kubectl")
        return await self.inner.run(command, context, timeout)


class ForgetfulStore(KnowledgeBaseStore):
    """Store that ranks entries it can no longer hand out."""

    def get(self, entry_id: str) -> Optional[RunbookEntry]:
        return None


class RecordingArchive:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.snapshots: List[SessionSnapshot] = []
        self.loads: List[str] = []

    def archive_session(self, snapshot: SessionSnapshot) -> None:
        if self.fail:
            raise OSError("disk full")
        self.snapshots.append(snapshot)

    def load_snapshot(self, session_id: str) -> Optional[SessionSnapshot]:
        self.loads.append(session_id)
        return next((s for s in self.snapshots if s.session_id == session_id), None)


class TestLatencyScenario:
    @pytest.mark.asyncio
    async def test_failed_verification_rolls_back_and_escalates(self, store, scenario_runner, config) -> None:
        engine = RemediationEngine(store, runner=scenario_runner, config=config)
        session_id = await engine.start_session(LATENCY, context=TargetContext(name="prod"))

        pending = await engine.wait_for_approval(session_id, timeout=5)
        assert pending is not None
        assert pending.action_id == "scale-database-replicas"
        assert pending.command == "kubectl scale statefulset/postgres --replicas=3"
        assert "kubectl scale statefulset/postgres --replicas=3" not in scenario_runner.commands()

        await engine.approve_action(session_id, "scale-database-replicas", actor="alice")
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.ESCALATED
        assert snapshot.status == S.CLOSED
        assert snapshot.active_entry_id == "high-latency"
        assert _events(snapshot) == [
            ("scale-database-replicas", ActionEvent.PROPOSED),
            ("scale-database-replicas", ActionEvent.APPROVED),
            ("scale-database-replicas", ActionEvent.EXECUTED),
            ("scale-database-replicas", ActionEvent.VERIFICATION_FAILED),
            ("revert-replica-count", ActionEvent.ROLLBACK_STARTED),
            ("revert-replica-count", ActionEvent.ROLLED_BACK),
        ]
        assert snapshot.actions[1].actor == "alice"

        statuses = _statuses(snapshot)
        assert statuses == [
            S.DIAGNOSING, S.HYPOTHESIS_CONFIRMED, S.REMEDIATION_PROPOSED, S.REMEDIATION_APPROVED,
            S.EXECUTING, S.VERIFYING, S.FAILED, S.ROLLING_BACK, S.ROLLED_BACK, S.ESCALATED, S.CLOSED,
        ]
        approved = snapshot.audit[statuses.index(S.REMEDIATION_APPROVED)]
        assert approved.actor == "alice"

        verification = [e for e in snapshot.evidence if e.purpose == EvidencePurpose.VERIFICATION]
        assert len(verification) == config.verification_attempts
        assert {e.probe_id for e in verification} == {"latency-check"}
        assert snapshot.report is not None
        assert "rolled back" in snapshot.report.reason
        assert scenario_runner.commands("prod")[-1] == "kubectl scale statefulset/postgres --replicas=1"

    @pytest.mark.asyncio
    async def test_confirmed_hypothesis_meets_threshold(self, store, scenario_runner, config) -> None:
        engine = RemediationEngine(store, runner=scenario_runner, config=config)
        session_id = await engine.start_session(LATENCY)
        await engine.wait_for_approval(session_id, timeout=5)
        snapshot = await engine.get_status(session_id)
        beliefs = {h.cause_id: h for h in snapshot.hypotheses}
        assert beliefs["database-bottleneck"].status.value == "confirmed"
        assert beliefs["database-bottleneck"].belief >= config.confirmation_threshold
        await engine.cancel(session_id, actor="test")
        await engine.wait_for(session_id, timeout=5)

    @pytest.mark.asyncio
    async def test_evidence_recorded_before_confirmation(self, store, scenario_runner, config) -> None:
        engine = RemediationEngine(store, runner=scenario_runner, config=config)
        session_id = await engine.start_session(LATENCY)
        await engine.wait_for_approval(session_id, timeout=5)
        await engine.cancel(session_id, actor="test")
        snapshot = await engine.wait_for(session_id, timeout=5)
        confirmed = next(r for r in snapshot.audit if r.to_status == S.HYPOTHESIS_CONFIRMED)
        assert confirmed.evidence_after
        trace = [e for e in snapshot.evidence if e.probe_id == "trace-query"]
        assert trace and trace[0].evidence_id in confirmed.evidence_after


class TestResolution:
    @pytest.mark.asyncio
    async def test_safe_action_auto_approved_and_verified(self, store, config) -> None:
        runner = _oom_runner()
        engine = RemediationEngine(store, runner=runner, config=config)
        session_id = await engine.start_session(CRASHLOOP)
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.RESOLVED
        assert _events(snapshot) == [
            ("raise-memory-limit", ActionEvent.PROPOSED),
            ("raise-memory-limit", ActionEvent.APPROVED),
            ("raise-memory-limit", ActionEvent.EXECUTED),
            ("raise-memory-limit", ActionEvent.VERIFIED),
        ]
        assert snapshot.actions[1].actor == "automated"
        assert "kubectl set resources deployment/api --limits=memory=1Gi" in runner.commands()
        assert snapshot.report is None

    @pytest.mark.asyncio
    async def test_navigates_to_related_entry(self, store, config) -> None:
        runner = _oom_runner()
        engine = RemediationEngine(store, runner=runner, config=config)
        session_id = await engine.start_session(LATENCY)
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.visited_entries == ["high-latency", "pod-crashloop"]
        assert snapshot.active_entry_id == "pod-crashloop"
        assert snapshot.outcome == SessionOutcome.RESOLVED
        refuted = {h.cause_id for h in snapshot.hypotheses if h.status.value == "refuted"}
        assert refuted == {"database-bottleneck", "application-regression"}
        assert "kubectl describe pods -l app=backend-service" in runner.commands()


class TestEscalation:
    @pytest.mark.asyncio
    async def test_cycle_exhaustion_escalates_with_report(self, store, config) -> None:
        runner = ScriptedCommandRunner(rules=[
            {"match": "describe pods", "responses": [{"stdout": "Status: Running"}]},
            {"match": "trace-query", "responses": [{"stdout": '{"slowest_span": "network"}'}]},
            {"match": "latency-check", "responses": [{"stdout": '{"p90_ms": 120}'}]},
            {"match": "rollout-age", "responses": [{"stdout": '{"minutes": 600}'}]},
        ])
        engine = RemediationEngine(store, runner=runner, config=config)
        session_id = await engine.start_session(LATENCY)
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.ESCALATED
        assert snapshot.visited_entries == ["high-latency", "pod-crashloop"]
        assert snapshot.report is not None
        assert snapshot.report.reason == "all causes refuted and no unvisited related runbook entry remains"
        assert snapshot.report.visited_entries == ["high-latency", "pod-crashloop"]
        assert len(snapshot.report.evidence) == len(snapshot.evidence)
        assert snapshot.actions == []

    @pytest.mark.asyncio
    async def test_inconclusive_probes_escalate(self, make_store, crashloop_entry, config) -> None:
        crashloop_entry["related"] = []
        store = make_store([crashloop_entry])
        runner = ScriptedCommandRunner(default={"exit_code": 1, "stderr": "forbidden"})
        engine = RemediationEngine(store, runner=runner, config=config)
        session_id = await engine.start_session(CRASHLOOP)
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.ESCALATED
        assert "inconclusive" in snapshot.report.reason
        assert snapshot.evidence[0].outcome.value == "inconclusive"
        assert snapshot.evidence[0].payload["error_type"] == "NON_ZERO_EXIT"

    @pytest.mark.asyncio
    async def test_unmatched_symptoms_escalate_immediately(self, store, config) -> None:
        runner = ScriptedCommandRunner()
        engine = RemediationEngine(store, runner=runner, config=config)
        for symptoms in ({}, {"disk_full": True}):
            session_id = await engine.start_session(symptoms)
            snapshot = await engine.wait_for(session_id, timeout=5)
            assert snapshot.outcome == SessionOutcome.ESCALATED
            assert snapshot.report.reason == "no runbook entry matches the observed symptoms"
            assert _statuses(snapshot) == [S.DIAGNOSING, S.ESCALATED, S.CLOSED]
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_ttl_expiry_escalates(self, store, scenario_runner, make_config) -> None:
        engine = RemediationEngine(store, runner=scenario_runner, config=make_config(session_ttl=0.3))
        session_id = await engine.start_session(LATENCY)
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.ESCALATED
        assert snapshot.report.reason == "session TTL exceeded"
        assert snapshot.pending_approval is None
        assert ActionEvent.EXECUTED not in [a.event for a in snapshot.actions]

    @pytest.mark.asyncio
    async def test_rollback_failure_ends_failed(self, store, config) -> None:
        runner = ScriptedCommandRunner(rules=[
            {"match": "trace-query", "responses": [{"stdout": '{"slowest_span": "database"}'}]},
            {"match": "rollout-age", "responses": [{"stdout": '{"minutes": 600}'}]},
            {"match": "--replicas=3", "responses": [{"exit_code": 1, "stderr": "quota exceeded"}]},
            {"match": "--replicas=1", "responses": [{"exit_code": 1, "stderr": "apiserver timeout"}]},
        ])
        engine = RemediationEngine(store, runner=runner, config=config)
        session_id = await engine.start_session(LATENCY)
        await engine.wait_for_approval(session_id, timeout=5)
        await engine.approve_action(session_id, "scale-database-replicas", actor="alice")
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.FAILED
        assert [a.event for a in snapshot.actions][-3:] == [
            ActionEvent.EXECUTION_FAILED, ActionEvent.ROLLBACK_STARTED, ActionEvent.ROLLBACK_FAILED,
        ]
        assert _statuses(snapshot)[-3:] == [S.ROLLING_BACK, S.FAILED, S.CLOSED]
        assert "apiserver timeout" in snapshot.report.reason


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_while_awaiting_approval(self, store, scenario_runner, config) -> None:
        engine = RemediationEngine(store, runner=scenario_runner, config=config)
        session_id = await engine.start_session(LATENCY)
        assert await engine.wait_for_approval(session_id, timeout=5) is not None

        await engine.cancel(session_id, actor="bob")
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.CANCELLED
        cancelled = snapshot.audit[-2]
        assert cancelled.to_status == S.CANCELLED
        assert cancelled.actor == "bob"
        assert snapshot.pending_approval is None
        assert ActionEvent.EXECUTED not in [a.event for a in snapshot.actions]

    @pytest.mark.asyncio
    async def test_cancel_during_execution_lets_action_finish(self, store, config) -> None:
        runner = _oom_runner(delay=0.2)
        engine = RemediationEngine(store, runner=runner, config=config)
        session_id = await engine.start_session(CRASHLOOP)
        await _wait_status(engine, session_id, S.EXECUTING)

        await engine.cancel(session_id, actor="bob")
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.CANCELLED
        events = [a.event for a in snapshot.actions]
        assert events[-1] == ActionEvent.EXECUTED
        assert ActionEvent.VERIFIED not in events
        assert _statuses(snapshot)[-3:] == [S.EXECUTING, S.CANCELLED, S.CLOSED]

    @pytest.mark.asyncio
    async def test_cancel_finished_session_is_noop(self, store, config) -> None:
        engine = RemediationEngine(store, runner=_oom_runner(), config=config)
        session_id = await engine.start_session(CRASHLOOP)
        before = await engine.wait_for(session_id, timeout=5)
        await engine.cancel(session_id, actor="bob")
        after = await engine.get_status(session_id)
        assert after.outcome == before.outcome == SessionOutcome.RESOLVED
        assert len(after.audit) == len(before.audit)

    @pytest.mark.asyncio
    async def test_shutdown_cancels_live_sessions(self, store, scenario_runner, config) -> None:
        engine = RemediationEngine(store, runner=scenario_runner, config=config)
        session_id = await engine.start_session(LATENCY)
        await engine.wait_for_approval(session_id, timeout=5)
        await engine.shutdown(timeout=5)
        snapshot = await engine.get_status(session_id)
        assert snapshot.outcome == SessionOutcome.CANCELLED
        assert snapshot.audit[-2].actor == "system"


class TestControlSurface:
    @pytest.mark.asyncio
    async def test_start_is_idempotent_per_incident(self, store, scenario_runner, config) -> None:
        engine = RemediationEngine(store, runner=scenario_runner, config=config)
        first = await engine.start_session(LATENCY, incident_id="INC-1")
        second = await engine.start_session(LATENCY, incident_id="INC-1")
        assert first == second
        assert len(engine.list_sessions()) == 1

        await engine.cancel(first, actor="test")
        await engine.wait_for(first, timeout=5)
        third = await engine.start_session(LATENCY, incident_id="INC-1")
        assert third != first
        await engine.shutdown(timeout=5)

    @pytest.mark.asyncio
    async def test_approval_errors(self, store, scenario_runner, config) -> None:
        engine = RemediationEngine(store, runner=scenario_runner, config=config)
        with pytest.raises(SessionNotFoundError):
            await engine.approve_action("missing", "x", actor="alice")
        with pytest.raises(SessionNotFoundError):
            await engine.get_status("missing")

        session_id = await engine.start_session(LATENCY)
        await engine.wait_for_approval(session_id, timeout=5)
        with pytest.raises(ApprovalError):
            await engine.approve_action(session_id, "undo-rollout", actor="alice")
        with pytest.raises(ApprovalError):
            await engine.approve_action(session_id, "scale-database-replicas", actor="")

        await engine.cancel(session_id, actor="test")
        await engine.wait_for(session_id, timeout=5)
        with pytest.raises(ApprovalError):
            await engine.approve_action(session_id, "scale-database-replicas", actor="alice")

    @pytest.mark.asyncio
    async def test_finished_sessions_are_archived(self, store, config) -> None:
        archive = RecordingArchive()
        engine = RemediationEngine(store, runner=_oom_runner(), config=config, archive=archive)
        session_id = await engine.start_session(CRASHLOOP)
        await engine.wait_for(session_id, timeout=5)
        assert [s.session_id for s in archive.snapshots] == [session_id]
        assert archive.snapshots[0].status == S.CLOSED

    @pytest.mark.asyncio
    async def test_archive_failure_recorded_not_raised(self, store, config) -> None:
        engine = RemediationEngine(store, runner=_oom_runner(), config=config, archive=RecordingArchive(fail=True))
        session_id = await engine.start_session(CRASHLOOP)
        snapshot = await engine.wait_for(session_id, timeout=5)
        assert snapshot.outcome == SessionOutcome.RESOLVED
        assert any("disk full" in e for e in snapshot.errors)

    @pytest.mark.asyncio
    async def test_metrics_exported(self, store, make_config) -> None:
        engine = RemediationEngine(store, runner=_oom_runner(), config=make_config(enable_prometheus_metrics=True))
        session_id = await engine.start_session(CRASHLOOP)
        await engine.wait_for(session_id, timeout=5)
        text = engine.export_metrics()
        assert 'sessions_total{outcome="resolved"} 1.0' in text
        assert "probe_execution_seconds" in text


class TestIsolation:
    @pytest.mark.asyncio
    async def test_internal_error_only_affects_its_session(self, store, config) -> None:
        runner = BrokenContextRunner(_oom_runner(), broken="cluster-b")
        engine = RemediationEngine(store, runner=runner, config=config)
        good = await engine.start_session(CRASHLOOP, context=TargetContext(name="cluster-a"))
        bad = await engine.start_session(CRASHLOOP, context=TargetContext(name="cluster-b"))

        bad_snapshot = await engine.wait_for(bad, timeout=5)
        good_snapshot = await engine.wait_for(good, timeout=5)

        assert bad_snapshot.outcome == SessionOutcome.ESCALATED
        assert bad_snapshot.report.reason.startswith("internal error")
        assert any("kube api unreachable" in e for e in bad_snapshot.errors)
        assert good_snapshot.outcome == SessionOutcome.RESOLVED
        assert good_snapshot.errors == []
        assert engine.error_handler.get_errors(good) == []

    @pytest.mark.asyncio
    async def test_concurrent_sessions_keep_separate_logs(self, store, config) -> None:
        contexts = [f"cluster-{i}" for i in range(6)]
        rules = []
        for name in contexts:
            rules.append({
                "match": "describe pods",
                "context": name,
                "responses": [{"stdout": "Reason: OOMKilled", "delay": 0.01}, {"stdout": "Status: Running"}],
            })
        runner = ScriptedCommandRunner(rules=rules)
        engine = RemediationEngine(store, runner=runner, config=config)

        ids = [
            await engine.start_session(CRASHLOOP, incident_id=f"INC-{name}", context=TargetContext(name=name))
            for name in contexts
        ]
        snapshots = await asyncio.gather(*(engine.wait_for(i, timeout=5) for i in ids))

        for session_id, name, snapshot in zip(ids, contexts, snapshots):
            assert snapshot.outcome == SessionOutcome.RESOLVED
            assert snapshot.context_name == name
            assert [r.sequence for r in snapshot.audit] == list(range(len(snapshot.audit)))
            assert {r.session_id for r in snapshot.audit} == {session_id}
            assert {e.session_id for e in snapshot.evidence} == {session_id}
            assert {a.session_id for a in snapshot.actions} == {session_id}
            assert len(runner.commands(name)) == 3

    @pytest.mark.asyncio
    async def test_same_resource_actions_serialised_across_sessions(self, store, make_config) -> None:
        config: EngineConfig = make_config(lock_acquire_timeout=1.0)
        runner = ScriptedCommandRunner(rules=[
            {"match": "describe pods", "responses": [{"stdout": "Reason: OOMKilled"}]},
            {"match": "set resources", "responses": [{"delay": 0.05}]},
        ])
        engine = RemediationEngine(store, runner=runner, config=config, default_context=TargetContext(name="prod"))
        first = await engine.start_session(CRASHLOOP, incident_id="A")
        second = await engine.start_session(CRASHLOOP, incident_id="B")
        snapshots = await asyncio.gather(engine.wait_for(first, timeout=5), engine.wait_for(second, timeout=5))
        for snapshot in snapshots:
            assert ActionEvent.EXECUTED in [a.event for a in snapshot.actions]
        assert len([c for c in runner.commands("prod") if "set resources" in c]) == 2
        assert not engine.locks.is_locked("prod", "deployment/api")


class TestActionsThatNeverStart:
    @pytest.mark.asyncio
    async def test_unrenderable_action_escalates_without_proposal(self, make_store, crashloop_entry, config) -> None:
        crashloop_entry["related"] = []
        crashloop_entry["causes"][0]["actions"] = [
            {"id": "scale-out", "command_template": "kubectl scale deployment/{service} --replicas={replicas}",
             "risk": "moderate", "rollback_ref": "scale-in"},
            {"id": "scale-in", "command_template": "kubectl scale deployment/{service} --replicas=1",
             "risk": "moderate"},
        ]
        runner = _oom_runner()
        engine = RemediationEngine(make_store([crashloop_entry]), runner=runner, config=config)
        session_id = await engine.start_session(CRASHLOOP)
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.ESCALATED
        assert snapshot.actions == []
        assert "scale-out" in snapshot.report.reason
        assert any("replicas" in e for e in snapshot.errors)
        assert _statuses(snapshot) == [S.DIAGNOSING, S.HYPOTHESIS_CONFIRMED, S.ESCALATED, S.CLOSED]
        assert not any("kubectl scale" in c for c in runner.commands())

    @pytest.mark.asyncio
    async def test_launch_failure_is_not_rolled_back(self, make_store, crashloop_entry, config) -> None:
        crashloop_entry["related"] = []
        actions = crashloop_entry["causes"][0]["actions"]
        actions[0]["rollback_ref"] = "undo-memory-limit"
        actions.append({"id": "undo-memory-limit", "command_template": "kubectl rollout undo deployment/{service}",
                        "risk": "safe", "target": "deployment/{service}"})
        inner = _oom_runner()
        engine = RemediationEngine(
            make_store([crashloop_entry]), runner=LaunchFailingRunner(inner, "set resources"), config=config,
        )
        session_id = await engine.start_session(CRASHLOOP)
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.ESCALATED
        assert _events(snapshot) == [
            ("raise-memory-limit", ActionEvent.PROPOSED),
            ("raise-memory-limit", ActionEvent.APPROVED),
            ("raise-memory-limit", ActionEvent.EXECUTION_FAILED),
        ]
        assert snapshot.actions[-1].detail.startswith("not started")
        assert _statuses(snapshot)[-3:] == [S.EXECUTING, S.ESCALATED, S.CLOSED]
        assert S.ROLLING_BACK not in _statuses(snapshot)
        assert not any("rollout undo" in c for c in inner.commands())
        assert not engine.locks.is_locked("default", "deployment/api")

    @pytest.mark.asyncio
    async def test_started_action_that_fails_is_rolled_back(self, make_store, crashloop_entry, config) -> None:
        crashloop_entry["related"] = []
        actions = crashloop_entry["causes"][0]["actions"]
        actions[0]["rollback_ref"] = "undo-memory-limit"
        actions.append({"id": "undo-memory-limit", "command_template": "kubectl rollout undo deployment/{service}",
                        "risk": "safe"})
        runner = ScriptedCommandRunner(rules=[
            {"match": "describe pods", "responses": [{"stdout": "Reason: OOMKilled"}]},
            {"match": "set resources", "responses": [{"exit_code": 1, "stderr": "forbidden"}]},
        ])
        engine = RemediationEngine(make_store([crashloop_entry]), runner=runner, config=config)
        session_id = await engine.start_session(CRASHLOOP)
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert ("undo-memory-limit", ActionEvent.ROLLED_BACK) in _events(snapshot)
        assert runner.commands()[-1] == "kubectl rollout undo deployment/api"


class TestResourceContention:
    @pytest.mark.asyncio
    async def test_action_waits_for_busy_target(self, store, make_config) -> None:
        runner = _oom_runner()
        engine = RemediationEngine(
            store, runner=runner, config=make_config(lock_acquire_timeout=0.01),
            default_context=TargetContext(name="prod"),
        )
        async with engine.locks.hold("prod", "deployment/api"):
            session_id = await engine.start_session(CRASHLOOP)
            await _wait_status(engine, session_id, S.REMEDIATION_APPROVED)
            await asyncio.sleep(0.1)
            assert (await engine.get_status(session_id)).status == S.REMEDIATION_APPROVED
            assert not any("set resources" in c for c in runner.commands())

        snapshot = await engine.wait_for(session_id, timeout=5)
        assert snapshot.outcome == SessionOutcome.RESOLVED
        events = [a.event for a in snapshot.actions]
        assert ActionEvent.EXECUTED in events
        assert ActionEvent.EXECUTION_FAILED not in events
        assert S.FAILED not in _statuses(snapshot)
        assert engine.locks.get_conflict_stats()["prod/deployment/api"] >= 2

    @pytest.mark.asyncio
    async def test_cancel_while_waiting_for_target(self, store, make_config) -> None:
        runner = _oom_runner()
        engine = RemediationEngine(
            store, runner=runner, config=make_config(lock_acquire_timeout=0.01),
            default_context=TargetContext(name="prod"),
        )
        async with engine.locks.hold("prod", "deployment/api"):
            session_id = await engine.start_session(CRASHLOOP)
            await _wait_status(engine, session_id, S.REMEDIATION_APPROVED)
            await engine.cancel(session_id, actor="bob")
            snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.CANCELLED
        assert _statuses(snapshot)[-3:] == [S.REMEDIATION_APPROVED, S.CANCELLED, S.CLOSED]
        assert ActionEvent.EXECUTED not in [a.event for a in snapshot.actions]
        assert not any("set resources" in c for c in runner.commands())

    @pytest.mark.asyncio
    async def test_ttl_bounds_the_wait(self, store, make_config) -> None:
        engine = RemediationEngine(
            store, runner=_oom_runner(), config=make_config(lock_acquire_timeout=0.01, session_ttl=0.3),
            default_context=TargetContext(name="prod"),
        )
        async with engine.locks.hold("prod", "deployment/api"):
            session_id = await engine.start_session(CRASHLOOP)
            snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.ESCALATED
        assert snapshot.report.reason == "session TTL exceeded"
        assert ActionEvent.EXECUTED not in [a.event for a in snapshot.actions]


class TestFinishedSessionRetention:
    @pytest.mark.asyncio
    async def test_memory_holds_only_recent_sessions(self, store, make_config) -> None:
        engine = RemediationEngine(store, runner=_oom_runner(), config=make_config(finished_session_retention=2))
        ids = []
        for n in range(4):
            session_id = await engine.start_session(CRASHLOOP, incident_id=f"INC-{n}")
            await engine.wait_for(session_id, timeout=5)
            ids.append(session_id)

        assert engine.tracker.retained_count() == 2
        assert [s.session_id for s in engine.list_sessions()] == ids[2:]
        with pytest.raises(SessionNotFoundError):
            await engine.get_status(ids[0])
        assert (await engine.get_status(ids[3])).session_id == ids[3]

    @pytest.mark.asyncio
    async def test_evicted_session_loaded_from_archive(self, store, make_config) -> None:
        archive = RecordingArchive()
        engine = RemediationEngine(
            store, runner=_oom_runner(), config=make_config(finished_session_retention=1), archive=archive,
        )
        first = await engine.start_session(CRASHLOOP, incident_id="INC-1")
        await engine.wait_for(first, timeout=5)
        second = await engine.start_session(CRASHLOOP, incident_id="INC-2")
        await engine.wait_for(second, timeout=5)

        snapshot = await engine.get_status(first)
        assert snapshot == archive.snapshots[0]
        assert archive.loads == [first]
        assert engine.tracker.retained_count() == 1
        await engine.get_status(first)
        assert archive.loads == [first]
        with pytest.raises(SessionNotFoundError):
            await engine.get_status("never-existed")

    @pytest.mark.asyncio
    async def test_audit_repository_answers_for_evicted_sessions(self, store, make_config, tmp_path) -> None:
        conn = DatabaseConnection(AuditStoreConfig(database_url=f"sqlite:///{tmp_path / 'audit.db'}"))
        conn.create_tables()
        engine = RemediationEngine(
            store, runner=_oom_runner(), config=make_config(finished_session_retention=0),
            archive=AuditRepository(conn),
        )
        session_id = await engine.start_session(CRASHLOOP)
        await engine.wait_for(session_id, timeout=5)

        assert engine.tracker.retained_count() == 0
        snapshot = await engine.get_status(session_id)
        assert snapshot.outcome == SessionOutcome.RESOLVED
        assert snapshot.actions[-1].event == ActionEvent.VERIFIED
        assert [r.sequence for r in snapshot.audit] == list(range(len(snapshot.audit)))
        conn.close()


class TestMissingEntry:
    @pytest.mark.asyncio
    async def test_unresolvable_top_match_escalates(self, store, config) -> None:
        runner = ScriptedCommandRunner()
        engine = RemediationEngine(ForgetfulStore(store.entries()), runner=runner, config=config)
        session_id = await engine.start_session(CRASHLOOP)
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome == SessionOutcome.ESCALATED
        assert snapshot.report.reason == "matched entry 'pod-crashloop' is missing from the knowledge base"
        assert runner.calls == []
