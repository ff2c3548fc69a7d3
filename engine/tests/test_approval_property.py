"""Randomised checks of the approval gate over many generated sessions."""

from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, List

import pytest

from engine import ApprovalPolicy, RemediationEngine, ScriptedCommandRunner, SessionStatus
from engine.schema import ActionEvent, SessionSnapshot

S = SessionStatus
RISKS = ["safe", "moderate", "destructive"]


def _entry(rng: random.Random) -> Dict[str, Any]:
    actions: List[Dict[str, Any]] = []
    for i in range(rng.randint(1, 3)):
        action: Dict[str, Any] = {
            "id": f"fix-{i}",
            "command_template": f"apply-fix --step {i}",
            "risk": rng.choice(RISKS),
            "target": "deployment/{service}",
        }
        if rng.random() < 0.5:
            action["rollback_ref"] = f"undo-{i}"
            actions.append({
                "id": f"undo-{i}",
                "command_template": f"undo-fix --step {i}",
                "risk": rng.choice(RISKS),
            })
        actions.append(action)
    return {
        "id": "generated",
        "symptoms": ["degraded"],
        "causes": [{
            "id": "root",
            "probes": [{
                "id": "check",
                "command_template": "check-health {service}",
                "read_only": True,
                "expected_signal": {"pattern": "UNHEALTHY"},
                "timeout": 1,
                "retries": 1,
            }],
            "actions": actions,
        }],
    }


def _runner(rng: random.Random) -> ScriptedCommandRunner:
    verify = [{"stdout": "UNHEALTHY"}] + [
        {"stdout": rng.choice(["UNHEALTHY", "healthy"])} for _ in range(20)
    ]
    return ScriptedCommandRunner(rules=[
        {"match": "check-health", "responses": verify},
        {"match": "apply-fix", "responses": [{"exit_code": rng.choice([0, 0, 1])} for _ in range(5)]},
        {"match": "undo-fix", "responses": [{"exit_code": rng.choice([0, 0, 0, 1])}]},
    ])


def _assert_gate_respected(snapshot: SessionSnapshot, automated: str) -> None:
    audit = snapshot.audit
    for i, record in enumerate(audit):
        if record.to_status != S.EXECUTING:
            continue
        previous = audit[i - 1]
        assert previous.to_status == S.REMEDIATION_APPROVED
        assert previous.action_id == record.action_id

    approvals = {}
    for action in snapshot.actions:
        if action.event == ActionEvent.APPROVED:
            approvals[action.action_id] = action
            if action.risk is not None and action.risk.value != "safe":
                assert action.actor != automated
        if action.event in (ActionEvent.EXECUTED, ActionEvent.EXECUTION_FAILED):
            assert action.action_id in approvals
        if action.event in (ActionEvent.ROLLBACK_STARTED, ActionEvent.ROLLED_BACK):
            if action.risk is not None and action.risk.value == "destructive":
                assert action.action_id in approvals
                assert approvals[action.action_id].actor != automated
    assert [r.sequence for r in audit] == list(range(len(audit)))


@pytest.mark.asyncio
@pytest.mark.parametrize("seed", range(25))
async def test_no_action_executes_without_approval(seed: int, make_store, make_config) -> None:
    rng = random.Random(seed)
    policy = ApprovalPolicy(auto_approve_safe=rng.random() < 0.7)
    config = make_config(approval_policy=policy, verification_attempts=2)
    store = make_store([_entry(rng)])
    engine = RemediationEngine(store, runner=_runner(rng), config=config)

    session_id = await engine.start_session({"degraded": True, "service": "web"})
    operators = iter(f"operator-{n}" for n in range(100))
    while True:
        pending = await engine.wait_for_approval(session_id, timeout=5)
        if pending is None:
            break
        assert pending.risk.value != "safe" or not policy.auto_approve_safe
        await engine.approve_action(session_id, pending.action_id, actor=next(operators))
        await engine.wait_for(session_id, timeout=0.05)

    snapshot = await engine.wait_for(session_id, timeout=5)
    assert snapshot.outcome is not None
    _assert_gate_respected(snapshot, policy.automated_actor)


@pytest.mark.asyncio
async def test_destructive_action_never_auto_approved(make_store, make_config) -> None:
    entry = {
        "id": "wipe",
        "symptoms": ["disk_full"],
        "causes": [{
            "id": "stale-volumes",
            "probes": [{"id": "usage", "command_template": "disk-usage", "read_only": True,
                        "expected_signal": {"pattern": "100%"}}],
            "actions": [{"id": "delete-volumes", "command_template": "kubectl delete pvc -l stale=true",
                         "risk": "destructive"}],
        }],
    }
    runner = ScriptedCommandRunner(rules=[{"match": "disk-usage", "responses": [{"stdout": "100%"}]}])
    engine = RemediationEngine(make_store([entry]), runner=runner, config=make_config())
    session_id = await engine.start_session({"disk_full": True})
    pending = await engine.wait_for_approval(session_id, timeout=5)
    assert pending is not None and pending.risk.value == "destructive"
    assert not any("delete pvc" in c for c in runner.commands())
    await engine.cancel(session_id, actor="oncall")
    snapshot = await engine.wait_for(session_id, timeout=5)
    assert [a.event for a in snapshot.actions] == [ActionEvent.PROPOSED]


def _destructive_rollback_entry() -> Dict[str, Any]:
    return {
        "id": "bad-config",
        "symptoms": ["config_drift"],
        "causes": [{
            "id": "wrong-configmap",
            "probes": [{"id": "drift", "command_template": "config-diff {service}", "read_only": True,
                        "expected_signal": {"pattern": "DRIFT"}, "timeout": 1, "retries": 1}],
            "actions": [
                {"id": "apply-configmap", "command_template": "kubectl apply -f fixed.yaml",
                 "risk": "moderate", "rollback_ref": "recreate-pods"},
                {"id": "recreate-pods", "command_template": "kubectl delete pods -l app={service}",
                 "risk": "destructive"},
            ],
        }],
    }


async def _wait_pending(engine: RemediationEngine, session_id: str, action_id: str):
    for _ in range(500):
        pending = await engine.wait_for_approval(session_id, timeout=5)
        if pending is None or pending.action_id == action_id:
            return pending
        await asyncio.sleep(0.01)
    raise AssertionError(f"{action_id} never reached the approval gate")


class TestDestructiveRollback:
    @pytest.mark.asyncio
    async def test_waits_for_operator_before_running(self, make_store, make_config) -> None:
        runner = ScriptedCommandRunner(rules=[
            {"match": "config-diff", "responses": [{"stdout": "DRIFT"}]},
            {"match": "kubectl apply", "responses": [{"exit_code": 1, "stderr": "admission webhook denied"}]},
        ])
        engine = RemediationEngine(make_store([_destructive_rollback_entry()]), runner=runner, config=make_config())
        session_id = await engine.start_session({"config_drift": True, "service": "web"})

        await _wait_pending(engine, session_id, "apply-configmap")
        await engine.approve_action(session_id, "apply-configmap", actor="alice")
        pending = await _wait_pending(engine, session_id, "recreate-pods")

        assert pending is not None and pending.risk.value == "destructive"
        assert pending.command == "kubectl delete pods -l app=web"
        assert (await engine.get_status(session_id)).status == S.ROLLING_BACK
        assert not any("delete pods" in c for c in runner.commands())

        await engine.approve_action(session_id, "recreate-pods", actor="bob")
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert [(a.action_id, a.event, a.actor) for a in snapshot.actions][-3:] == [
            ("recreate-pods", ActionEvent.APPROVED, "bob"),
            ("recreate-pods", ActionEvent.ROLLBACK_STARTED, "automated"),
            ("recreate-pods", ActionEvent.ROLLED_BACK, "automated"),
        ]
        assert runner.commands()[-1] == "kubectl delete pods -l app=web"
        assert snapshot.outcome is not None
        _assert_gate_respected(snapshot, "automated")

    @pytest.mark.asyncio
    async def test_cancel_at_rollback_gate_runs_nothing(self, make_store, make_config) -> None:
        runner = ScriptedCommandRunner(rules=[
            {"match": "config-diff", "responses": [{"stdout": "DRIFT"}]},
            {"match": "kubectl apply", "responses": [{"exit_code": 1}]},
        ])
        engine = RemediationEngine(make_store([_destructive_rollback_entry()]), runner=runner, config=make_config())
        session_id = await engine.start_session({"config_drift": True, "service": "web"})
        await _wait_pending(engine, session_id, "apply-configmap")
        await engine.approve_action(session_id, "apply-configmap", actor="alice")
        await _wait_pending(engine, session_id, "recreate-pods")

        await engine.cancel(session_id, actor="oncall")
        snapshot = await engine.wait_for(session_id, timeout=5)

        assert snapshot.outcome.value == "cancelled"
        assert not any("delete pods" in c for c in runner.commands())
        assert ActionEvent.ROLLBACK_STARTED not in [a.event for a in snapshot.actions]
