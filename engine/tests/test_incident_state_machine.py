"""Tests for engine.state_machine."""

from __future__ import annotations

import pytest

from engine.schema import ProbeStatus, SessionOutcome, SessionStatus, StateMachineError
from engine.state_machine import (
    IncidentStateMachine,
    can_transition,
    check_probe_transition,
    outcome_for,
)

S = SessionStatus

HAPPY_PATH = [
    S.HYPOTHESIS_CONFIRMED,
    S.REMEDIATION_PROPOSED,
    S.REMEDIATION_APPROVED,
    S.EXECUTING,
    S.VERIFYING,
    S.RESOLVED,
    S.CLOSED,
]


class TestIncidentTransitions:
    def test_initial_state_diagnosing(self) -> None:
        assert IncidentStateMachine().get_current_state() == S.DIAGNOSING

    def test_happy_path(self) -> None:
        sm = IncidentStateMachine()
        for status in HAPPY_PATH:
            sm.transition(status)
        assert sm.get_current_state() == S.CLOSED
        assert len(sm.history()) == len(HAPPY_PATH)

    def test_rollback_loop_back_to_proposal(self) -> None:
        sm = IncidentStateMachine()
        for status in HAPPY_PATH[:5]:
            sm.transition(status)
        for status in (S.FAILED, S.ROLLING_BACK, S.ROLLED_BACK, S.REMEDIATION_PROPOSED):
            sm.transition(status)
        assert sm.get_current_state() == S.REMEDIATION_PROPOSED

    def test_cannot_execute_without_approval(self) -> None:
        sm = IncidentStateMachine()
        sm.transition(S.HYPOTHESIS_CONFIRMED)
        sm.transition(S.REMEDIATION_PROPOSED)
        with pytest.raises(StateMachineError):
            sm.transition(S.EXECUTING)

    def test_transition_returns_previous(self) -> None:
        sm = IncidentStateMachine()
        assert sm.transition(S.HYPOTHESIS_CONFIRMED) == S.DIAGNOSING

    @pytest.mark.parametrize("status", [
        S.DIAGNOSING, S.HYPOTHESIS_CONFIRMED, S.REMEDIATION_PROPOSED, S.REMEDIATION_APPROVED,
        S.EXECUTING, S.VERIFYING, S.FAILED, S.ROLLING_BACK, S.ROLLED_BACK,
    ])
    def test_escalate_and_cancel_reachable_from_non_terminal(self, status: SessionStatus) -> None:
        assert can_transition(status, S.ESCALATED)
        assert can_transition(status, S.CANCELLED)

    @pytest.mark.parametrize("status", [S.RESOLVED, S.ESCALATED, S.CANCELLED])
    def test_terminal_states_only_close(self, status: SessionStatus) -> None:
        for target in S:
            assert can_transition(status, target) == (target == S.CLOSED)

    def test_closed_is_final(self) -> None:
        for target in S:
            assert not can_transition(S.CLOSED, target)

    def test_is_terminal(self) -> None:
        sm = IncidentStateMachine()
        assert not sm.is_terminal()
        sm.transition(S.ESCALATED)
        assert sm.is_terminal()

    def test_failed_is_not_terminal(self) -> None:
        sm = IncidentStateMachine()
        for status in HAPPY_PATH[:4]:
            sm.transition(status)
        sm.transition(S.FAILED)
        assert not sm.is_terminal()


class TestOutcomes:
    def test_outcome_mapping(self) -> None:
        assert outcome_for(S.RESOLVED) == SessionOutcome.RESOLVED
        assert outcome_for(S.ESCALATED) == SessionOutcome.ESCALATED
        assert outcome_for(S.CANCELLED) == SessionOutcome.CANCELLED
        assert outcome_for(S.FAILED) is None


class TestProbeTransitions:
    def test_retry_cycle_allowed(self) -> None:
        check_probe_transition(ProbeStatus.PENDING, ProbeStatus.RUNNING)
        check_probe_transition(ProbeStatus.RUNNING, ProbeStatus.TIMED_OUT)
        check_probe_transition(ProbeStatus.TIMED_OUT, ProbeStatus.RUNNING)
        check_probe_transition(ProbeStatus.RUNNING, ProbeStatus.FAILED)
        check_probe_transition(ProbeStatus.FAILED, ProbeStatus.RUNNING)
        check_probe_transition(ProbeStatus.RUNNING, ProbeStatus.COMPLETED)

    def test_completed_is_final(self) -> None:
        with pytest.raises(StateMachineError):
            check_probe_transition(ProbeStatus.COMPLETED, ProbeStatus.RUNNING)

    def test_pending_cannot_complete(self) -> None:
        with pytest.raises(StateMachineError):
            check_probe_transition(ProbeStatus.PENDING, ProbeStatus.COMPLETED)
