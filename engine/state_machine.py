"""Incident-level and per-probe state machines."""

from __future__ import annotations

import threading
from typing import Dict, FrozenSet, List, Tuple

from .schema import ProbeStatus, SessionOutcome, SessionStatus, StateMachineError

S = SessionStatus

# Statuses from which no further remediation work happens.  They may
# only move to CLOSED when the session is archived.
TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset({
    S.RESOLVED,
    S.ESCALATED,
    S.CANCELLED,
})

# Valid forward transitions.  ESCALATED and CANCELLED are added to every
# non-terminal state below.
_VALID_TRANSITIONS: Dict[SessionStatus, set[SessionStatus]] = {
    S.DIAGNOSING: {S.HYPOTHESIS_CONFIRMED},
    S.HYPOTHESIS_CONFIRMED: {S.REMEDIATION_PROPOSED},
    S.REMEDIATION_PROPOSED: {S.REMEDIATION_APPROVED},
    S.REMEDIATION_APPROVED: {S.EXECUTING},
    S.EXECUTING: {S.VERIFYING, S.FAILED},
    S.VERIFYING: {S.RESOLVED, S.FAILED},
    S.FAILED: {S.ROLLING_BACK, S.CLOSED},
    S.ROLLING_BACK: {S.ROLLED_BACK, S.FAILED},
    S.ROLLED_BACK: {S.REMEDIATION_PROPOSED},
    S.RESOLVED: {S.CLOSED},
    S.ESCALATED: {S.CLOSED},
    S.CANCELLED: {S.CLOSED},
    S.CLOSED: set(),
}
for _state, _targets in _VALID_TRANSITIONS.items():
    if _state not in TERMINAL_STATUSES and _state != S.CLOSED:
        _targets.update({S.ESCALATED, S.CANCELLED})

_PROBE_TRANSITIONS: Dict[ProbeStatus, set[ProbeStatus]] = {
    ProbeStatus.PENDING: {ProbeStatus.RUNNING},
    # A retried attempt re-enters RUNNING from a failed/timed-out attempt.
    ProbeStatus.RUNNING: {ProbeStatus.COMPLETED, ProbeStatus.FAILED, ProbeStatus.TIMED_OUT},
    ProbeStatus.FAILED: {ProbeStatus.RUNNING},
    ProbeStatus.TIMED_OUT: {ProbeStatus.RUNNING},
    ProbeStatus.COMPLETED: set(),
}


def can_transition(from_state: SessionStatus, to_state: SessionStatus) -> bool:
    """Return ``True`` if the incident transition is allowed."""
    return to_state in _VALID_TRANSITIONS.get(from_state, set())


def check_probe_transition(from_state: ProbeStatus, to_state: ProbeStatus) -> None:
    """Validate a per-probe transition.

    Raises:
        StateMachineError: If the transition is invalid.
    """
    if to_state not in _PROBE_TRANSITIONS[from_state]:
        raise StateMachineError(from_state.value, to_state.value)


class IncidentStateMachine:
    """Track one session through its remediation lifecycle.

    States::

        diagnosing → hypothesis_confirmed → remediation_proposed →
        remediation_approved → executing → verifying →
        { resolved | failed → rolling_back → rolled_back } → closed

    ``escalated`` and ``cancelled`` are reachable from every
    non-terminal state.  A ``failed`` session that reaches ``closed``
    directly ended with a failed rollback.
    """

    def __init__(self) -> None:
        self._state: SessionStatus = S.DIAGNOSING
        self._history: List[Tuple[SessionStatus, SessionStatus]] = []
        self._lock = threading.Lock()

    def transition(self, to_state: SessionStatus) -> SessionStatus:
        """Move to *to_state*.

        Returns:
            The previous state.

        Raises:
            StateMachineError: If the transition is invalid.
        """
        with self._lock:
            if not can_transition(self._state, to_state):
                raise StateMachineError(self._state.value, to_state.value)
            previous = self._state
            self._state = to_state
            self._history.append((previous, to_state))
            return previous

    def get_current_state(self) -> SessionStatus:
        """Return the current state."""
        with self._lock:
            return self._state

    def is_terminal(self) -> bool:
        """``True`` once an outcome has been reached."""
        with self._lock:
            return self._state in TERMINAL_STATUSES or self._state == S.CLOSED

    def history(self) -> List[Tuple[SessionStatus, SessionStatus]]:
        """Return a copy of all ``(from, to)`` transitions taken."""
        with self._lock:
            return list(self._history)


def outcome_for(status: SessionStatus) -> SessionOutcome | None:
    """Map a terminal status onto the outcome surfaced to callers."""
    return {
        S.RESOLVED: SessionOutcome.RESOLVED,
        S.ESCALATED: SessionOutcome.ESCALATED,
        S.CANCELLED: SessionOutcome.CANCELLED,
    }.get(status)
