"""
File: remediation_orchestrator.py
Purpose: Drive a session from a confirmed hypothesis to an outcome:
    propose, gate, execute, verify, and roll back remediation actions.
Dependencies: asyncio, target-context collaborator, diagnostic executor.
Performance: Dominated by action runtime and verification polling.

Lifecycle for one action::

    hypothesis_confirmed / rolled_back
        → remediation_proposed → remediation_approved → executing
        → verifying → resolved
                    ↘ failed → rolling_back → rolled_back → (next action | escalated)
                             ↘ (no rollback) → escalated

An action whose templates cannot be rendered is never proposed, and an
action whose command could not be launched is escalated without a
rollback: in both cases nothing reached the target.  A destructive
rollback waits for an operator like any destructive action.

An approved action first waits, for as long as it takes, for its target
resource lock; cancels and TTL expiry are still honoured while it waits.
Once the lock is held the command runs shielded from task cancellation
and a cancel is only observed after it returns.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Mapping, Optional, Tuple

from knowledge_base.schema import Cause, Probe, RemediationAction, RunbookEntry

from .config import EngineConfig
from .diagnostic_executor import DiagnosticExecutor, ProbeRequest
from .metrics_collector import MetricsCollector
from .resource_lock import ResourceLockManager
from .schema import (
    ActionEvent,
    ActionNotStartedError,
    EvidenceOutcome,
    EvidencePurpose,
    PendingApproval,
    RemediationError,
    SessionStatus,
)
from .session import SessionInbox, SessionState
from .target_context import CommandResult, CommandRunner, render_template
from .telemetry import get_logger
from .timeout_manager import ACTION, TimeoutManager

_logger = get_logger(__name__)

S = SessionStatus


class _Execution(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NOT_STARTED = "not_started"


class RemediationOrchestrator:
    """Remediation half of the incident state machine.

    Args:
        config: Engine configuration (approval policy, verification polling).
        runner: Target-context command runner.
        executor: Diagnostic executor used for verification probes.
        locks: Target-resource lock manager shared with the executor.
        timeout_manager: Shared timeout manager.
        metrics: Optional metrics collector.
    """

    def __init__(
        self,
        config: EngineConfig,
        runner: CommandRunner,
        executor: DiagnosticExecutor,
        *,
        locks: Optional[ResourceLockManager] = None,
        timeout_manager: Optional[TimeoutManager] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.config = config
        self.policy = config.approval_policy
        self.runner = runner
        self.executor = executor
        self.locks = locks or executor.locks
        self.timeout_manager = timeout_manager or executor.timeout_manager
        self.metrics = metrics

    # ---- public -----------------------------------------------------------

    @staticmethod
    def next_action(state: SessionState, cause: Cause) -> Optional[RemediationAction]:
        """The cause's next primary action not yet attempted in *state*."""
        for action in cause.primary_actions():
            if action.id not in state.attempted_actions:
                return action
        return None

    async def remediate(
        self,
        state: SessionState,
        inbox: SessionInbox,
        entry: RunbookEntry,
        cause: Cause,
    ) -> None:
        """Run actions for the confirmed *cause* until the session ends.

        The session must be in ``hypothesis_confirmed``.  On return it is
        ``resolved``, ``escalated``, ``cancelled`` or ``failed`` (rollback
        failure).  Cancels and TTL expiry propagate as
        :class:`SessionInterrupted`.
        """
        values = dict(state.symptoms.signals)
        while True:
            action = self.next_action(state, cause)
            if action is None:
                state.escalate(f"no untried remediation action left for cause '{cause.id}'")
                return

            inbox.checkpoint(state)
            state.attempted_actions.append(action.id)
            try:
                command, target = self._render(state, action, values)
            except KeyError as exc:
                state.errors.append(f"action '{action.id}' needs missing template value {exc}")
                state.escalate(f"action '{action.id}' cannot be rendered: missing template value {exc}")
                return

            self._propose(state, cause, action, command)
            await self._await_approval(state, inbox, cause, action, command)

            inbox.checkpoint(state)
            outcome = await self._execute(state, inbox, cause, action, command, target)
            if outcome is _Execution.NOT_STARTED:
                state.escalate(f"action '{action.id}' could not be started; nothing to roll back")
                return
            inbox.checkpoint(state)

            if outcome is _Execution.SUCCEEDED:
                if await self._verify(state, inbox, entry, cause, action):
                    state.record_action(action.id, ActionEvent.VERIFIED, cause_id=cause.id, risk=action.risk)
                    state.transition(S.RESOLVED, reason=f"action '{action.id}' verified", action_id=action.id)
                    return
                state.record_action(
                    action.id, ActionEvent.VERIFICATION_FAILED, cause_id=cause.id, risk=action.risk,
                    detail=f"symptom still present after {self.config.verification_attempts} checks",
                )
                state.transition(S.FAILED, reason="verification failed", action_id=action.id)

            rollback = cause.action(action.rollback_ref) if action.rollback_ref else None
            if rollback is None:
                state.escalate(f"action '{action.id}' failed and has no rollback")
                return

            if not await self._rollback(state, inbox, cause, action, rollback, values):
                return

            if self.next_action(state, cause) is None:
                state.escalate(f"action '{action.id}' rolled back; no further action for cause '{cause.id}'")
                return

    # ---- proposal & approval ----------------------------------------------

    @staticmethod
    def _render(
        state: SessionState,
        action: RemediationAction,
        values: Mapping[str, Any],
    ) -> Tuple[str, Optional[str]]:
        """Return *action*'s command and lock target for this session.

        Raises:
            KeyError: If a template names a value the session lacks.
        """
        template_values = state.context.template_values(values)
        command = render_template(action.command_template, template_values)
        target = render_template(action.target, template_values) if action.target else None
        return command, target

    def _propose(self, state: SessionState, cause: Cause, action: RemediationAction, command: str) -> None:
        state.transition(
            S.REMEDIATION_PROPOSED,
            reason=f"proposing '{action.id}' ({action.risk.value})",
            action_id=action.id,
        )
        state.record_action(action.id, ActionEvent.PROPOSED, cause_id=cause.id, risk=action.risk, detail=command)

    async def _await_approval(
        self,
        state: SessionState,
        inbox: SessionInbox,
        cause: Cause,
        action: RemediationAction,
        command: str,
    ) -> None:
        """Block until *action* is approved (or auto-approve it).

        An APPROVED action record is always appended before the
        ``remediation_approved`` transition.
        """
        if self.policy.allows_auto_approval(action.risk):
            actor = self.policy.automated_actor
            state.record_action(
                action.id, ActionEvent.APPROVED, cause_id=cause.id, actor=actor,
                risk=action.risk, detail="auto-approved by policy",
            )
            state.transition(S.REMEDIATION_APPROVED, actor=actor, reason="auto-approved", action_id=action.id)
            return

        actor = await self._wait_for_operator(state, inbox, cause, action, command)
        state.transition(S.REMEDIATION_APPROVED, actor=actor, reason="approved by operator", action_id=action.id)

    async def _wait_for_operator(
        self,
        state: SessionState,
        inbox: SessionInbox,
        cause: Cause,
        action: RemediationAction,
        command: str,
    ) -> str:
        """Park *action* at the approval gate and return the approving actor.

        The APPROVED action record is appended before returning.
        """
        state.pending_approval = PendingApproval(
            action_id=action.id,
            cause_id=cause.id,
            risk=action.risk,
            command=command,
        )
        _logger.info(
            f"Waiting for approval of {action.risk.value} action",
            extra={"session_id": state.session_id, "action_id": action.id},
        )
        waited_from = time.monotonic()
        while True:
            message = await inbox.wait(state)
            if message is None:
                continue
            kind, payload = message
            if kind == "approve" and payload[0] == action.id:
                actor = str(payload[1])
                break
        state.pending_approval = None
        if self.metrics is not None:
            self.metrics.record_approval_wait(action.risk.value, time.monotonic() - waited_from)
        state.record_action(action.id, ActionEvent.APPROVED, cause_id=cause.id, actor=actor, risk=action.risk)
        return actor

    # ---- execution --------------------------------------------------------

    async def _run_command(
        self,
        state: SessionState,
        action: RemediationAction,
        command: str,
        lock: Optional[asyncio.Lock],
    ) -> CommandResult:
        try:
            return await self.timeout_manager.run(
                self.runner, command, state.context, action.timeout,
                kind=ACTION, command_id=action.id, session_id=state.session_id,
            )
        finally:
            if lock is not None:
                lock.release()

    async def _run_shielded(
        self,
        state: SessionState,
        action: RemediationAction,
        command: str,
        lock: Optional[asyncio.Lock],
    ) -> CommandResult:
        """Run *command* to completion even if the driver is cancelled.

        *lock* is already held and is released when the command ends.

        Raises:
            ActionNotStartedError: If the command could not be launched.
            RemediationError: On a timeout or a non-zero exit.
        """
        task = asyncio.ensure_future(self._run_command(state, action, command, lock))
        try:
            result = await asyncio.shield(task)
        except asyncio.TimeoutError:
            raise RemediationError(action.id, f"timed out after {action.timeout}s") from None
        except OSError as exc:
            raise ActionNotStartedError(action.id, f"could not launch command: {exc}") from exc
        except RemediationError:
            raise
        except Exception as exc:
            raise RemediationError(action.id, f"{type(exc).__name__}: {exc}") from exc
        if not result.ok:
            raise RemediationError(action.id, f"exit code {result.exit_code}: {result.stderr.strip()[:200]}")
        return result

    async def _execute(
        self,
        state: SessionState,
        inbox: SessionInbox,
        cause: Cause,
        action: RemediationAction,
        command: str,
        target: Optional[str],
    ) -> _Execution:
        lock = await self.locks.wait_acquire(
            state.context.name, target,
            session_id=state.session_id,
            on_conflict=lambda _conflicts: inbox.checkpoint(state),
        )
        try:
            state.transition(S.EXECUTING, reason=f"executing '{action.id}'", action_id=action.id)
        except Exception:
            if lock is not None:
                lock.release()
            raise
        try:
            result = await self._run_shielded(state, action, command, lock)
        except ActionNotStartedError as exc:
            state.record_action(
                action.id, ActionEvent.EXECUTION_FAILED, cause_id=cause.id, risk=action.risk,
                detail=f"not started: {exc.reason}",
            )
            return _Execution.NOT_STARTED
        except RemediationError as exc:
            state.record_action(
                action.id, ActionEvent.EXECUTION_FAILED, cause_id=cause.id, risk=action.risk,
                detail=exc.reason,
            )
            state.transition(S.FAILED, reason=str(exc), action_id=action.id)
            return _Execution.FAILED
        state.record_action(
            action.id, ActionEvent.EXECUTED, cause_id=cause.id, risk=action.risk,
            detail=result.stdout.strip()[:500], exit_code=result.exit_code,
        )
        return _Execution.SUCCEEDED

    # ---- verification -----------------------------------------------------

    def verification_probe(self, state: SessionState, cause: Cause, action: RemediationAction) -> Optional[Probe]:
        """The action's verification probe, else the probe that confirmed the cause."""
        if action.verify_probe_ref:
            probe = cause.probe(action.verify_probe_ref)
            if probe is not None:
                return probe
        confirming = state.confirming_probe.get(cause.id)
        if confirming:
            return cause.probe(confirming)
        return cause.probes[0] if cause.probes else None

    async def _verify(
        self,
        state: SessionState,
        inbox: SessionInbox,
        entry: RunbookEntry,
        cause: Cause,
        action: RemediationAction,
    ) -> bool:
        """Poll the verification probe until the symptom is gone.

        The probe observes the symptom, so a ``fail`` outcome means the
        fix took.  ``pass`` and ``inconclusive`` keep polling.
        """
        state.transition(S.VERIFYING, reason=f"verifying '{action.id}'", action_id=action.id)
        probe = self.verification_probe(state, cause, action)
        if probe is None:
            state.errors.append(f"no verification probe for action '{action.id}'")
            return False

        request = ProbeRequest(probe=probe, cause_id=cause.id, entry_id=entry.id, purpose=EvidencePurpose.VERIFICATION)
        for attempt in range(self.config.verification_attempts):
            if attempt > 0:
                await inbox.sleep(state, self.config.verification_interval)
            result = await self.executor.run_probe(
                request, state.context,
                session_id=state.session_id,
                values=state.symptoms.signals,
                on_conflict=lambda _conflicts: inbox.checkpoint(state),
            )
            state.probe_runs.append(result.run)
            state.add_evidence(result.evidence)
            _logger.info(
                f"Verification check {attempt + 1}/{self.config.verification_attempts}: "
                f"{result.evidence.outcome.value}",
                extra={"session_id": state.session_id, "action_id": action.id},
            )
            if result.evidence.outcome == EvidenceOutcome.FAIL:
                return True
        return False

    # ---- rollback ---------------------------------------------------------

    async def _rollback(
        self,
        state: SessionState,
        inbox: SessionInbox,
        cause: Cause,
        action: RemediationAction,
        rollback: RemediationAction,
        values: Mapping[str, Any],
    ) -> bool:
        """Run *rollback* for *action*.

        A destructive rollback waits at the approval gate first.  The
        target lock is waited for without cancel checks: once started, a
        rollback runs to completion.

        Returns:
            ``True`` when the session reached ``rolled_back``; ``False``
            when the rollback failed and the session stays ``failed``.
        """
        state.transition(S.ROLLING_BACK, reason=f"rolling back '{action.id}' via '{rollback.id}'", action_id=rollback.id)
        try:
            command, target = self._render(state, rollback, values)
        except KeyError as exc:
            return self._rollback_failed(state, cause, rollback, f"missing template value {exc}")

        if self.policy.rollback_needs_approval(rollback.risk):
            await self._wait_for_operator(state, inbox, cause, rollback, command)

        state.record_action(rollback.id, ActionEvent.ROLLBACK_STARTED, cause_id=cause.id, risk=rollback.risk,
                            detail=f"rollback of '{action.id}'")
        lock = await self.locks.wait_acquire(state.context.name, target, session_id=state.session_id)
        try:
            result = await self._run_shielded(state, rollback, command, lock)
        except RemediationError as exc:
            return self._rollback_failed(state, cause, rollback, exc.reason)
        state.record_action(rollback.id, ActionEvent.ROLLED_BACK, cause_id=cause.id, risk=rollback.risk,
                            detail=result.stdout.strip()[:500], exit_code=result.exit_code)
        state.transition(S.ROLLED_BACK, reason=f"'{action.id}' rolled back", action_id=rollback.id)
        return True

    @staticmethod
    def _rollback_failed(state: SessionState, cause: Cause, rollback: RemediationAction, reason: str) -> bool:
        state.record_action(rollback.id, ActionEvent.ROLLBACK_FAILED, cause_id=cause.id,
                            risk=rollback.risk, detail=reason)
        state.report = state.build_report(f"rollback '{rollback.id}' failed: {reason}")
        state.transition(S.FAILED, reason=f"Remediation '{rollback.id}' failed: {reason}", action_id=rollback.id)
        return False
