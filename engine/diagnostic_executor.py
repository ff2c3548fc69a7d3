"""
File: diagnostic_executor.py
Purpose: Run read-only probes against a target context and turn their
    output into Evidence.
Dependencies: asyncio, target-context collaborator, retry/timeout/lock helpers.
Performance: Bounded by the shared worker pool; one pool slot per attempt.

Per probe::

    pending → running → { completed | failed | timed_out }
                 ↑______________|___________|   (retry)

Every attempt runs under the probe's timeout.  Timeouts, unexpected
exit codes and malformed payloads raise :class:`ProbeExecutionError`
and are retried by :class:`RetryPolicy`; once the attempt budget is
spent the probe yields ``inconclusive`` evidence instead of failing the
session.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from knowledge_base.schema import (
    ExpectedSignal,
    KnowledgeBaseError,
    Probe,
    SignalOperator,
    normalise_value,
)

from .config import EngineConfig
from .metrics_collector import MetricsCollector
from .resource_lock import ConflictHook, ResourceLockManager
from .retry_policy import RetryPolicy
from .schema import (
    Evidence,
    EvidenceOutcome,
    EvidencePurpose,
    ProbeExecutionError,
    ProbeRun,
    ProbeStatus,
)
from .state_machine import check_probe_transition
from .target_context import CommandResult, CommandRunner, TargetContext, render_template
from .telemetry import get_logger
from .timeout_manager import PROBE, TimeoutManager

_logger = get_logger(__name__)

# Shell exit codes that mean "the command itself could not run"
# (126 not executable, 127 not found, 128+n killed by signal n).
_SHELL_ERROR_EXIT = 126
_PAYLOAD_LIMIT = 4000


# ═══════════════════════════════════════════════════════════════
#  SIGNAL EVALUATION
# ═══════════════════════════════════════════════════════════════


def parse_json_object(stdout: str) -> Optional[Dict[str, Any]]:
    """Return *stdout* as a JSON object, or ``None`` if it is not one."""
    text = stdout.strip()
    if not text.startswith("{"):
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def extract_signals(stdout: str) -> Dict[str, str]:
    """Top-level scalar fields of a JSON stdout, normalised for matching."""
    data = parse_json_object(stdout)
    if data is None:
        return {}
    return {
        str(k): normalise_value(v)
        for k, v in data.items()
        if isinstance(v, (str, int, float, bool))
    }


def _lookup(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise KeyError(path)
    return current


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(actual: Any, op: SignalOperator, expected: Any) -> bool:
    if op == SignalOperator.CONTAINS:
        if isinstance(actual, (list, tuple)):
            return any(normalise_value(a) == normalise_value(expected) for a in actual)
        return normalise_value(expected) in normalise_value(actual)

    a_num, e_num = _as_number(actual), _as_number(expected)
    if a_num is not None and e_num is not None:
        left, right = a_num, e_num
    elif op in (SignalOperator.EQ, SignalOperator.NE):
        left, right = normalise_value(actual), normalise_value(expected)  # type: ignore[assignment]
    else:
        raise ValueError(f"cannot order non-numeric values {actual!r} and {expected!r}")

    if op == SignalOperator.EQ:
        return left == right
    if op == SignalOperator.NE:
        return left != right
    if op == SignalOperator.GT:
        return left > right
    if op == SignalOperator.GE:
        return left >= right
    if op == SignalOperator.LT:
        return left < right
    return left <= right


def evaluate_signal(probe_id: str, expected: ExpectedSignal, result: CommandResult) -> EvidenceOutcome:
    """Compare one command result with the probe's expected signal.

    Raises:
        ProbeExecutionError: On an unexpected exit code or a payload the
            expected signal cannot be evaluated against.
    """
    if expected.pattern is None and expected.field is None:
        # Exit-status mode: the exit code is the signal.
        if result.exit_code >= _SHELL_ERROR_EXIT:
            raise ProbeExecutionError(probe_id, f"exit code {result.exit_code}", "NON_ZERO_EXIT")
        return EvidenceOutcome.PASS if result.ok else EvidenceOutcome.FAIL

    if not result.ok:
        raise ProbeExecutionError(
            probe_id,
            f"exit code {result.exit_code}: {result.stderr.strip()[:200]}",
            "NON_ZERO_EXIT",
        )

    if expected.pattern is not None:
        found = re.search(expected.pattern, result.stdout, re.MULTILINE)
        return EvidenceOutcome.PASS if found else EvidenceOutcome.FAIL

    data = parse_json_object(result.stdout)
    if data is None:
        raise ProbeExecutionError(probe_id, "stdout is not a JSON object", "MALFORMED_PAYLOAD")
    try:
        actual = _lookup(data, expected.field or "")
        held = _compare(actual, expected.operator, expected.value)
    except KeyError:
        raise ProbeExecutionError(
            probe_id, f"field '{expected.field}' missing from payload", "MALFORMED_PAYLOAD",
        ) from None
    except ValueError as exc:
        raise ProbeExecutionError(probe_id, str(exc), "MALFORMED_PAYLOAD") from exc
    return EvidenceOutcome.PASS if held else EvidenceOutcome.FAIL


# ═══════════════════════════════════════════════════════════════
#  EXECUTOR
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ProbeRequest:
    """One probe to run on behalf of a cause."""

    probe: Probe
    cause_id: str
    entry_id: str
    purpose: EvidencePurpose = EvidencePurpose.DIAGNOSIS


@dataclass(frozen=True)
class ProbeResult:
    """Evidence plus the execution record that produced it."""

    request: ProbeRequest
    evidence: Evidence
    run: ProbeRun


class _RunTracker:
    """Walk one probe through its state machine."""

    def __init__(self, probe_id: str) -> None:
        self.run = ProbeRun(probe_id=probe_id)

    def move(self, status: ProbeStatus, error: Optional[str] = None) -> None:
        check_probe_transition(self.run.status, status)
        now = datetime.now(timezone.utc)
        update: Dict[str, Any] = {"status": status, "error": error}
        if status == ProbeStatus.RUNNING:
            update["attempts"] = self.run.attempts + 1
            if self.run.started_at is None:
                update["started_at"] = now
        else:
            update["finished_at"] = now
        self.run = self.run.model_copy(update=update)


class DiagnosticExecutor:
    """Execute probes for any number of sessions.

    The worker pool, lock manager, retry policy and timeout manager are
    shared by all sessions using this executor.

    Args:
        config: Engine configuration.
        runner: Target-context command runner.
        locks: Target-resource lock manager.
        metrics: Optional metrics collector.
    """

    def __init__(
        self,
        config: EngineConfig,
        runner: CommandRunner,
        *,
        locks: Optional[ResourceLockManager] = None,
        retry_policy: Optional[RetryPolicy] = None,
        timeout_manager: Optional[TimeoutManager] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        self.config = config
        self.runner = runner
        self.pool_size = config.effective_worker_pool_size()
        self.pool = asyncio.Semaphore(self.pool_size)
        self.locks = locks or ResourceLockManager(config)
        self.retry_policy = retry_policy or RetryPolicy(config)
        self.timeout_manager = timeout_manager or TimeoutManager()
        self.metrics = metrics
        self._in_flight = 0
        self._peak_in_flight = 0

    # ---- public -----------------------------------------------------------

    async def run_probe(
        self,
        request: ProbeRequest,
        context: TargetContext,
        *,
        session_id: str = "",
        values: Optional[Mapping[str, Any]] = None,
        on_conflict: Optional[ConflictHook] = None,
    ) -> ProbeResult:
        """Run one probe to completion (including retries).

        A busy target resource is waited out, never turned into a
        failed attempt.

        Args:
            request: Probe plus the cause/entry it tests.
            context: Explicit execution target.
            session_id: Owning session (for logs).
            values: Extra template values, typically the session's
                structured symptom fields.
            on_conflict: Called while the probe waits for its target
                lock; whatever it raises abandons the probe.

        Returns:
            The resulting evidence and execution record.

        Raises:
            KnowledgeBaseError: If the probe is not marked read-only.
        """
        probe = request.probe
        if not probe.read_only:
            raise KnowledgeBaseError(
                request.entry_id, f"probe '{probe.id}' is not read-only and cannot be auto-executed",
            )

        log_extra = {"session_id": session_id, "probe_id": probe.id, "cause_id": request.cause_id}
        tracker = _RunTracker(probe.id)
        started = time.monotonic()
        template_values = context.template_values(values)

        try:
            command = render_template(probe.command_template, template_values)
            target = render_template(probe.target, template_values) if probe.target else None
        except KeyError as exc:
            _logger.warning(f"Probe template needs missing value {exc}", extra=log_extra)
            return self._finish(
                request, tracker, session_id, started,
                EvidenceOutcome.INCONCLUSIVE,
                {"error": f"missing template value {exc}", "error_type": "MALFORMED_PAYLOAD"},
                {},
                final_status=ProbeStatus.FAILED,
            )

        last_result: List[CommandResult] = []

        async def _attempt() -> Tuple[EvidenceOutcome, CommandResult]:
            tracker.move(ProbeStatus.RUNNING)
            if tracker.run.attempts > 1 and self.metrics is not None:
                self.metrics.record_retry(probe.id)
            try:
                result = await self._execute(
                    command, target, probe.timeout, context, session_id, probe.id, on_conflict,
                )
            except asyncio.TimeoutError:
                tracker.move(ProbeStatus.TIMED_OUT, "timeout")
                raise ProbeExecutionError(probe.id, f"timed out after {probe.timeout}s", "TIMEOUT") from None
            last_result[:] = [result]
            try:
                outcome = evaluate_signal(probe.id, probe.expected_signal, result)
            except ProbeExecutionError as exc:
                tracker.move(ProbeStatus.FAILED, exc.reason)
                raise
            tracker.move(ProbeStatus.COMPLETED)
            return outcome, result

        try:
            outcome, result = await self.retry_policy.execute_with_retry(
                _attempt,
                label=probe.id,
                max_attempts=probe.retries,
                retry_on=(ProbeExecutionError,),
                extra=log_extra,
            )
        except ProbeExecutionError as exc:
            payload = self._payload(command, last_result[0] if last_result else None)
            payload.update({"error": exc.reason, "error_type": exc.error_type})
            _logger.warning(
                f"Probe exhausted {tracker.run.attempts} attempts, recording inconclusive",
                extra=log_extra,
            )
            return self._finish(
                request, tracker, session_id, started,
                EvidenceOutcome.INCONCLUSIVE, payload, {},
            )

        _logger.info(f"Probe finished: {outcome.value}", extra=log_extra)
        return self._finish(
            request, tracker, session_id, started,
            outcome, self._payload(command, result), extract_signals(result.stdout),
        )

    def run_probes(
        self,
        requests: List[ProbeRequest],
        context: TargetContext,
        queue: "asyncio.Queue[Any]",
        *,
        session_id: str = "",
        values: Optional[Mapping[str, Any]] = None,
    ) -> List["asyncio.Task[None]"]:
        """Start *requests* concurrently, posting each result to *queue*.

        Results arrive as ``("probe_result", ProbeResult)`` tuples; an
        unexpected exception arrives as ``("probe_error", (request, exc))``.

        Returns:
            The spawned tasks, so the caller can cancel stragglers.
        """
        async def _one(req: ProbeRequest) -> None:
            try:
                result = await self.run_probe(req, context, session_id=session_id, values=values)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await queue.put(("probe_error", (req, exc)))
                return
            await queue.put(("probe_result", result))

        return [
            asyncio.create_task(_one(req), name=f"probe:{session_id}:{req.probe.id}")
            for req in requests
        ]

    @property
    def peak_in_flight(self) -> int:
        """Highest number of concurrently executing commands seen."""
        return self._peak_in_flight

    # ---- internals --------------------------------------------------------

    async def _execute(
        self,
        command: str,
        target: Optional[str],
        timeout: float,
        context: TargetContext,
        session_id: str,
        probe_id: str,
        on_conflict: Optional[ConflictHook] = None,
    ) -> CommandResult:
        # Lock before taking a pool slot so a blocked probe never holds a worker.
        async with self.locks.hold(context.name, target, session_id=session_id, on_conflict=on_conflict):
            async with self.pool:
                self._in_flight += 1
                self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
                try:
                    return await self.timeout_manager.run(
                        self.runner, command, context, timeout,
                        kind=PROBE, command_id=probe_id, session_id=session_id,
                    )
                finally:
                    self._in_flight -= 1

    @staticmethod
    def _payload(command: str, result: Optional[CommandResult]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"command": command}
        if result is not None:
            payload.update({
                "exit_code": result.exit_code,
                "stdout": result.stdout[:_PAYLOAD_LIMIT],
                "stderr": result.stderr[:_PAYLOAD_LIMIT],
            })
        return payload

    def _finish(
        self,
        request: ProbeRequest,
        tracker: _RunTracker,
        session_id: str,
        started: float,
        outcome: EvidenceOutcome,
        payload: Dict[str, Any],
        signals: Dict[str, str],
        final_status: Optional[ProbeStatus] = None,
    ) -> ProbeResult:
        if final_status is not None:
            if tracker.run.status == ProbeStatus.PENDING:
                tracker.move(ProbeStatus.RUNNING)
            tracker.move(final_status, payload.get("error"))
        if self.metrics is not None:
            self.metrics.record_probe(request.probe.id, outcome.value, time.monotonic() - started)
        evidence = Evidence(
            session_id=session_id,
            probe_id=request.probe.id,
            cause_id=request.cause_id,
            entry_id=request.entry_id,
            outcome=outcome,
            purpose=request.purpose,
            payload=payload,
            signals=signals,
            attempts=tracker.run.attempts,
        )
        return ProbeResult(request=request, evidence=evidence, run=tracker.run)
