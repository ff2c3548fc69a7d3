"""Target-context collaborator — where probe and action commands actually run.

The engine never assumes an ambient "current cluster".  Every probe and
action call receives an explicit :class:`TargetContext`, so sessions
aimed at different clusters cannot interfere.
"""

from __future__ import annotations

import asyncio
import os
import re
import shlex
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .telemetry import get_logger

_logger = get_logger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")
_KUBECTL_RE = re.compile(r"(?<![\w/-])kubectl(?=\s)")


class TargetContext(BaseModel):
    """Explicit execution target threaded through every command."""
    model_config = ConfigDict(frozen=True)

    name: str = "default"
    kube_context: Optional[str] = None
    namespace: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    env: Dict[str, str] = Field(default_factory=dict)

    def template_values(self, extra: Optional[Mapping[str, Any]] = None) -> Dict[str, str]:
        """Values available to command templates.

        *extra* (typically the session's structured symptom fields) is
        applied first; the context's own settings override it.
        """
        values: Dict[str, str] = {str(k): str(v) for k, v in (extra or {}).items()}
        if self.namespace is not None:
            values["namespace"] = self.namespace
        if self.kube_context is not None:
            values["kube_context"] = self.kube_context
        values["context"] = self.name
        values.update(self.variables)
        return values


class CommandResult(BaseModel):
    """Raw output plus exit status from the target."""
    model_config = ConfigDict(frozen=True)

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class CommandRunner(Protocol):
    """Black-box cluster command runner."""

    async def run(
        self,
        command: str,
        context: TargetContext,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        ...


def render_template(template: str, values: Mapping[str, str]) -> str:
    """Substitute ``{name}`` placeholders in *template*.

    Only identifier-shaped placeholders are substituted, so JSON/jq
    braces in a command survive untouched.

    Raises:
        KeyError: If a placeholder has no value.
    """
    def _sub(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key not in values:
            raise KeyError(key)
        return str(values[key])

    return _PLACEHOLDER_RE.sub(_sub, template)


# ── subprocess runner ──────────────────────────────────────────────


class SubprocessCommandRunner:
    """Run commands through the local shell.

    ``kubectl`` invocations get ``--context=<kube_context>`` injected
    when the target context names one and the command does not.
    """

    def __init__(self, shell: Optional[str] = None) -> None:
        self.shell = shell

    def prepare(self, command: str, context: TargetContext) -> str:
        """Return *command* bound to *context*."""
        if context.kube_context and "--context" not in command:
            flag = f"kubectl --context={shlex.quote(context.kube_context)}"
            command = _KUBECTL_RE.sub(flag, command)
        return command

    async def run(
        self,
        command: str,
        context: TargetContext,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Execute *command* and capture its output.

        The child process is killed if the awaiting task is cancelled or
        the optional *timeout* elapses.
        """
        bound = self.prepare(command, context)
        env = dict(os.environ)
        env.update(context.env)
        proc = await asyncio.create_subprocess_shell(
            bound,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=env,
            executable=self.shell,
        )
        try:
            if timeout is not None and timeout > 0:
                out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            else:
                out, err = await proc.communicate()
        except (asyncio.CancelledError, asyncio.TimeoutError):
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise
        return CommandResult(
            exit_code=proc.returncode if proc.returncode is not None else -1,
            stdout=out.decode("utf-8", errors="replace"),
            stderr=err.decode("utf-8", errors="replace"),
        )


# ── scripted runner ────────────────────────────────────────────────


class _ScriptRule:
    def __init__(self, match: str, responses: List[Dict[str, Any]], context: Optional[str]) -> None:
        self.pattern = re.compile(match)
        self.context = context
        self.responses = responses or [{"exit_code": 0}]
        self.calls = 0

    def matches(self, command: str, context: TargetContext) -> bool:
        if self.context is not None and self.context != context.name:
            return False
        return bool(self.pattern.search(command))

    def next_response(self) -> Dict[str, Any]:
        index = min(self.calls, len(self.responses) - 1)
        self.calls += 1
        return self.responses[index]


class ScriptedCommandRunner:
    """Replay canned responses instead of touching a cluster.

    Rules are checked in order; the first rule whose regex ``match``
    finds the command (and whose optional ``context`` equals the target
    context name) answers it.  A rule's ``responses`` are consumed in
    order and the last one repeats.  Each response may set
    ``exit_code``, ``stdout``, ``stderr`` and ``delay`` (seconds).

    Example YAML::

        rules:
          - match: "trace-query"
            responses:
              - stdout: '{"slowest_span": "database"}'
        default:
          exit_code: 0
    """

    def __init__(
        self,
        rules: Optional[List[Dict[str, Any]]] = None,
        default: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._rules = [
            _ScriptRule(
                str(r["match"]),
                list(r.get("responses") or [r.get("response") or {"exit_code": 0}]),
                r.get("context"),
            )
            for r in (rules or [])
        ]
        self._default: Dict[str, Any] = dict(default or {"exit_code": 0})
        self.calls: List[Tuple[str, str]] = []

    @classmethod
    def from_file(cls, path: str | Path) -> "ScriptedCommandRunner":
        """Load rules from a YAML script file."""
        with open(path, encoding="utf-8") as fh:
            raw = yaml.safe_load(fh) or {}
        return cls(rules=raw.get("rules", []), default=raw.get("default"))

    def add_rule(self, match: str, *responses: Dict[str, Any], context: Optional[str] = None) -> None:
        """Append a rule answering commands that match *match*."""
        self._rules.append(_ScriptRule(match, list(responses), context))

    async def run(
        self,
        command: str,
        context: TargetContext,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        self.calls.append((command, context.name))
        response = self._default
        for rule in self._rules:
            if rule.matches(command, context):
                response = rule.next_response()
                break
        delay = float(response.get("delay", 0.0))
        if delay > 0:
            await asyncio.sleep(delay)
        _logger.debug(f"Scripted response for: {command}")
        return CommandResult(
            exit_code=int(response.get("exit_code", 0)),
            stdout=str(response.get("stdout", "")),
            stderr=str(response.get("stderr", "")),
        )

    def commands(self, context: Optional[str] = None) -> List[str]:
        """Return the commands run so far, optionally for one context."""
        return [cmd for cmd, ctx in self.calls if context is None or ctx == context]
