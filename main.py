"""main.py — CLI entry point for the Runbook Remediation Engine.

Uses **Click** for command parsing and **Rich** for output.

Usage examples::

    python main.py run -s high_latency -g service=backend-service --script scripts/latency_scenario.yaml
    python main.py match -s crashloop_backoff -g reason=OOMKilled
    python main.py validate-kb --kb runbooks
    python main.py history --outcome escalated
    python main.py audit <session-id>
    python main.py serve --port 8000
    python main.py export-metrics -o metrics.prom
"""

from __future__ import annotations

import json
from contextlib import nullcontext
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

import click

from engine.schema import PendingApproval, SymptomSet
from engine.symptom_matcher import SymptomMatcher
from engine.target_context import ScriptedCommandRunner, TargetContext
from integration.cli import (
    approval_prompt_text,
    build_observation,
    confirm,
    console,
    display_actions_table,
    display_audit_table,
    display_error,
    display_history_table,
    display_hypotheses,
    display_kb_report,
    display_match_table,
    display_session_summary,
    parse_key_values,
)
from integration.config_manager import ConfigManager, SystemConfig
from integration.logger import get_logger, setup_logging
from integration.pipeline import Approver, RemediationRuntime, summarize
from knowledge_base.loader import load_knowledge_base
from knowledge_base.schema import KnowledgeBaseError

# Process exit status per session outcome.
_EXIT_CODES: Dict[str, int] = {
    "resolved": 0,
    "failed": 1,
    "escalated": 2,
    "cancelled": 3,
}


# ── Click group ────────────────────────────────────────────────────


@click.group(invoke_without_command=True)
@click.version_option(version="1.0.0", prog_name="rbengine")
@click.option(
    "--config",
    "config_path",
    default="config.yaml",
    envvar="RBENGINE_CONFIG",
    help="Path to config.yaml.",
    type=click.Path(),
)
@click.pass_context
def cli(ctx: click.Context, config_path: str) -> None:
    """Runbook Remediation Engine

    Diagnose Kubernetes incidents against a runbook knowledge base,
    gather evidence with read-only probes, and run approved remediations
    with automatic rollback.

    \b
    Quick start:
      python main.py validate-kb
      python main.py run -s high_latency -g service=backend-service
      python main.py --help
    """
    ctx.ensure_object(dict)
    try:
        cfg = ConfigManager.load(config_path)
    except Exception as exc:
        console.print(f"[red]Failed to load config:[/red] {exc}")
        raise SystemExit(2) from exc

    ctx.obj["config"] = cfg
    setup_logging(cfg.system.log_level)

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


# ── shared options ─────────────────────────────────────────────────


def _symptom_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option(
        "--signal", "-g", "signals", multiple=True,
        help="Structured signal as key=value.  Repeatable.",
    )(func)
    func = click.option(
        "--symptom", "-s", "symptoms", multiple=True,
        help="Symptom tag (e.g. high_latency).  Repeatable.",
    )(func)
    func = click.option("--kb", "kb_path", default=None, help="Knowledge base directory or file.")(func)
    return func


def _target_options(func: Callable[..., Any]) -> Callable[..., Any]:
    func = click.option("--var", "variables", multiple=True, help="Template variable key=value.  Repeatable.")(func)
    func = click.option("--namespace", "-n", default=None, help="Default namespace for commands.")(func)
    func = click.option("--kube-context", default=None, help="kubectl context to target.")(func)
    func = click.option("--context", "context_name", default=None, help="Target context name.")(func)
    func = click.option("--script", default=None, type=click.Path(exists=True),
                        help="Answer commands from a scripted-runner YAML instead of the shell.")(func)
    return func


def _observation(symptoms: Tuple[str, ...], signals: Tuple[str, ...]) -> Dict[str, Any]:
    try:
        parsed = parse_key_values(signals)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--signal") from exc
    return build_observation(symptoms, parsed)


def _with_kb(config: SystemConfig, kb_path: Optional[str]) -> SystemConfig:
    if not kb_path:
        return config
    return config.model_copy(
        update={"knowledge_base": config.knowledge_base.model_copy(update={"path": kb_path})},
    )


def _target(
    config: SystemConfig,
    context_name: Optional[str],
    kube_context: Optional[str],
    namespace: Optional[str],
    variables: Tuple[str, ...],
) -> TargetContext:
    base = config.to_target_context()
    try:
        extra = parse_key_values(variables)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--var") from exc
    return TargetContext(
        name=context_name or base.name,
        kube_context=kube_context or base.kube_context,
        namespace=namespace or base.namespace,
        variables={**base.variables, **extra},
        env=dict(base.env),
    )


def _build_runtime(config: SystemConfig, script: Optional[str]) -> RemediationRuntime:
    runner = ScriptedCommandRunner.from_file(script) if script else None
    try:
        return RemediationRuntime(config, runner=runner)
    except (KnowledgeBaseError, ValueError, OSError) as exc:
        display_error(exc, context="startup")
        raise SystemExit(2) from exc


def _interactive_approver(approver_name: str) -> Approver:
    def _ask(pending: PendingApproval) -> Optional[str]:
        heading, question = approval_prompt_text(pending.action_id, pending.risk.value, pending.command)
        console.print(heading)
        return approver_name if confirm(question, default=False) else None
    return _ask


# ── run ────────────────────────────────────────────────────────────


@cli.command()
@_symptom_options
@_target_options
@click.option("--incident-id", default=None, help="Incident key (one live session per incident).")
@click.option("--approver", default="operator", show_default=True, help="Actor recorded on approvals.")
@click.option("--auto-approve", is_flag=True, default=False,
              help="Approve every proposed action as --approver without prompting.")
@click.option("--timeout", default=None, type=float, help="Stop waiting after N seconds.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the result summary as JSON.")
@click.option("--metrics-file", default=None, type=click.Path(), help="Write Prometheus metrics here afterwards.")
@click.pass_context
def run(
    ctx: click.Context,
    symptoms: Tuple[str, ...],
    signals: Tuple[str, ...],
    kb_path: Optional[str],
    script: Optional[str],
    context_name: Optional[str],
    kube_context: Optional[str],
    namespace: Optional[str],
    variables: Tuple[str, ...],
    incident_id: Optional[str],
    approver: str,
    auto_approve: bool,
    timeout: Optional[float],
    as_json: bool,
    metrics_file: Optional[str],
) -> None:
    """Diagnose an incident and drive remediation to an outcome.

    Moderate and destructive actions wait for approval: you are prompted
    for each one unless --auto-approve is given.  Declining cancels the
    session.

    \b
    Examples:
      python main.py run -s high_latency -g service=backend-service \\
          --script scripts/latency_scenario.yaml
      python main.py run -s crashloop_backoff -g reason=OOMKilled -n payments --kube-context prod
    """
    config = _with_kb(ctx.obj["config"], kb_path)
    log = get_logger("cli.run")
    observation = _observation(symptoms, signals)
    if not observation:
        console.print("[red]Give at least one --symptom or --signal.[/red]")
        raise SystemExit(2)

    runtime = _build_runtime(config, script)
    target = _target(config, context_name, kube_context, namespace, variables)
    approve: Approver = (lambda pending: approver) if auto_approve else _interactive_approver(approver)

    log.info("run_started", symptoms=list(symptoms), context=target.name)
    try:
        status = console.status("[bold green]Diagnosing …") if auto_approve else nullcontext()
        with status:
            result = runtime.run_incident_sync(
                observation,
                approver=approve,
                incident_id=incident_id,
                context=target,
                timeout=timeout,
            )
    finally:
        runtime.close()

    snapshot = result.snapshot
    if snapshot is None:
        console.print(f"[red]Session {result.session_id} ended without a snapshot.[/red]")
        raise SystemExit(1)
    if as_json:
        click.echo(json.dumps(summarize(snapshot), indent=2))
    else:
        display_hypotheses(snapshot)
        display_actions_table([a.model_dump() for a in snapshot.actions])
        display_session_summary(snapshot)

    if metrics_file:
        Path(metrics_file).write_text(runtime.engine.export_metrics(), encoding="utf-8")
        console.print(f"[green]Metrics written to[/green] {metrics_file}")

    raise SystemExit(_EXIT_CODES.get(result.outcome, 1))


# ── match ──────────────────────────────────────────────────────────


@cli.command()
@_symptom_options
@click.option("--limit", default=10, show_default=True, help="Show at most N entries.")
@click.pass_context
def match(
    ctx: click.Context,
    symptoms: Tuple[str, ...],
    signals: Tuple[str, ...],
    kb_path: Optional[str],
    limit: int,
) -> None:
    """Show how the symptom matcher ranks runbook entries.

    \b
    Example:
      python main.py match -s high_latency -g metric=http_p90_latency
    """
    config = _with_kb(ctx.obj["config"], kb_path)
    store = load_knowledge_base(config.knowledge_base.path, strict=config.knowledge_base.strict)
    symptom_set = SymptomSet.from_observation(_observation(symptoms, signals))
    results = SymptomMatcher(config.to_engine_config()).rank(symptom_set, store.entries())
    if not results:
        console.print("[yellow]No runbook entry matches these symptoms.[/yellow]")
        raise SystemExit(1)
    display_match_table(results[:limit])


# ── validate-kb ────────────────────────────────────────────────────


@cli.command("validate-kb")
@click.option("--kb", "kb_path", default=None, help="Knowledge base directory or file.")
@click.option("--strict", is_flag=True, default=False, help="Stop at the first rejected entry.")
@click.pass_context
def validate_kb(ctx: click.Context, kb_path: Optional[str], strict: bool) -> None:
    """Load the knowledge base and report rejected entries.

    Exits non-zero when any entry is rejected.

    \b
    Example:
      python main.py validate-kb --kb runbooks
    """
    config = _with_kb(ctx.obj["config"], kb_path)
    path = config.knowledge_base.path
    if not Path(path).exists():
        console.print(f"[red]Knowledge base not found:[/red] {path}")
        raise SystemExit(2)
    try:
        store = load_knowledge_base(path, strict=strict)
    except KnowledgeBaseError as exc:
        display_error(exc, context=path)
        raise SystemExit(1) from exc

    display_kb_report(store)
    if store.rejected:
        console.print(f"[yellow]⚠ {len(store.rejected)} entries rejected.[/yellow]")
        raise SystemExit(1)
    console.print(f"[green]✅ {len(store)} entries loaded.[/green]")


# ── history ────────────────────────────────────────────────────────


def _repository(config: SystemConfig, database_url: Optional[str]) -> Any:
    from audit_store.config import AuditStoreConfig
    from audit_store.connection import DatabaseConnection
    from audit_store.repository import AuditRepository

    conn = DatabaseConnection(AuditStoreConfig(database_url=database_url or config.audit.database_url))
    conn.create_tables()
    return AuditRepository(conn)


@cli.command()
@click.option("--outcome", type=click.Choice(sorted(_EXIT_CODES)), default=None, help="Filter by outcome.")
@click.option("--limit", default=20, show_default=True, help="Show at most N sessions.")
@click.option("--database-url", default=None, help="Audit database (default: from config).")
@click.pass_context
def history(ctx: click.Context, outcome: Optional[str], limit: int, database_url: Optional[str]) -> None:
    """List archived sessions, newest first.

    \b
    Examples:
      python main.py history
      python main.py history --outcome escalated --limit 5
    """
    repo = _repository(ctx.obj["config"], database_url)
    sessions = repo.list_sessions(outcome=outcome, limit=limit)
    if not sessions:
        console.print("[yellow]No archived sessions.[/yellow]")
        return
    display_history_table(sessions, repo.outcome_counts())


# ── audit ──────────────────────────────────────────────────────────


@cli.command()
@click.argument("session_id")
@click.option("--database-url", default=None, help="Audit database (default: from config).")
@click.pass_context
def audit(ctx: click.Context, session_id: str, database_url: Optional[str]) -> None:
    """Show one archived session's audit trail and action log.

    \b
    Example:
      python main.py audit 3f1c9a7e-...
    """
    repo = _repository(ctx.obj["config"], database_url)
    record = repo.get_session(session_id)
    if record is None:
        console.print(f"[red]Unknown session:[/red] {session_id}")
        raise SystemExit(1)
    display_audit_table(repo.get_audit_trail(session_id), title=f"Audit Trail · {session_id}")
    display_actions_table(repo.get_actions(session_id))
    reason = (record.get("report") or {}).get("reason", "")
    console.print(f"\nOutcome: {record.get('outcome')}" + (f"  ({reason})" if reason else ""))


# ── serve ──────────────────────────────────────────────────────────


@cli.command()
@click.option("--host", "-h", default=None, help="Bind host (default: from config).")
@click.option("--port", "-p", default=None, type=int, help="Bind port (default: from config).")
@click.option("--script", default=None, type=click.Path(exists=True),
              help="Answer commands from a scripted-runner YAML instead of the shell.")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], script: Optional[str]) -> None:
    """Start the REST API server.

    \b
    Example:
      python main.py serve --port 8000
    """
    import uvicorn

    from api.dependencies import init_dependencies
    from api.server import app

    config: SystemConfig = ctx.obj["config"]
    bind_host = host or config.api.host
    bind_port = port or config.api.port

    runner = ScriptedCommandRunner.from_file(script) if script else None
    try:
        init_dependencies(config, runner=runner)
    except (KnowledgeBaseError, ValueError, OSError) as exc:
        display_error(exc, context="startup")
        raise SystemExit(2) from exc

    console.print(
        f"[bold green]Starting API server on {bind_host}:{bind_port} …[/bold green]",
    )
    console.print("Swagger UI → http://{0}:{1}/docs".format(bind_host, bind_port))
    uvicorn.run(app, host=bind_host, port=bind_port, log_level="info")


# ── export-metrics ─────────────────────────────────────────────────


@cli.command("export-metrics")
@_symptom_options
@click.option("--script", default=None, type=click.Path(exists=True),
              help="Answer commands from a scripted-runner YAML instead of the shell.")
@click.option("--output", "-o", default=None, type=click.Path(), help="Write to a file instead of stdout.")
@click.pass_context
def export_metrics(
    ctx: click.Context,
    symptoms: Tuple[str, ...],
    signals: Tuple[str, ...],
    kb_path: Optional[str],
    script: Optional[str],
    output: Optional[str],
) -> None:
    """Print the engine's Prometheus metrics.

    With symptoms, one session runs first (approvals are declined, so
    only diagnosis and safe actions execute).  Without, the exposition
    lists every metric family at zero.

    \b
    Examples:
      python main.py export-metrics
      python main.py export-metrics -s high_latency -g service=api --script scripts/latency_scenario.yaml
    """
    config = _with_kb(ctx.obj["config"], kb_path)
    config = config.model_copy(update={
        "metrics": config.metrics.model_copy(update={"enable_prometheus": True}),
        "audit": config.audit.model_copy(update={"enable": False}),
    })
    runtime = _build_runtime(config, script)
    observation = _observation(symptoms, signals)
    if observation:
        runtime.run_incident_sync(observation, approver=lambda pending: None)
    text = runtime.engine.export_metrics()
    if output:
        Path(output).write_text(text, encoding="utf-8")
        console.print(f"[green]Metrics written to[/green] {output}")
    else:
        click.echo(text, nl=False)


# ── validate ───────────────────────────────────────────────────────


@cli.command()
@click.option(
    "--config",
    "config_path",
    default="config.yaml",
    help="Config file to validate.",
    type=click.Path(),
)
def validate(config_path: str) -> None:
    """Validate the configuration file.

    \b
    Example:
      python main.py validate --config config.yaml
    """
    try:
        cfg = ConfigManager.load(config_path)
    except Exception as exc:
        console.print(f"[red]Invalid config:[/red] {exc}")
        raise SystemExit(1)

    issues = ConfigManager.validate(cfg)
    if issues:
        console.print("[yellow]⚠ Validation issues:[/yellow]")
        for issue in issues:
            console.print(f"  • {issue}")
        raise SystemExit(1)

    console.print("[green]✅ Configuration is valid.[/green]")
    console.print(f"  Version        : {cfg.system.version}")
    console.print(f"  Log level      : {cfg.system.log_level}")
    console.print(f"  Knowledge base : {cfg.knowledge_base.path}")
    console.print(f"  Target         : {cfg.target.name} (namespace {cfg.target.namespace})")
    console.print(f"  Audit database : {cfg.audit.database_url if cfg.audit.enable else 'disabled'}")


if __name__ == "__main__":
    cli()
