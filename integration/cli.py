"""CLI helpers — argument parsing, output formatting, Rich widgets."""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from engine.schema import MatchResult, SessionSnapshot
from knowledge_base.store import KnowledgeBaseStore

console = Console(stderr=True)

_OUTCOME_STYLES: Dict[str, str] = {
    "resolved": "green",
    "escalated": "yellow",
    "cancelled": "magenta",
    "failed": "red",
}


# ── parsing helpers ────────────────────────────────────────────────


def parse_key_values(pairs: Iterable[str]) -> Dict[str, str]:
    """Parse ``key=value`` strings into a dict.

    Raises:
        ValueError: If an item has no ``=`` or an empty key.
    """
    out: Dict[str, str] = {}
    for item in pairs:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"expected key=value, got '{item}'")
        out[key.strip()] = value.strip()
    return out


def build_observation(symptoms: Iterable[str], signals: Mapping[str, str]) -> Dict[str, Any]:
    """Merge symptom tags and signal fields into one observation mapping."""
    observation: Dict[str, Any] = {tag: True for tag in symptoms}
    observation.update(signals)
    return observation


# ── formatting helpers ─────────────────────────────────────────────


def format_duration(seconds: float) -> str:
    """Format *seconds* as ``2m 34s`` or ``1.2s``."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    secs = seconds % 60
    return f"{minutes}m {secs:.0f}s"


def format_belief(belief: float) -> str:
    """Format *belief* (0.0-1.0) as a coloured percentage."""
    pct = belief * 100
    if pct >= 70:
        return f"[green]{pct:.0f}%[/green]"
    if pct >= 30:
        return f"[yellow]{pct:.0f}%[/yellow]"
    return f"[red]{pct:.0f}%[/red]"


def format_outcome(outcome: Optional[str]) -> str:
    """Colour an outcome label."""
    if not outcome:
        return "[dim]running[/dim]"
    style = _OUTCOME_STYLES.get(outcome, "white")
    return f"[{style}]{outcome}[/{style}]"


def _ts(value: Any) -> str:
    if value is None:
        return "-"
    if hasattr(value, "strftime"):
        return value.strftime("%H:%M:%S")
    return str(value)


# ── Rich widgets ───────────────────────────────────────────────────


def display_match_table(results: List[MatchResult]) -> None:
    """Print the symptom matcher's ranking."""
    table = Table(title="Matching Runbooks", show_header=True, header_style="bold magenta")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Entry", style="cyan", no_wrap=True)
    table.add_column("Score", justify="right")
    table.add_column("Tags", style="white")
    table.add_column("Signals", style="green")
    for rank, result in enumerate(results, start=1):
        table.add_row(
            str(rank),
            result.entry_id,
            f"{result.score:.2f}",
            ", ".join(result.matched_tags) or "-",
            ", ".join(result.matched_signals) or "-",
        )
    console.print(table)


def display_session_summary(snapshot: SessionSnapshot) -> None:
    """Display a panel summarising a finished session."""
    outcome = snapshot.outcome.value if snapshot.outcome else None
    confirmed = [h.cause_id for h in snapshot.hypotheses if h.status.value == "confirmed"]
    reason = snapshot.report.reason if snapshot.report else ""
    elapsed = (snapshot.updated_at - snapshot.created_at).total_seconds()

    body = (
        f"Session    : [cyan]{snapshot.session_id}[/cyan]\n"
        f"Incident   : {snapshot.incident_id}\n"
        f"Target     : {snapshot.context_name}\n"
        f"Outcome    : {format_outcome(outcome)}\n"
        f"Visited    : {' -> '.join(snapshot.visited_entries) or '-'}\n"
        f"Confirmed  : {', '.join(confirmed) or '-'}\n"
        f"Evidence   : {len(snapshot.evidence)}   Actions: {len(snapshot.actions)}\n"
        f"Duration   : {format_duration(elapsed)}"
    )
    if reason:
        body += f"\nReason     : {reason}"
    if snapshot.errors:
        body += f"\nErrors     : [red]{'; '.join(snapshot.errors)}[/red]"

    style = _OUTCOME_STYLES.get(outcome or "", "white")
    console.print(Panel(body, title="Session Result", border_style=style, padding=(1, 2)))


def display_hypotheses(snapshot: SessionSnapshot) -> None:
    """Print the belief table of a session."""
    table = Table(title="Hypotheses", show_header=True, header_style="bold magenta")
    table.add_column("Entry", style="dim")
    table.add_column("Cause", style="cyan")
    table.add_column("Belief", justify="right")
    table.add_column("Status")
    for h in snapshot.hypotheses:
        table.add_row(h.entry_id, h.cause_id, format_belief(h.belief), h.status.value)
    console.print(table)


def display_audit_table(rows: List[Mapping[str, Any]], title: str = "Audit Trail") -> None:
    """Print audit records (snapshot dumps or archived rows)."""
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Seq", justify="right", style="dim")
    table.add_column("Time")
    table.add_column("Actor", style="cyan")
    table.add_column("Transition")
    table.add_column("Action", style="green")
    table.add_column("Reason", style="white")
    for row in rows:
        table.add_row(
            str(row.get("sequence", "")),
            _ts(row.get("timestamp")),
            str(row.get("actor", "")),
            f"{row.get('from_status') or '∅'} → {row.get('to_status')}",
            str(row.get("action_id") or "-"),
            str(row.get("reason") or ""),
        )
    console.print(table)


def display_actions_table(rows: List[Mapping[str, Any]]) -> None:
    """Print action-log records."""
    if not rows:
        return
    table = Table(title="Action Log", show_header=True, header_style="bold magenta")
    table.add_column("Time")
    table.add_column("Action", style="cyan")
    table.add_column("Event")
    table.add_column("Actor", style="green")
    table.add_column("Risk", style="yellow")
    table.add_column("Exit", justify="right")
    for row in rows:
        exit_code = row.get("exit_code")
        table.add_row(
            _ts(row.get("timestamp")),
            str(row.get("action_id", "")),
            str(row.get("event", "")),
            str(row.get("actor", "")),
            str(row.get("risk") or "-"),
            "-" if exit_code is None else str(exit_code),
        )
    console.print(table)


def display_history_table(sessions: List[Mapping[str, Any]], counts: Mapping[str, int]) -> None:
    """Print archived sessions plus per-outcome totals."""
    table = Table(title="Archived Sessions", show_header=True, header_style="bold magenta")
    table.add_column("Session", style="cyan", no_wrap=True)
    table.add_column("Incident")
    table.add_column("Target")
    table.add_column("Outcome")
    table.add_column("Visited", style="white")
    table.add_column("Finished")
    for s in sessions:
        finished = s.get("finished_at")
        table.add_row(
            str(s.get("session_id", "")),
            str(s.get("incident_id", "")),
            str(s.get("context_name", "")),
            format_outcome(s.get("outcome")),
            ", ".join(s.get("visited_entries") or []) or "-",
            finished.isoformat(timespec="seconds") if hasattr(finished, "isoformat") else str(finished or "-"),
        )
    console.print(table)
    if counts:
        totals = "  ".join(f"{format_outcome(k)}: {v}" for k, v in sorted(counts.items()))
        console.print(f"\n[bold]Totals[/bold]  {totals}")


def display_kb_report(store: KnowledgeBaseStore) -> None:
    """Print loaded entries and any rejected ones."""
    table = Table(title="Knowledge Base", show_header=True, header_style="bold magenta")
    table.add_column("Entry", style="cyan", no_wrap=True)
    table.add_column("Causes", justify="right")
    table.add_column("Probes", justify="right")
    table.add_column("Actions", justify="right")
    table.add_column("Related", style="white")
    for entry in store.entries():
        table.add_row(
            entry.id,
            str(len(entry.causes)),
            str(sum(len(c.probes) for c in entry.causes)),
            str(sum(len(c.actions) for c in entry.causes)),
            ", ".join(entry.related) or "-",
        )
    console.print(table)
    for entry_id, reason in sorted(store.rejected.items()):
        console.print(f"[red]✗ rejected[/red] {entry_id}: {reason}")


def display_error(error: Exception, context: str = "") -> None:
    """Display a formatted error panel."""
    msg = f"[red]✗ Error{f' ({context})' if context else ''}[/red]\n\n{error}"
    console.print(Panel(msg, title="Error", border_style="red", padding=(1, 2)))


def approval_prompt_text(action_id: str, risk: str, command: str) -> Tuple[str, str]:
    """Return the (heading, question) pair shown at the approval gate."""
    heading = f"[bold yellow]Approval required[/bold yellow]  {action_id} ([yellow]{risk}[/yellow])\n  $ {command}"
    return heading, f"Approve {action_id}?"


def confirm(message: str, default: bool = True) -> bool:
    """Ask the user for yes/no confirmation."""
    suffix = " [Y/n] " if default else " [y/N] "
    resp = console.input(f"[bold]{message}{suffix}[/bold]").strip().lower()
    if not resp:
        return default
    return resp in ("y", "yes")
