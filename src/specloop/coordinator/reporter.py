"""Human-readable progress on stderr, driven by the event log."""

from __future__ import annotations

from typing import Any

from rich.console import Console
from rich.markup import escape


def _e(value: Any) -> str:
    return escape("" if value is None else str(value))


def _secs(value: Any) -> str:
    try:
        return f"{float(value):.0f}s"
    except (TypeError, ValueError):
        return "?"


class ConsoleReporter:
    """Subscribe an instance to :class:`EventLog` to print milestones."""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True, highlight=False)

    def __call__(self, record: dict[str, Any]) -> None:
        line = self.format(record)
        if line:
            self.console.print(line)

    def format(self, r: dict[str, Any]) -> str | None:
        event = r.get("event")
        if event == "run_started":
            return f"[bold]specloop[/bold] run {r.get('run_id')} ({_e(r.get('spec'))})"
        if event == "run_resumed":
            return f"[bold]specloop[/bold] resuming {r.get('run_id')} at {r.get('phase')}"
        if event == "phase_changed":
            iteration = f" (iteration {r['iteration']})" if r.get("iteration") else ""
            return f"[cyan]▸ {r.get('phase')}[/cyan]{iteration}"
        if event == "spec_frozen":
            return f"  spec frozen sha256:{str(r.get('hash', ''))[:12]}"
        if event == "acceptance_generated":
            return "  acceptance criteria generated (withheld from coding agents)"
        if event == "tasks_created":
            return f"  {r.get('count')} task(s) in scope"
        if event == "agent_started":
            return f"  [blue]→[/blue] {_e(r.get('task_id'))} {_e(r.get('title'))}"
        if event == "agent_finished":
            return f"  [dim]← {_e(r.get('task_id'))} {r.get('status')} in {_secs(r.get('duration_s'))}[/dim]"
        if event == "task_completed":
            return f"  [green]✓[/green] {_e(r.get('task_id'))}"
        if event == "task_retry":
            return f"  [yellow]↻[/yellow] {_e(r.get('task_id'))} retry {r.get('retry')} ({r.get('mode')})"
        if event == "task_blocked":
            return f"  [red]✗[/red] {_e(r.get('task_id'))} blocked: {_e(r.get('reason'))}"
        if event == "maintenance_started":
            return f"  [magenta]⚙ maintenance #{r.get('index')}[/magenta]"
        if event == "maintenance_finished":
            return f"  [magenta]⚙ maintenance #{r.get('index')} {r.get('status')}[/magenta]"
        if event == "maintenance_coalesced":
            return f"  [dim]maintenance trigger at {r.get('completed')} coalesced into running #{r.get('active')}[/dim]"
        if event == "judge_finished":
            verdict = "[green]PASS[/green]" if r.get("verdict") == "pass" else "[red]FAIL[/red]"
            return f"  judge iteration {r.get('iteration')}: {verdict} ({r.get('new_tasks', 0)} new task(s))"
        if event == "judge_integrity_violation":
            return "  [red]judge modified its read-only worktree; verdict discarded[/red]"
        if event == "pr_created":
            return f"  pull request: {r.get('url')}"
        if event == "pr_creation_failed":
            return f"  [yellow]pull request not created: {_e(r.get('error'))}[/yellow]"
        if event == "run_completed":
            return f"[bold green]run {r.get('run_id')} completed[/bold green] in {_secs(r.get('duration_s'))}"
        if event == "run_failed":
            return f"[bold red]run failed[/bold red] {r.get('code')}: {_e(r.get('message'))}"
        if event == "run_interrupted":
            return "[yellow]interrupted; agents terminated, checkpoint saved (resume with `specloop resume`)[/yellow]"
        return None
