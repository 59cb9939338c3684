"""CLI entrypoint for specloop."""

from __future__ import annotations

import asyncio
import json
import shutil
import subprocess
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, NoReturn

import click
from rich.console import Console
from rich.table import Table

from specloop import __version__
from specloop.backends.registry import DETECTION_ORDER, detect_backend
from specloop.config.loader import CONFIG_RELPATH, apply_overrides, load_config
from specloop.config.schema import BACKENDS, SpecloopConfig
from specloop.coordinator.orchestrator import Orchestrator, RunInterrupted, RunOutcome, find_run_dir
from specloop.coordinator.reporter import ConsoleReporter
from specloop.coordinator.status import list_runs, summarize_run
from specloop.errors import EXIT_INTERRUPTED, OrchestratorError
from specloop.logger import get_logger, setup_logging

log = get_logger(__name__)

_stdout = Console(highlight=False)


@click.group()
@click.version_option(__version__, prog_name="specloop")
def main() -> None:
    """Spec-driven agent orchestration over a git-native task store."""


def _load_config(
    repo: Path,
    config_path: Path | None,
    *,
    concurrency: int | None = None,
    backend: str | None = None,
    timeout: str | None = None,
) -> SpecloopConfig:
    cfg = load_config(config_path or repo / CONFIG_RELPATH)
    return apply_overrides(cfg, concurrency=concurrency, backend=backend, timeout=timeout)


def _fail(exc: OrchestratorError, json_output: bool) -> NoReturn:
    if json_output:
        click.echo(json.dumps(exc.to_payload(), indent=2))
    else:
        click.echo(f"error [{exc.code}]: {exc}", err=True)
    raise SystemExit(exc.exit_code)


def _drive(
    json_output: bool,
    build: Callable[[], Awaitable[RunOutcome]],
) -> None:
    try:
        outcome = asyncio.run(build())
    except OrchestratorError as exc:
        _fail(exc, json_output)
    except RunInterrupted as exc:
        if json_output:
            click.echo(json.dumps({"ok": False, "interrupted": True, "run_id": exc.run_id}))
        else:
            click.echo(f"interrupted; resume with `specloop resume {exc.run_id}`", err=True)
        raise SystemExit(EXIT_INTERRUPTED) from None

    if json_output:
        click.echo(json.dumps(outcome.to_dict(), indent=2))
        return
    if outcome.status == "dry_run":
        _print_schedule(outcome)
    click.echo(outcome.message)


def _print_schedule(outcome: RunOutcome) -> None:
    table = Table(title=f"Schedule for {outcome.run_id}")
    table.add_column("#", justify="right")
    table.add_column("Task")
    table.add_column("Title")
    table.add_column("Impact", justify="right")
    table.add_column("Priority", justify="right")
    for row in outcome.schedule:
        table.add_row(
            str(row["position"]),
            row["task_id"],
            row["title"],
            str(row["impact_depth"]),
            f"P{row['priority']}",
        )
    _stdout.print(table)
    if outcome.unschedulable:
        _stdout.print(f"Never ready: {', '.join(outcome.unschedulable)}")


def _repo_option(f: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--repo",
        type=click.Path(exists=True, file_okay=False, path_type=Path),
        default=Path("."),
        show_default=True,
        help="Repository root",
    )(f)


@main.command("run")
@click.option("--spec", "spec_path", required=True, type=click.Path(path_type=Path), help="Specification file")
@click.option("--task-label", default="", help="Adopt open tasks with this label instead of decomposing")
@click.option("--dry-run", is_flag=True, help="Freeze and decompose, print the schedule, spawn no agents")
@click.option("--concurrency", type=int, default=None, help="Override agent.max_concurrency")
@click.option("--backend", type=click.Choice(BACKENDS), default=None, help="Override agent.backend")
@click.option("--timeout", default=None, help="Override agent.timeout_per_task (e.g. 30m)")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None)
@_repo_option
@click.option("--json", "json_output", is_flag=True, help="Machine-readable result on stdout")
@click.option("--debug", is_flag=True, help="Verbose logging on stderr")
def run_command(
    spec_path: Path,
    task_label: str,
    dry_run: bool,
    concurrency: int | None,
    backend: str | None,
    timeout: str | None,
    config_path: Path | None,
    repo: Path,
    json_output: bool,
    debug: bool,
) -> None:
    """Start a new run for a specification."""
    setup_logging(debug=debug, json_output=json_output)
    try:
        cfg = _load_config(repo, config_path, concurrency=concurrency, backend=backend, timeout=timeout)
    except OrchestratorError as exc:
        _fail(exc, json_output)
    log.debug("cli.run", spec=str(spec_path), dry_run=dry_run, task_label=task_label)

    async def start() -> RunOutcome:
        orch = Orchestrator(repo, cfg, reporter=ConsoleReporter())
        return await orch.start(spec_path, task_label=task_label, dry_run=dry_run)

    _drive(json_output, start)


@main.command("resume")
@click.argument("run_id", required=False)
@click.option("--concurrency", type=int, default=None, help="Override agent.max_concurrency")
@click.option("--backend", type=click.Choice(BACKENDS), default=None, help="Override agent.backend")
@click.option("--timeout", default=None, help="Override agent.timeout_per_task (e.g. 30m)")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None)
@_repo_option
@click.option("--json", "json_output", is_flag=True, help="Machine-readable result on stdout")
@click.option("--debug", is_flag=True, help="Verbose logging on stderr")
def resume_command(
    run_id: str | None,
    concurrency: int | None,
    backend: str | None,
    timeout: str | None,
    config_path: Path | None,
    repo: Path,
    json_output: bool,
    debug: bool,
) -> None:
    """Resume RUN_ID, or the most recent run, from its checkpoint."""
    setup_logging(debug=debug, json_output=json_output)
    try:
        cfg = _load_config(repo, config_path, concurrency=concurrency, backend=backend, timeout=timeout)
    except OrchestratorError as exc:
        _fail(exc, json_output)
    log.debug("cli.resume", run_id=run_id)

    async def resume() -> RunOutcome:
        orch = Orchestrator(repo, cfg, reporter=ConsoleReporter())
        return await orch.resume(run_id)

    _drive(json_output, resume)


@main.command("status")
@click.argument("run_id", required=False)
@_repo_option
@click.option("--json", "json_output", is_flag=True, help="Machine-readable result on stdout")
def status_command(run_id: str | None, repo: Path, json_output: bool) -> None:
    """List runs, or summarize one run."""
    setup_logging(json_output=json_output)
    if run_id is None:
        rows = list_runs(repo)
        if json_output:
            click.echo(json.dumps({"ok": True, "runs": rows}, indent=2))
            return
        if not rows:
            click.echo("No runs yet.")
            return
        table = Table(title="specloop runs")
        for column in ("Run", "State", "Iteration", "Spec"):
            table.add_column(column)
        for row in rows:
            table.add_row(row["run_id"], row["state"], str(row.get("iteration", "")), row.get("spec", ""))
        _stdout.print(table)
        return

    try:
        summary = summarize_run(find_run_dir(repo, run_id))
    except OrchestratorError as exc:
        _fail(exc, json_output)
    if json_output:
        click.echo(json.dumps({"ok": True, **summary}, indent=2, default=str))
        return
    tasks = summary["tasks"]
    click.echo(f"run:        {summary['run_id']}")
    click.echo(f"state:      {summary['state']} (iteration {summary['iteration']})")
    click.echo(f"spec:       {summary['spec']}")
    click.echo(f"branch:     {summary['target_branch']} (base {summary['base_branch']})")
    click.echo(
        f"tasks:      {tasks['completed']}/{tasks['total']} completed, "
        f"{tasks['in_progress']} in progress, {tasks['blocked']} blocked"
    )
    click.echo(f"agents:     {summary['total_agent_spawns']} spawned, {len(summary['active_agents'])} active")
    click.echo(f"locked:     {'yes' if summary['locked'] else 'no'}")
    if summary["error"]:
        click.echo(f"error:      {summary['error'].get('code')}: {summary['error'].get('message')}")
    for event in summary["recent_events"]:
        click.echo(f"  {event.get('ts', '')} {event.get('event', '')}")


def _probe(binary: str) -> tuple[bool, str]:
    path = shutil.which(binary)
    if path is None:
        return False, "not found in PATH"
    try:
        probe = subprocess.run([binary, "--version"], capture_output=True, text=True, timeout=5, check=False)
    except (OSError, subprocess.TimeoutExpired) as exc:
        return False, f"probe failed: {exc}"
    version = (probe.stdout or probe.stderr).strip().splitlines()
    return True, version[0] if version else path


@main.command("doctor")
@click.option("--backend", type=click.Choice(BACKENDS), default=None, help="Backend to check (default: agent.backend)")
@click.option("--config", "config_path", type=click.Path(dir_okay=False, path_type=Path), default=None)
@_repo_option
def doctor_command(backend: str | None, config_path: Path | None, repo: Path) -> None:
    """Check agent CLIs, git and the task store command."""
    setup_logging()
    try:
        cfg = _load_config(repo, config_path)
    except OrchestratorError as exc:
        _fail(exc, False)

    table = Table(title="specloop doctor")
    table.add_column("Check")
    table.add_column("Status")
    table.add_column("Details")
    for name, binary, hint in DETECTION_ORDER:
        ok, details = _probe(binary)
        table.add_row(f"backend {name}", "OK" if ok else "missing", details if ok else hint)
    for label, binary in (("git", "git"), ("task store", cfg.store.command.split()[0] if cfg.store.command else "")):
        ok, details = _probe(binary) if binary else (False, "store.command is empty")
        table.add_row(label, "OK" if ok else "missing", details)
    _stdout.print(table)

    try:
        chosen = detect_backend(backend or cfg.agent.backend, cfg.agent.command)
    except OrchestratorError as exc:
        click.echo(f"error [{exc.code}]: {exc}", err=True)
        raise SystemExit(exc.exit_code) from None
    click.echo(f"backend: {chosen}")
