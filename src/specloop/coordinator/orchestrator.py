"""Phase state machine driving one specloop run.

Freeze -> Decompose -> Implement/Maintain -> Judge, looping back to
Implement with remediation tasks until the judge passes or the iteration
limit is reached. Every transition is checkpointed before its event is
emitted, so a crash at any point resumes from the last saved phase.

Collaborators (task store, agent and judge backends, worktree manager) are
injectable; by default they are built from the loaded configuration.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import logging
import os
import signal
import subprocess
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from specloop.backends import (
    AgentBackend,
    JudgeBackend,
    JudgeRequest,
    SpawnOptions,
    create_agent_backend,
    create_judge_backend,
)
from specloop.config.loader import task_timeout_seconds
from specloop.config.schema import SpecloopConfig
from specloop.coordinator.acceptance import AcceptanceManager
from specloop.coordinator.event_log import EventLog, Subscriber
from specloop.coordinator.pool import AgentPool, AgentSlot
from specloop.coordinator.run_log import RunLogWriter
from specloop.coordinator.scheduler import Scheduler
from specloop.errors import (
    ConfigurationError,
    ErrorCategory,
    ErrorCode,
    GraphError,
    IterationLimitError,
    OrchestratorError,
    PreconditionError,
    RuntimeOrchestrationError,
)
from specloop.logger import bind_run
from specloop.persistence.checkpoint import (
    CHECKPOINT_FILENAME,
    CheckpointManager,
    compute_file_hash,
    verify_spec_hash,
)
from specloop.persistence.run_lock import RunLock
from specloop.prompts import (
    OBSERVATION_LABEL,
    build_coding_prompt,
    build_decomposition_prompt,
    build_maintenance_prompt,
    load_guidelines,
    run_label,
)
from specloop.protocol.io import write_text_atomic, write_yaml_atomic
from specloop.protocol.judge import JudgeResult
from specloop.protocol.models import (
    ActiveAgent,
    AgentResult,
    AgentStatus,
    Checkpoint,
    MaintenanceRun,
    RunPhase,
    Task,
    TaskStatus,
    WorktreeRecord,
    default_run_layout,
    parse_iso,
    runs_root,
    state_root,
    utc_now_iso,
    worktrees_root,
)
from specloop.runner.process import group_alive, kill_orphan, terminate_all
from specloop.store import CliTaskStore, TaskStore
from specloop.workspace.publish import PublishError, create_pull_request, rebase_and_push
from specloop.workspace.worktree import WorktreeError, WorktreeManager

logger = logging.getLogger(__name__)

ACCEPTANCE_TIMEOUT_S = 300.0
RUN_ID_ENV = "SPECLOOP_RUN_ID"
TARGET_BRANCH_ENV = "SPECLOOP_TARGET_BRANCH"

MAINTENANCE_LABEL = "maintenance"
REMEDIATION_LABEL = "remediation"
PROMOTED_LABEL = "promoted-observation"
# Tasks carrying these labels share the run label but are never scheduled.
UNSCHEDULED_LABELS = frozenset({OBSERVATION_LABEL, MAINTENANCE_LABEL})
# Closed tasks drop out of these listings, and with them their edges.
UNFINISHED_STATUSES = (TaskStatus.OPEN, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED)

# Failures the operator can fix outside the run; the run stays resumable.
RESUMABLE_CATEGORIES = frozenset({ErrorCategory.CONFIGURATION, ErrorCategory.PRECONDITION})
RESUMABLE_CODES = frozenset({ErrorCode.EXTERNAL_BLOCKED})

FRESH = "fresh"
INCOMPLETE = "incomplete"


class RunInterrupted(Exception):
    """Raised after SIGINT/SIGTERM once agents are stopped and state is saved."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} interrupted")
        self.run_id = run_id


@dataclass(slots=True)
class RunOutcome:
    run_id: str
    status: str  # completed | dry_run
    run_dir: str
    iterations: int = 0
    total_tasks: int = 0
    message: str = ""
    schedule: list[dict[str, Any]] = field(default_factory=list)
    unschedulable: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, **asdict(self)}


def new_run_id(spec_bytes: bytes, now: datetime | None = None) -> str:
    """``run-YYYYMMDD-HHMMSS-<hash8>``; sorts chronologically."""
    now = now or datetime.now(UTC)
    digest = hashlib.sha256(spec_bytes + now.isoformat().encode() + os.urandom(8)).hexdigest()
    return f"run-{now:%Y%m%d-%H%M%S}-{digest[:8]}"


def find_run_dir(repo_root: Path, run_id: str | None = None) -> Path:
    """Locate a run directory, defaulting to the most recent one."""
    root = runs_root(repo_root)
    if run_id:
        run_dir = root / run_id
        if not (run_dir / CHECKPOINT_FILENAME).exists():
            raise PreconditionError(f"Run not found: {run_id}", code=ErrorCode.RUN_NOT_FOUND)
        return run_dir
    candidates = (
        sorted(p for p in root.iterdir() if (p / CHECKPOINT_FILENAME).exists()) if root.is_dir() else []
    )
    if not candidates:
        raise PreconditionError(f"No runs found under {root}", code=ErrorCode.RUN_NOT_FOUND)
    return candidates[-1]


def _refuse_terminal(checkpoint: Checkpoint) -> None:
    if checkpoint.state.terminal:
        raise PreconditionError(
            f"Run {checkpoint.run_id} already {checkpoint.state}; start a new run instead",
            code=ErrorCode.RUN_TERMINAL,
            details={"state": str(checkpoint.state)},
        )


class Orchestrator:
    def __init__(
        self,
        repo_root: Path,
        config: SpecloopConfig,
        *,
        store: TaskStore | None = None,
        agent_backend: AgentBackend | None = None,
        judge_backend: JudgeBackend | None = None,
        worktrees: WorktreeManager | None = None,
        reporter: Subscriber | None = None,
    ) -> None:
        self.repo_root = Path(repo_root).resolve()
        self.config = config
        self._store = store
        self._agent_backend = agent_backend
        self._judge_backend = judge_backend
        self.worktrees = worktrees or WorktreeManager(
            self.repo_root,
            worktrees_root(self.repo_root),
            branch_prefix=config.worktree.branch_prefix,
        )
        self.reporter = reporter
        self.timeout_s = task_timeout_seconds(config)

        self.scheduler = Scheduler()
        self.pool = AgentPool(config.agent.max_concurrency)

        # Per-run state, populated by _open_run.
        self.checkpoint: Checkpoint | None = None
        self.layout: dict[str, Path] = {}
        self.events = EventLog()
        self.run_log: RunLogWriter | None = None
        self.lock: RunLock | None = None
        self._checkpoints: CheckpointManager | None = None
        self._completed: set[str] = set()
        self._in_progress: set[str] = set()
        self._blocked: set[str] = set()
        self._frozen_text = ""
        self._guidelines = ""
        self._lock_lost = False
        self._interrupted = False

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    @property
    def store(self) -> TaskStore:
        if self._store is None:
            self._store = CliTaskStore(self.repo_root, self.config.store.command, events=self.events)
        return self._store

    @property
    def agent_backend(self) -> AgentBackend:
        if self._agent_backend is None:
            self._agent_backend = create_agent_backend(self.config.agent)
        return self._agent_backend

    @property
    def judge_backend(self) -> JudgeBackend:
        if self._judge_backend is None:
            self._judge_backend = create_judge_backend(self.config.agent)
        return self._judge_backend

    def _resolve_backends(self) -> None:
        """Fail before any state is written when no agent CLI is usable."""
        _ = self.agent_backend
        if self.config.phases.judge.enabled:
            _ = self.judge_backend

    @property
    def cp(self) -> Checkpoint:
        if self.checkpoint is None:
            raise RuntimeError("no run is open")
        return self.checkpoint

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start(self, spec_path: str | Path, *, task_label: str = "", dry_run: bool = False) -> RunOutcome:
        """Start a new run for ``spec_path``."""
        spec = Path(spec_path).expanduser().resolve()
        if not spec.is_file():
            raise ConfigurationError(f"Spec file not found: {spec}", code=ErrorCode.SPEC_NOT_FOUND)
        self._resolve_backends()

        run_id = new_run_id(spec.read_bytes())
        run_dir = runs_root(self.repo_root) / run_id
        layout = default_run_layout(run_dir)
        if self.config.integration_mode:
            target = self.worktrees.integration_branch_name(run_id)
        else:
            target = self.config.target_branch
        checkpoint = Checkpoint(
            run_id=run_id,
            spec_path=str(spec),
            frozen_spec_path=str(layout["frozen_spec"]),
            frozen_spec_hash="",
            target_branch=target,
            base_branch=self.config.worktree.base_branch,
            task_label=task_label,
        )
        run_dir.mkdir(parents=True, exist_ok=False)
        self._open_run(run_dir, checkpoint, resumed=False)

        async def work() -> RunOutcome:
            self._save()
            self.run_log.flush()
            self.events.emit("run_started", run_id=run_id, spec=str(spec), target_branch=target, dry_run=dry_run)
            return await self._execute(dry_run=dry_run)

        return await self._guarded(work)

    async def resume(self, run_id: str | None = None) -> RunOutcome:
        """Resume ``run_id`` (or the most recent run) from its checkpoint."""
        run_dir = find_run_dir(self.repo_root, run_id)
        # Read-only until the lock is ours: a live run may be mid-write.
        checkpoint = CheckpointManager(run_dir).load(discard_tmp=False)
        _refuse_terminal(checkpoint)
        self._resolve_backends()
        self._open_run(run_dir, checkpoint, resumed=True)

        async def work() -> RunOutcome:
            cp = self.cp
            if cp.frozen_spec_hash:
                verify_spec_hash(Path(cp.frozen_spec_path), cp.frozen_spec_hash)
            if cp.acceptance_path:
                AcceptanceManager(Path(cp.acceptance_path), generated=cp.acceptance_generated).verify()
            await self._reconcile()
            self._save()
            self.events.emit("run_resumed", run_id=cp.run_id, phase=str(cp.state), iteration=cp.iteration)
            return await self._execute(dry_run=False)

        return await self._guarded(work)

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def _open_run(self, run_dir: Path, checkpoint: Checkpoint, *, resumed: bool) -> None:
        self.layout = default_run_layout(run_dir)
        self.layout["judge_results"].mkdir(parents=True, exist_ok=True)
        self._checkpoints = CheckpointManager(run_dir)
        self.lock = RunLock(self.layout["lock"], checkpoint.run_id)
        self.lock.acquire()
        if resumed:
            # Reload under the lock; only the holder may drop an interrupted write.
            try:
                checkpoint = self._checkpoints.load()
                _refuse_terminal(checkpoint)
            except OrchestratorError:
                self.lock.release()
                raise
        self.checkpoint = checkpoint

        bind_run(checkpoint.run_id)
        self.events = EventLog(self.layout["events"])
        if self.reporter is not None:
            self.events.subscribe(self.reporter)
        if isinstance(self._store, CliTaskStore):
            self._store.events = self.events

        self.run_log = RunLogWriter(
            run_dir, checkpoint.run_id, checkpoint.spec_path, checkpoint.target_branch
        )
        if resumed:
            self.run_log.load()

        self._completed = set(checkpoint.tasks.completed)
        self._in_progress = set(checkpoint.tasks.in_progress)
        self._blocked = set(checkpoint.tasks.blocked)
        self._guidelines = load_guidelines(
            state_root(self.repo_root) / "guidelines", self.config.phases.implement.guidelines
        )
        self._lock_lost = False
        self._interrupted = False

    async def _guarded(self, work: Callable[[], Awaitable[RunOutcome]]) -> RunOutcome:
        loop = asyncio.get_running_loop()
        main = asyncio.current_task()
        installed = self._install_signal_handlers(loop, main)
        assert self.lock is not None
        self.lock.start_heartbeat(self._on_lock_lost)
        try:
            return await work()
        except asyncio.CancelledError:
            if not self._interrupted:
                raise
            if main is not None:
                main.uncancel()
            await self._handle_interrupt()
            raise RunInterrupted(self.cp.run_id) from None
        except OrchestratorError as exc:
            await self._fail(exc)
            raise
        except Exception as exc:
            await self._crash(exc)
            raise
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.lock.stop_heartbeat()
            self.lock.release()

    def _install_signal_handlers(
        self, loop: asyncio.AbstractEventLoop, main: asyncio.Task[Any] | None
    ) -> list[signal.Signals]:
        installed: list[signal.Signals] = []
        if main is None:
            return installed
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig, main)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(sig)
        return installed

    def _on_signal(self, sig: signal.Signals, main: asyncio.Task[Any]) -> None:
        if self._interrupted:
            return
        logger.warning("received %s, shutting down", sig.name)
        self._interrupted = True
        main.cancel()

    def _on_lock_lost(self) -> None:
        self._lock_lost = True

    async def _handle_interrupt(self) -> None:
        stopped = await self.pool.cancel_all()
        stopped += await terminate_all()
        if not self._lock_lost:
            self._save()
            self.run_log.interrupt()
            self.run_log.flush()
        self.events.emit("run_interrupted", run_id=self.cp.run_id, phase=str(self.cp.state), agents=stopped)

    async def _fail(self, exc: OrchestratorError) -> None:
        await self.pool.cancel_all()
        cp = self.cp
        payload = exc.to_payload()["error"]
        if self._lock_lost:
            self.events.emit("run_failed", run_id=cp.run_id, code=str(exc.code), message=str(exc))
            return
        if exc.category not in RESUMABLE_CATEGORIES and exc.code not in RESUMABLE_CODES:
            cp.state = RunPhase.FAILED
            cp.error = payload
            self.run_log.fail(f"{exc.code}: {exc}")
        self._save()
        self.run_log.flush()
        self.events.emit("run_failed", run_id=cp.run_id, code=str(exc.code), message=str(exc))

    async def _crash(self, exc: Exception) -> None:
        logger.exception("orchestrator crashed in phase %s", self.cp.state)
        await self.pool.cancel_all()
        if not self._lock_lost:
            self._save()
            self.run_log.flush()
        self.events.emit("run_crashed", run_id=self.cp.run_id, error=f"{type(exc).__name__}: {exc}")

    def _save(self) -> None:
        if self._lock_lost or self._checkpoints is None:
            return
        cp = self.cp
        cp.tasks.completed = sorted(self._completed)
        cp.tasks.in_progress = sorted(self._in_progress)
        cp.tasks.blocked = sorted(self._blocked)
        self._checkpoints.save(cp)

    def _transition(self, phase: RunPhase) -> None:
        self.cp.state = phase
        self._save()
        self.events.emit("phase_changed", phase=str(phase), iteration=self.cp.iteration)

    def _check_lock(self) -> None:
        if self._lock_lost:
            raise PreconditionError(
                f"Lost the run lock for {self.cp.run_id} to another process",
                code=ErrorCode.RUN_LOCKED,
            )

    def _verify_spec(self) -> None:
        verify_spec_hash(Path(self.cp.frozen_spec_path), self.cp.frozen_spec_hash)

    def _agent_env(self) -> dict[str, str]:
        return {RUN_ID_ENV: self.cp.run_id, TARGET_BRANCH_ENV: self.cp.target_branch}

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def _execute(self, *, dry_run: bool) -> RunOutcome:
        cp = self.cp
        await self._freeze(dry_run=dry_run)
        if cp.state in (RunPhase.FREEZING, RunPhase.DECOMPOSING):
            await self._decompose(dry_run=dry_run)
        if dry_run:
            return await self._dry_run_report()

        self._frozen_text = Path(cp.frozen_spec_path).read_text(encoding="utf-8")
        max_iterations = self.config.phases.judge.max_iterations
        while cp.iteration <= max_iterations:
            self.run_log.start_iteration(cp.iteration)
            if cp.state != RunPhase.JUDGING:
                await self._implement()
            if not self.config.phases.judge.enabled:
                self.run_log.update_iteration(judge_verdict="skipped")
                return await self._complete()
            result = await self._judge()
            if result.passed:
                return await self._complete()
            if cp.iteration >= max_iterations:
                break
            judged = cp.iteration
            # Committed before any store call: a resume must not judge this
            # iteration again and duplicate its remediation tasks.
            cp.iteration += 1
            cp.state = RunPhase.IMPLEMENTING
            self._save()
            await self._remediate(result, judged)
            self.run_log.flush()

        raise IterationLimitError(
            f"Judge did not pass within {max_iterations} iteration(s)",
            iterations=max_iterations,
        )

    async def _complete(self) -> RunOutcome:
        cp = self.cp
        if (
            cp.integration_branch
            and self.config.phases.judge.on_complete == "pr"
            and self.config.phases.judge.enabled
        ):
            await self._publish()
        cp.state = RunPhase.COMPLETED
        cp.error = {}
        self._save()
        self.run_log.complete(total_tasks=cp.tasks.total, total_agent_spawns=cp.total_agent_spawns)
        self.run_log.flush()
        started = parse_iso(cp.created_at)
        duration = (datetime.now(UTC) - started).total_seconds() if started else 0.0
        self.events.emit(
            "run_completed", run_id=cp.run_id, iterations=cp.iteration, duration_s=round(duration, 1)
        )
        return RunOutcome(
            run_id=cp.run_id,
            status="completed",
            run_dir=str(self.layout["root"]),
            iterations=cp.iteration,
            total_tasks=cp.tasks.total,
            message=f"Completed after {cp.iteration} iteration(s) on {cp.target_branch}",
        )

    # ------------------------------------------------------------------
    # Freeze
    # ------------------------------------------------------------------

    async def _freeze(self, *, dry_run: bool) -> None:
        """Copy and hash the spec, create the integration branch, prepare acceptance.

        Each step is skipped when the checkpoint shows it already happened.
        A dry run stops after the copy: it creates no branches and spawns no agents.
        """
        cp = self.cp
        if not cp.frozen_spec_hash:
            self._transition(RunPhase.FREEZING)
            spec = Path(cp.spec_path)
            if not spec.is_file():
                raise ConfigurationError(f"Spec file not found: {spec}", code=ErrorCode.SPEC_NOT_FOUND)
            frozen = Path(cp.frozen_spec_path)
            write_text_atomic(frozen, spec.read_text(encoding="utf-8"))
            cp.frozen_spec_hash = compute_file_hash(frozen)
            self._save()
            self.events.emit("spec_frozen", path=str(frozen), hash=cp.frozen_spec_hash)
        else:
            self._verify_spec()

        if dry_run:
            return

        if self.config.integration_mode and not cp.integration_branch:
            branch = await asyncio.to_thread(
                self.worktrees.create_integration_branch, cp.run_id, cp.base_branch
            )
            cp.target_branch = branch
            cp.integration_branch = True
            self._save()
            self.events.emit("integration_branch_created", branch=branch, base=cp.base_branch)

        if not cp.acceptance_path and self.config.phases.judge.enabled:
            await self._prepare_acceptance()

    async def _prepare_acceptance(self) -> None:
        cp = self.cp
        settings = self.config.acceptance
        if settings.generate:
            manager = AcceptanceManager.for_run(cp.run_id)
            frozen = Path(cp.frozen_spec_path).read_text(encoding="utf-8")
            await manager.generate(frozen, self._spawn_text)
            cp.acceptance_generated = True
        else:
            path = Path(settings.path).expanduser()
            if not path.is_absolute():
                path = self.repo_root / path
            manager = AcceptanceManager(path, generated=False)
            manager.verify()
        cp.acceptance_path = str(manager.path)
        self._save()
        self.events.emit("acceptance_generated", path=cp.acceptance_path, generated=cp.acceptance_generated)

    async def _spawn_text(self, prompt: str) -> str:
        self.cp.total_agent_spawns += 1
        result = await self.agent_backend.spawn(
            SpawnOptions(
                workdir=str(self.repo_root),
                prompt=prompt,
                timeout_s=ACCEPTANCE_TIMEOUT_S,
                env=self._agent_env(),
                output_format="text",
            )
        )
        if result.status != AgentStatus.SUCCESS:
            raise PreconditionError(
                f"Acceptance generation failed ({result.status}):\n{result.last_lines[-2000:]}",
                code=ErrorCode.ACCEPTANCE_MISSING,
            )
        return result.last_lines

    # ------------------------------------------------------------------
    # Decompose
    # ------------------------------------------------------------------

    async def _decompose(self, *, dry_run: bool) -> None:
        cp = self.cp
        self._transition(RunPhase.DECOMPOSING)
        label = run_label(cp.run_id)
        settings = self.config.phases.decompose
        selector = cp.task_label or settings.existing_selector
        source = "selector"

        if selector:
            selected = await self.store.list_tasks(labels=[selector], status="open", strict=True)
            if not selected:
                raise PreconditionError(
                    f"No open tasks match label {selector!r}",
                    code=ErrorCode.TASK_SCOPE_AMBIGUOUS,
                )
            if len(selected) > settings.max_selected_tasks:
                raise PreconditionError(
                    f"Label {selector!r} selects {len(selected)} tasks "
                    f"(limit phases.decompose.max_selected_tasks={settings.max_selected_tasks})",
                    code=ErrorCode.TASK_SCOPE_AMBIGUOUS,
                )
            for task in selected:
                await self.store.add_label(task.id, label)
            count = len(selected)
        else:
            existing = await self._scoped_tasks()
            if existing:
                # A previous attempt already decomposed before crashing.
                count, source = len(existing), "existing"
            elif not settings.auto:
                open_tasks = await self.store.list_tasks(status="open", strict=True)
                raise PreconditionError(
                    f"No task selector given and automatic decomposition is disabled "
                    f"({len(open_tasks)} open task(s) in the store). "
                    "Pass --task-label or set phases.decompose.existing_selector.",
                    code=ErrorCode.TASK_SCOPE_AMBIGUOUS,
                    details={"open_tasks": len(open_tasks)},
                )
            elif dry_run:
                self.events.emit("decomposition_deferred", reason="dry run spawns no agents")
                return
            else:
                count, source = await self._run_decomposition_agent(), "agent"

        cp.tasks.total = count
        self.run_log.start_iteration(cp.iteration)
        self.run_log.update_iteration(tasks_total=count)
        self.run_log.flush()
        if dry_run:
            self._save()
        else:
            self._transition(RunPhase.IMPLEMENTING)
        self.events.emit("tasks_created", count=count, source=source)

    async def _run_decomposition_agent(self) -> int:
        cp = self.cp
        cp.total_agent_spawns += 1
        self._save()
        result = await self.agent_backend.spawn(
            SpawnOptions(
                workdir=str(self.repo_root),
                prompt=build_decomposition_prompt(
                    frozen_spec=Path(cp.frozen_spec_path).read_text(encoding="utf-8"),
                    run_id=cp.run_id,
                    store_command=self.config.store.command,
                ),
                timeout_s=self.timeout_s,
                system_prompt=self._guidelines,
                env=self._agent_env(),
            )
        )
        if result.status != AgentStatus.SUCCESS:
            raise RuntimeOrchestrationError(
                f"Decomposition agent {result.status} (exit {result.exit_code}):\n{result.last_lines[-2000:]}",
                code=ErrorCode.DECOMPOSE_FAILED,
            )
        created = await self._scoped_tasks()
        if not created:
            raise RuntimeOrchestrationError(
                "Decomposition agent finished without creating any tasks",
                code=ErrorCode.DECOMPOSE_FAILED,
            )
        return len(created)

    async def _scoped_tasks(self) -> list[Task]:
        tasks = await self.store.list_tasks(labels=[run_label(self.cp.run_id)], strict=True)
        return [t for t in tasks if not UNSCHEDULED_LABELS.intersection(t.labels)]

    async def _dry_run_report(self) -> RunOutcome:
        cp = self.cp
        await self._refresh()
        order, unschedulable = self.scheduler.plan(self._completed, self._blocked)
        schedule = [asdict(p) for p in order]
        write_yaml_atomic(
            self.layout["schedule"],
            {
                "run_id": cp.run_id,
                "generated_at": utc_now_iso(),
                "target_branch": cp.target_branch,
                "max_concurrency": self.config.agent.max_concurrency,
                "tasks": schedule,
                "unschedulable": unschedulable,
            },
        )
        self._save()
        self.run_log.flush()
        self.events.emit("dry_run_completed", tasks=len(schedule), unschedulable=len(unschedulable))
        if schedule:
            message = f"{len(schedule)} task(s) would be scheduled; resume with `specloop resume {cp.run_id}`"
        else:
            message = "No tasks in scope yet; a decomposition agent will create them on resume"
        return RunOutcome(
            run_id=cp.run_id,
            status="dry_run",
            run_dir=str(self.layout["root"]),
            total_tasks=len(self.scheduler.scope),
            message=message,
            schedule=schedule,
            unschedulable=unschedulable,
        )

    # ------------------------------------------------------------------
    # Implement
    # ------------------------------------------------------------------

    async def _refresh(self) -> None:
        """Re-read scope and unfinished blockers from the store and rebuild the graph."""
        scoped = await self._scoped_tasks()
        merged: dict[str, Task] = {}
        for status in UNFINISHED_STATUSES:
            for task in await self.store.list_tasks(status=status.value, strict=True):
                merged[task.id] = task
        merged.update({t.id: t for t in scoped})
        self.scheduler.set_scope(t.id for t in scoped)
        self.scheduler.rebuild(merged.values())

        scope = self.scheduler.scope
        cycles = [c for c in self.scheduler.check_cycles() if scope.intersection(c)]
        if cycles:
            raise GraphError(
                "Dependency cycle(s): " + "; ".join(" -> ".join(c) for c in cycles),
                cycles=cycles,
                details={"cycles": cycles},
            )

        closed_outside = [
            t.id
            for t in scoped
            if t.status == TaskStatus.CLOSED
            and t.id not in self._completed
            and t.id not in self._in_progress
        ]
        if closed_outside:
            self._completed.update(closed_outside)
            self._blocked.difference_update(closed_outside)
            self._save()
            for task_id in closed_outside:
                self.events.emit("task_completed", task_id=task_id, source="store")

    async def _implement(self) -> None:
        cp = self.cp
        self._transition(RunPhase.IMPLEMENTING)
        self._verify_spec()
        await self._refresh()
        self.run_log.update_iteration(tasks_total=len(self.scheduler.scope))
        self.run_log.flush()
        spawns_before = cp.total_agent_spawns

        while True:
            self._check_lock()
            if self.pool.has_capacity:
                await self._refresh()
                while self.pool.has_capacity:
                    task = self.scheduler.pick_next(self._completed, self._in_progress, self._blocked)
                    if task is None:
                        break
                    await self._launch(task)

            if self.pool.active_count() == 0:
                if self.scheduler.ready_tasks(self._completed, self._in_progress, self._blocked):
                    continue
                report = self.scheduler.detect_deadlock(
                    self._completed, self._in_progress, self._blocked, 0
                )
                if report is not None:
                    raise GraphError(
                        report.message,
                        code=report.code,
                        details={"kind": report.kind, "waiting": report.waiting},
                    )
                if await self._after_all_maintenance():
                    continue
                break

            for slot, outcome in await self.pool.wait_for_any():
                if slot.kind == "maintenance":
                    await self._finish_maintenance(slot, outcome)
                else:
                    await self._finish_task(slot, outcome)

        scope = self.scheduler.scope
        self.run_log.update_iteration(
            tasks_total=len(scope),
            tasks_completed=len(scope & self._completed),
            tasks_blocked=len(scope & self._blocked),
            agents_spawned=cp.total_agent_spawns - spawns_before,
            maintenance_runs=cp.maintenance.run_count,
        )
        self.run_log.flush()

    async def _launch(self, task: Task) -> None:
        cp = self.cp
        task_id = task.id
        retries = cp.tasks.retries(task_id)
        claim = f"{cp.run_id}:{cp.iteration}:{retries.total + 1}"
        self._in_progress.add(task_id)
        cp.tasks.claims[task_id] = claim

        try:
            record = await self._prepare_worktree(task_id)
        except (WorktreeError, OSError) as exc:
            logger.warning("worktree for %s failed: %s", task_id, exc)
            self._in_progress.discard(task_id)
            cp.tasks.claims.pop(task_id, None)
            await self._record_failure(task_id, FRESH, f"worktree setup failed: {exc}")
            return

        cp.tasks.worktrees[task_id] = record
        cp.tasks.retry_modes.pop(task_id, None)
        cp.total_agent_spawns += 1
        agent = ActiveAgent(
            agent_id=cp.total_agent_spawns,
            task_id=task_id,
            worktree=record.path,
            branch=record.branch,
            claim=claim,
        )
        cp.agents.append(agent)
        self._save()
        await self.store.update_status(task_id, TaskStatus.IN_PROGRESS.value)
        await self.store.sync()

        dependencies = []
        for dep_id in self.scheduler.dependency_ids(task_id):
            dep = self.scheduler.get_task(dep_id)
            dependencies.append(f"{dep_id}: {dep.title}" if dep else dep_id)
        prompt = build_coding_prompt(
            task,
            dependencies=dependencies,
            frozen_spec=self._frozen_text,
            run_id=cp.run_id,
            target_branch=cp.target_branch,
            store_command=self.config.store.command,
        )

        def on_spawn(pid: int) -> None:
            agent.pid = pid
            self._save()

        opts = SpawnOptions(
            workdir=record.path,
            prompt=prompt,
            timeout_s=self.timeout_s,
            system_prompt=self._guidelines,
            env=self._agent_env(),
            on_spawn=on_spawn,
        )
        self.pool.assign(task_id, self.agent_backend.spawn(opts), kind="task", meta={"claim": claim})
        self.events.emit(
            "agent_started",
            task_id=task_id,
            title=task.title,
            agent_id=agent.agent_id,
            claim=claim,
            worktree=record.path,
        )

    async def _prepare_worktree(self, task_id: str) -> WorktreeRecord:
        """Reuse the worktree after an incomplete attempt, otherwise cut a fresh one."""
        cp = self.cp
        previous = cp.tasks.worktrees.get(task_id)
        mode = cp.tasks.retry_modes.get(task_id)
        if previous is not None and mode == INCOMPLETE:
            return await asyncio.to_thread(self.worktrees.reuse_agent_worktree, previous, cp.target_branch)
        generation = 1
        if previous is not None:
            await asyncio.to_thread(self.worktrees.remove_worktree, previous.path, branch=previous.branch)
            generation = previous.generation + 1
        return await asyncio.to_thread(
            self.worktrees.create_agent_worktree,
            cp.run_id,
            task_id,
            cp.target_branch,
            generation=generation,
        )

    async def _finish_task(self, slot: AgentSlot, outcome: Any) -> None:
        cp = self.cp
        task_id = slot.key
        if isinstance(outcome, AgentResult):
            result = outcome
        else:
            result = AgentResult(
                status=AgentStatus.FAILURE,
                exit_code=1,
                last_lines=f"{type(outcome).__name__}: {outcome}",
                duration_s=time.monotonic() - slot.started,
            )
        cp.agents = [a for a in cp.agents if a.task_id != task_id]
        self._in_progress.discard(task_id)
        cp.tasks.claims.pop(task_id, None)

        task = await self.store.show(task_id)
        finished = {
            "task_id": task_id,
            "status": str(result.status),
            "exit_code": result.exit_code,
            "duration_s": round(result.duration_s, 1),
        }
        if task is not None and task.status == TaskStatus.CLOSED:
            await self._cleanup_task_worktree(task_id)
            self._completed.add(task_id)
            cp.tasks.retry_modes.pop(task_id, None)
            self._save()
            self.events.emit("agent_finished", **finished)
            self.events.emit("task_completed", task_id=task_id)
            await self._maybe_trigger_maintenance()
            return

        # Clean exit without closing the task keeps its worktree for the next attempt.
        mode = INCOMPLETE if result.status == AgentStatus.SUCCESS else FRESH
        self._save()
        self.events.emit("agent_finished", **finished)
        await self._record_failure(task_id, mode, result.last_lines)

    async def _record_failure(self, task_id: str, mode: str, detail: str) -> None:
        cp = self.cp
        counts = cp.tasks.retries(task_id)
        if mode == FRESH:
            counts.fresh += 1
            attempts = counts.fresh
        else:
            counts.incomplete += 1
            attempts = counts.incomplete

        if attempts > self.config.agent.max_retries_per_task:
            await self._cleanup_task_worktree(task_id)
            self._blocked.add(task_id)
            cp.tasks.retry_modes.pop(task_id, None)
            self._save()
            await self.store.update_status(task_id, TaskStatus.BLOCKED.value)
            self.events.emit(
                "task_blocked",
                task_id=task_id,
                reason=f"{mode} attempts exhausted ({attempts})",
                detail=detail[-1000:],
            )
            return

        cp.tasks.retry_modes[task_id] = mode
        self._save()
        await self.store.update_status(task_id, TaskStatus.OPEN.value)
        self.events.emit("task_retry", task_id=task_id, retry=attempts, mode=mode, detail=detail[-1000:])

    async def _cleanup_task_worktree(self, task_id: str) -> None:
        if not self.config.worktree.cleanup:
            return
        record = self.cp.tasks.worktrees.pop(task_id, None)
        if record is None:
            return
        try:
            await asyncio.to_thread(self.worktrees.remove_worktree, record.path, branch=record.branch)
        except (WorktreeError, OSError) as exc:
            logger.warning("could not remove worktree %s: %s", record.path, exc)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def _active_maintenance(self) -> MaintenanceRun | None:
        for run in self.cp.maintenance.runs:
            if not run.terminal:
                return run
        return None

    async def _maybe_trigger_maintenance(self) -> None:
        settings = self.config.phases.maintain
        if settings.trigger != "every_n_tasks":
            return
        count = len(self._completed)
        if count == 0 or count % settings.n:
            return
        if any(r.trigger_completed_count == count for r in self.cp.maintenance.runs):
            return
        active = self._active_maintenance()
        if active is not None:
            self.events.emit("maintenance_coalesced", completed=count, active=active.id)
            return
        await self._start_maintenance(count)

    async def _after_all_maintenance(self) -> bool:
        """Start the end-of-phase maintenance run; True when one was started."""
        if self.config.phases.maintain.trigger != "after_all":
            return False
        count = len(self._completed)
        if count == 0 or any(r.trigger_completed_count == count for r in self.cp.maintenance.runs):
            return False
        return await self._start_maintenance(count)

    async def _start_maintenance(self, completed_count: int) -> bool:
        cp = self.cp
        index = cp.maintenance.run_count + 1
        cp.maintenance.run_count = index
        run = MaintenanceRun(id=f"maint-{index}", trigger_completed_count=completed_count)
        cp.maintenance.runs.append(run)

        run.task_id = (
            await self.store.create(
                f"Maintenance run #{index}",
                labels=[run_label(cp.run_id), MAINTENANCE_LABEL],
                description=f"Repair breakage after {completed_count} completed task(s).",
            )
            or ""
        )
        try:
            path = await asyncio.to_thread(
                self.worktrees.create_maintenance_worktree, cp.run_id, index, cp.target_branch
            )
        except (WorktreeError, OSError) as exc:
            run.state = "failure"
            run.finished_at = utc_now_iso()
            self._save()
            self.events.emit("maintenance_finished", index=index, status="failure", error=str(exc))
            return False

        cp.total_agent_spawns += 1
        self._save()

        def on_spawn(pid: int) -> None:
            run.pid = pid
            self._save()

        opts = SpawnOptions(
            workdir=str(path),
            prompt=build_maintenance_prompt(
                target_branch=cp.target_branch,
                task_id=run.task_id,
                store_command=self.config.store.command,
            ),
            timeout_s=self.timeout_s,
            system_prompt=self._guidelines,
            env=self._agent_env(),
            on_spawn=on_spawn,
        )
        self.pool.assign(
            run.id,
            self.agent_backend.spawn(opts),
            kind="maintenance",
            meta={"index": index, "path": str(path)},
        )
        self.events.emit("maintenance_started", index=index, completed=completed_count, task_id=run.task_id)
        return True

    async def _finish_maintenance(self, slot: AgentSlot, outcome: Any) -> None:
        run = next((r for r in self.cp.maintenance.runs if r.id == slot.key), None)
        if run is None:
            return
        ok = isinstance(outcome, AgentResult) and outcome.status == AgentStatus.SUCCESS
        run.state = "success" if ok else "failure"
        run.finished_at = utc_now_iso()
        run.pid = None
        self._save()
        self.events.emit("maintenance_finished", index=slot.meta.get("index"), status=run.state)
        if self.config.worktree.cleanup:
            branch = self.worktrees.maintenance_branch(self.cp.run_id, slot.meta["index"])
            try:
                await asyncio.to_thread(self.worktrees.remove_worktree, slot.meta["path"], branch=branch)
            except (WorktreeError, OSError) as exc:
                logger.warning("could not remove maintenance worktree %s: %s", slot.meta["path"], exc)

    # ------------------------------------------------------------------
    # Judge
    # ------------------------------------------------------------------

    async def _judge(self) -> JudgeResult:
        cp = self.cp
        self._transition(RunPhase.JUDGING)
        self._verify_spec()
        AcceptanceManager(Path(cp.acceptance_path), generated=cp.acceptance_generated).verify()

        observations = await self.store.list_tasks(
            labels=[OBSERVATION_LABEL, run_label(cp.run_id)], status="open"
        )
        cp.observations.pending = [t.id for t in observations]
        cp.total_agent_spawns += 1
        self._save()

        try:
            workdir = await asyncio.to_thread(
                self.worktrees.create_judge_worktree, cp.target_branch, cp.iteration
            )
        except (WorktreeError, OSError) as exc:
            result = JudgeResult.failed("failure", f"judge worktree setup failed: {exc}", 0.0)
            return self._record_verdict(result)

        result = await self.judge_backend.evaluate(
            JudgeRequest(
                workdir=str(workdir),
                frozen_spec_path=cp.frozen_spec_path,
                acceptance_path=cp.acceptance_path,
                observation_task_ids=list(cp.observations.pending),
                timeout_s=self.timeout_s * 2,
                env=self._agent_env(),
            )
        )

        try:
            dirty = await asyncio.to_thread(self.worktrees.is_dirty, workdir)
        except (subprocess.CalledProcessError, OSError) as exc:
            logger.warning("judge integrity check failed to run: %s", exc)
            dirty = ""
        if dirty:
            # Left in place for inspection.
            self.events.emit("judge_integrity_violation", iteration=cp.iteration, changes=dirty[:2000])
            result = JudgeResult.failed(
                "failure",
                f"Judge modified its read-only worktree; verdict discarded.\n{dirty}",
                result.duration_s,
            )
        elif self.config.worktree.cleanup:
            try:
                await asyncio.to_thread(self.worktrees.remove_worktree, workdir)
            except (WorktreeError, OSError) as exc:
                logger.warning("could not remove judge worktree %s: %s", workdir, exc)

        return self._record_verdict(result)

    def _record_verdict(self, result: JudgeResult) -> JudgeResult:
        cp = self.cp
        path = self.layout["judge_results"] / f"iteration-{cp.iteration}.yml"
        write_yaml_atomic(path, {"iteration": cp.iteration, "judged_at": utc_now_iso(), **result.to_record()})

        criteria = result.acceptance.results
        passed = sum(1 for c in criteria if c.passed)
        summary = (
            f"{passed}/{len(criteria)} criteria passed, "
            f"{len(result.spec_drift.issues)} drift issue(s), {len(result.new_tasks)} new task(s)"
        )
        if result.status != "success":
            summary = f"judge {result.status}"
        self.run_log.update_iteration(judge_verdict="pass" if result.passed else "fail", judge_summary=summary)
        self.run_log.flush()
        self.events.emit(
            "judge_finished",
            iteration=cp.iteration,
            verdict="pass" if result.passed else "fail",
            status=result.status,
            new_tasks=len(result.new_tasks),
            drift_issues=len(result.spec_drift.issues),
            path=str(path),
        )
        return result

    # ------------------------------------------------------------------
    # Remediation
    # ------------------------------------------------------------------

    async def _remediate(self, result: JudgeResult, iteration: int) -> None:
        """Turn judge findings and promoted observations into labeled tasks."""
        cp = self.cp
        label = run_label(cp.run_id)
        labels = [label, REMEDIATION_LABEL]
        proposals = [(t.title, t.type, t.description) for t in result.new_tasks]
        if not proposals:
            proposals = [
                (f"Fix spec drift in {i.section}", "bug", i.description)
                for i in result.spec_drift.issues
            ]
        if not proposals:
            proposals = [
                (f"Satisfy acceptance criterion: {c.criterion[:80]}", "bug", f"{c.criterion}\n\n{c.evidence}")
                for c in result.acceptance.results
                if not c.passed
            ]

        created = 0
        for title, kind, description in proposals:
            if await self.store.create(title, labels=labels, type=kind, description=description):
                created += 1

        promoted = 0
        for decision in result.observations:
            if decision.action == "promote":
                new_id = await self.store.create(
                    f"Promoted observation {decision.task_id}",
                    labels=[label, PROMOTED_LABEL],
                    description=decision.reason,
                )
                if new_id:
                    created += 1
                    promoted += 1
                await self.store.close(decision.task_id, f"Promoted to {new_id or 'a new task'}")
                cp.observations.promoted.append(decision.task_id)
            elif decision.action == "merge":
                await self.store.close(decision.task_id, f"Merged with {decision.merge_with}: {decision.reason}")
                cp.observations.dismissed.append(decision.task_id)
            else:
                await self.store.close(decision.task_id, f"Dismissed: {decision.reason}")
                cp.observations.dismissed.append(decision.task_id)
            if decision.task_id in cp.observations.pending:
                cp.observations.pending.remove(decision.task_id)

        await self.store.sync()
        cp.tasks.total += created
        self._save()
        self.events.emit("remediation_created", iteration=iteration, tasks=created, promoted=promoted)

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def _publish(self) -> None:
        """Open a pull request from the integration branch. Failures are reported, not fatal."""
        cp = self.cp
        workdir: Path | None = None
        try:
            workdir = await asyncio.to_thread(self.worktrees.create_publish_worktree, cp.target_branch)
            head = await asyncio.to_thread(
                rebase_and_push, self.repo_root, workdir, cp.target_branch, cp.base_branch
            )
            url = await asyncio.to_thread(
                create_pull_request,
                self.repo_root,
                head=head,
                base=cp.base_branch,
                title=f"specloop: {Path(cp.spec_path).stem}",
                body=(
                    f"Automated run `{cp.run_id}`.\n\n"
                    f"- iterations: {cp.iteration}\n"
                    f"- tasks: {cp.tasks.total}\n"
                    f"- agent spawns: {cp.total_agent_spawns}\n"
                ),
            )
        except (PublishError, WorktreeError, OSError) as exc:
            self.events.emit("pr_creation_failed", error=str(exc))
        else:
            self.events.emit("pr_created", url=url, head=head, base=cp.base_branch)
        finally:
            if workdir is not None:
                with contextlib.suppress(WorktreeError, OSError):
                    await asyncio.to_thread(self.worktrees.remove_worktree, workdir)

    # ------------------------------------------------------------------
    # Resume reconciliation
    # ------------------------------------------------------------------

    async def _reconcile(self) -> None:
        """Settle claims and maintenance runs left behind by a previous process."""
        cp = self.cp
        agents = {a.task_id: a for a in cp.agents}
        for task_id in sorted(set(cp.tasks.claims) | self._in_progress):
            agent = agents.get(task_id)
            if agent is not None and agent.pid and group_alive(agent.pid):
                await kill_orphan(agent.pid)
                self.events.emit("orphan_terminated", task_id=task_id, pid=agent.pid)
            self._in_progress.discard(task_id)
            cp.tasks.claims.pop(task_id, None)

            task = await self.store.show(task_id)
            if task is not None and task.status == TaskStatus.CLOSED:
                await self._cleanup_task_worktree(task_id)
                self._completed.add(task_id)
                cp.tasks.retry_modes.pop(task_id, None)
                self._save()
                self.events.emit("task_completed", task_id=task_id, source="resume")
            else:
                await self._record_failure(task_id, INCOMPLETE, "orchestrator restarted mid-attempt")
        cp.agents = []

        for run in cp.maintenance.runs:
            if run.terminal:
                continue
            if run.pid and group_alive(run.pid):
                await kill_orphan(run.pid)
                self.events.emit("orphan_terminated", maintenance=run.id, pid=run.pid)
            run.state = "abandoned"
            run.finished_at = utc_now_iso()
            run.pid = None
