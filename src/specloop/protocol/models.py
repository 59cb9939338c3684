"""Run-state models shared by the orchestrator, persistence and CLI."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

CHECKPOINT_SCHEMA_VERSION = 1
STATE_DIRNAME = ".specloop"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_iso(value: str) -> datetime | None:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class TaskStatus(StrEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    BLOCKED = "blocked"


class RunPhase(StrEnum):
    FREEZING = "freezing"
    DECOMPOSING = "decomposing"
    IMPLEMENTING = "implementing"
    JUDGING = "judging"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunPhase.COMPLETED, RunPhase.FAILED)


class AgentStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(slots=True)
class Dependency:
    type: str
    target: str


@dataclass(slots=True)
class Task:
    """A unit of work as reported by the external task store."""

    id: str
    title: str = ""
    description: str = ""
    status: str = "open"
    priority: int = 2  # 0 is most urgent
    created_at: str = ""
    type: str = "task"
    labels: list[str] = field(default_factory=list)
    dependencies: list[Dependency] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        deps = []
        for raw in data.get("dependencies") or []:
            if isinstance(raw, dict) and raw.get("target"):
                deps.append(Dependency(type=str(raw.get("type", "blocks")), target=str(raw["target"])))
        try:
            priority = int(data.get("priority", 2))
        except (TypeError, ValueError):
            priority = 2
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            description=str(data.get("description") or ""),
            status=str(data.get("status", "open")),
            priority=priority,
            created_at=str(data.get("created_at", "")),
            type=str(data.get("type", "task")),
            labels=[str(label) for label in data.get("labels") or []],
            dependencies=deps,
        )


@dataclass(slots=True)
class ProcessResult:
    exit_code: int
    output_tail: list[str]
    duration_s: float
    timed_out: bool
    pid: int | None = None

    @property
    def last_lines(self) -> str:
        return "\n".join(self.output_tail)


@dataclass(slots=True)
class AgentResult:
    status: AgentStatus
    exit_code: int
    last_lines: str
    duration_s: float

    @classmethod
    def from_process(cls, result: ProcessResult) -> AgentResult:
        # A timed-out process may still report 0 after SIGTERM handling.
        if result.timed_out:
            status = AgentStatus.TIMEOUT
        elif result.exit_code == 0:
            status = AgentStatus.SUCCESS
        else:
            status = AgentStatus.FAILURE
        return cls(
            status=status,
            exit_code=result.exit_code,
            last_lines=result.last_lines,
            duration_s=result.duration_s,
        )


# ---------------------------------------------------------------------------
# Checkpoint
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class RetryCounts:
    """Independent counters for the two retry modes."""

    fresh: int = 0  # timeout / crash: new worktree
    incomplete: int = 0  # exit 0 but task still open: same worktree

    @property
    def total(self) -> int:
        return self.fresh + self.incomplete


@dataclass(slots=True)
class WorktreeRecord:
    path: str
    branch: str
    generation: int = 1


@dataclass(slots=True)
class ActiveAgent:
    agent_id: int
    task_id: str
    worktree: str
    branch: str
    claim: str
    started_at: str = field(default_factory=utc_now_iso)
    pid: int | None = None


@dataclass(slots=True)
class MaintenanceRun:
    id: str
    trigger_completed_count: int
    state: str = "running"  # running | success | failure | abandoned
    started_at: str = field(default_factory=utc_now_iso)
    finished_at: str = ""
    pid: int | None = None
    task_id: str = ""

    @property
    def terminal(self) -> bool:
        return self.state != "running"


@dataclass(slots=True)
class TaskBook:
    total: int = 0
    completed: list[str] = field(default_factory=list)
    in_progress: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    retry_counts: dict[str, RetryCounts] = field(default_factory=dict)
    claims: dict[str, str] = field(default_factory=dict)
    retry_modes: dict[str, str] = field(default_factory=dict)  # task -> "fresh" | "incomplete" for its next attempt
    worktrees: dict[str, WorktreeRecord] = field(default_factory=dict)

    def retries(self, task_id: str) -> RetryCounts:
        return self.retry_counts.setdefault(task_id, RetryCounts())


@dataclass(slots=True)
class MaintenanceBook:
    run_count: int = 0
    runs: list[MaintenanceRun] = field(default_factory=list)


@dataclass(slots=True)
class ObservationBook:
    pending: list[str] = field(default_factory=list)
    promoted: list[str] = field(default_factory=list)
    dismissed: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Checkpoint:
    run_id: str
    spec_path: str
    frozen_spec_path: str
    frozen_spec_hash: str
    target_branch: str
    base_branch: str
    schema_version: int = CHECKPOINT_SCHEMA_VERSION
    state: RunPhase = RunPhase.FREEZING
    iteration: int = 1
    acceptance_path: str = ""
    acceptance_generated: bool = False
    task_label: str = ""
    integration_branch: bool = False
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    total_agent_spawns: int = 0
    error: dict[str, Any] = field(default_factory=dict)
    tasks: TaskBook = field(default_factory=TaskBook)
    agents: list[ActiveAgent] = field(default_factory=list)
    maintenance: MaintenanceBook = field(default_factory=MaintenanceBook)
    observations: ObservationBook = field(default_factory=ObservationBook)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = str(self.state)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Checkpoint:
        """Rebuild from a mapping. Raises ``KeyError``/``TypeError``/``ValueError`` on bad input."""
        tasks_raw = dict(data.get("tasks") or {})
        tasks = TaskBook(
            total=int(tasks_raw.get("total", 0)),
            completed=list(tasks_raw.get("completed") or []),
            in_progress=list(tasks_raw.get("in_progress") or []),
            blocked=list(tasks_raw.get("blocked") or []),
            retry_counts={
                k: RetryCounts(**v) for k, v in (tasks_raw.get("retry_counts") or {}).items()
            },
            claims=dict(tasks_raw.get("claims") or {}),
            retry_modes=dict(tasks_raw.get("retry_modes") or {}),
            worktrees={
                k: WorktreeRecord(**v) for k, v in (tasks_raw.get("worktrees") or {}).items()
            },
        )
        maint_raw = dict(data.get("maintenance") or {})
        obs_raw = dict(data.get("observations") or {})
        return cls(
            run_id=str(data["run_id"]),
            spec_path=str(data["spec_path"]),
            frozen_spec_path=str(data["frozen_spec_path"]),
            frozen_spec_hash=str(data["frozen_spec_hash"]),
            target_branch=str(data["target_branch"]),
            base_branch=str(data["base_branch"]),
            schema_version=int(data["schema_version"]),
            state=RunPhase(data.get("state", RunPhase.FREEZING)),
            iteration=int(data.get("iteration", 1)),
            acceptance_path=str(data.get("acceptance_path") or ""),
            acceptance_generated=bool(data.get("acceptance_generated", False)),
            task_label=str(data.get("task_label") or ""),
            integration_branch=bool(data.get("integration_branch", False)),
            created_at=str(data.get("created_at") or utc_now_iso()),
            updated_at=str(data.get("updated_at") or utc_now_iso()),
            total_agent_spawns=int(data.get("total_agent_spawns", 0)),
            error=dict(data.get("error") or {}),
            tasks=tasks,
            agents=[ActiveAgent(**a) for a in data.get("agents") or []],
            maintenance=MaintenanceBook(
                run_count=int(maint_raw.get("run_count", 0)),
                runs=[MaintenanceRun(**r) for r in maint_raw.get("runs") or []],
            ),
            observations=ObservationBook(
                pending=list(obs_raw.get("pending") or []),
                promoted=list(obs_raw.get("promoted") or []),
                dismissed=list(obs_raw.get("dismissed") or []),
            ),
        )


# ---------------------------------------------------------------------------
# On-disk layout
# ---------------------------------------------------------------------------


def state_root(repo_root: Path) -> Path:
    return repo_root / STATE_DIRNAME


def runs_root(repo_root: Path) -> Path:
    return state_root(repo_root) / "runs"


def worktrees_root(repo_root: Path) -> Path:
    return state_root(repo_root) / "worktrees"


def default_run_layout(run_dir: Path) -> dict[str, Path]:
    return {
        "root": run_dir,
        "frozen_spec": run_dir / "frozen-spec.md",
        "checkpoint": run_dir / "checkpoint.yml",
        "events": run_dir / "events.jsonl",
        "lock": run_dir / "lock.json",
        "run_log": run_dir / "run-log.yml",
        "schedule": run_dir / "schedule.yml",
        "judge_results": run_dir / "judge-results",
    }
