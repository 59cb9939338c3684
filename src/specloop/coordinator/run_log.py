"""Human-readable per-run summary (``run-log.yml``)."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from specloop.protocol.io import read_yaml, write_yaml_atomic
from specloop.protocol.models import parse_iso, utc_now_iso

RUN_LOG_FILENAME = "run-log.yml"


@dataclass(slots=True)
class IterationEntry:
    iteration: int
    started_at: str = field(default_factory=utc_now_iso)
    tasks_total: int = 0
    tasks_completed: int = 0
    tasks_blocked: int = 0
    agents_spawned: int = 0
    maintenance_runs: int = 0
    judge_verdict: str = ""  # pass | fail | skipped
    judge_summary: str = ""


def format_duration(seconds: float) -> str:
    hours, rem = divmod(int(seconds), 3600)
    minutes = rem // 60
    return f"{hours}h{minutes}m" if hours else f"{minutes}m"


class RunLogWriter:
    def __init__(self, run_dir: Path, run_id: str, spec: str, target_branch: str) -> None:
        self.path = run_dir / RUN_LOG_FILENAME
        self.data: dict[str, Any] = {
            "run_id": run_id,
            "spec": spec,
            "started_at": utc_now_iso(),
            "status": "in_progress",
            "target_branch": target_branch,
            "iterations": [],
        }

    def load(self) -> None:
        existing = read_yaml(self.path, None)
        if isinstance(existing, dict) and isinstance(existing.get("iterations"), list):
            self.data = existing
            self.data["status"] = "in_progress"

    def start_iteration(self, iteration: int) -> None:
        if self.current and self.current.get("iteration") == iteration:
            return
        self.data["iterations"].append(asdict(IterationEntry(iteration=iteration)))

    @property
    def current(self) -> dict[str, Any] | None:
        iterations = self.data["iterations"]
        return iterations[-1] if iterations else None

    def update_iteration(self, **updates: Any) -> None:
        if self.current is not None:
            self.current.update(updates)

    def complete(self, *, total_tasks: int, total_agent_spawns: int) -> None:
        self._finish("completed")
        self.data["total_tasks"] = total_tasks
        self.data["total_agent_spawns"] = total_agent_spawns

    def fail(self, reason: str = "") -> None:
        self._finish("failed")
        if reason:
            self.data["failure"] = reason

    def interrupt(self) -> None:
        self.data["status"] = "interrupted"

    def _finish(self, status: str) -> None:
        self.data["status"] = status
        self.data["completed_at"] = utc_now_iso()
        started = parse_iso(str(self.data.get("started_at", "")))
        if started is not None:
            self.data["total_duration"] = format_duration((datetime.now(UTC) - started).total_seconds())

    def flush(self) -> None:
        write_yaml_atomic(self.path, self.data)
