"""Read-only run summaries for ``specloop status``.

Nothing here takes the run lock or rewrites files, so it is safe to call
while an orchestrator is running or after a run has failed.
"""

from __future__ import annotations

from dataclasses import asdict
from pathlib import Path
from typing import Any

from specloop.coordinator.event_log import read_events
from specloop.coordinator.run_log import RUN_LOG_FILENAME
from specloop.errors import IntegrityError
from specloop.persistence.checkpoint import CHECKPOINT_FILENAME, CheckpointManager
from specloop.persistence.run_lock import is_reclaimable, read_lock
from specloop.protocol.io import read_yaml
from specloop.protocol.models import default_run_layout, runs_root


def list_runs(repo_root: Path) -> list[dict[str, Any]]:
    root = runs_root(repo_root)
    if not root.is_dir():
        return []
    rows: list[dict[str, Any]] = []
    for run_dir in sorted(p for p in root.iterdir() if (p / CHECKPOINT_FILENAME).exists()):
        try:
            cp = CheckpointManager(run_dir).load(discard_tmp=False)
        except IntegrityError as exc:
            rows.append({"run_id": run_dir.name, "state": "corrupt", "error": str(exc)})
            continue
        rows.append(
            {
                "run_id": cp.run_id,
                "state": str(cp.state),
                "iteration": cp.iteration,
                "spec": cp.spec_path,
                "updated_at": cp.updated_at,
            }
        )
    return rows


def summarize_run(run_dir: Path, *, recent: int = 10) -> dict[str, Any]:
    """Checkpoint, lock and run-log summary for one run. Raises ``IntegrityError``."""
    layout = default_run_layout(run_dir)
    cp = CheckpointManager(run_dir).load(discard_tmp=False)
    lock = read_lock(layout["lock"])
    run_log = read_yaml(run_dir / RUN_LOG_FILENAME, {}) or {}
    return {
        "run_id": cp.run_id,
        "state": str(cp.state),
        "iteration": cp.iteration,
        "spec": cp.spec_path,
        "target_branch": cp.target_branch,
        "base_branch": cp.base_branch,
        "created_at": cp.created_at,
        "updated_at": cp.updated_at,
        "tasks": {
            "total": cp.tasks.total,
            "completed": len(cp.tasks.completed),
            "in_progress": len(cp.tasks.in_progress),
            "blocked": len(cp.tasks.blocked),
        },
        "blocked": list(cp.tasks.blocked),
        "active_agents": [asdict(a) for a in cp.agents],
        "maintenance_runs": cp.maintenance.run_count,
        "total_agent_spawns": cp.total_agent_spawns,
        "error": cp.error,
        "locked": lock is not None and not is_reclaimable(lock),
        "lock": asdict(lock) if lock is not None else None,
        "run_log": run_log,
        "recent_events": read_events(layout["events"])[-recent:],
    }
