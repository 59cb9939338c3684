"""Ephemeral git worktrees for agents, maintenance runs and the judge."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from pathlib import Path

from specloop.protocol.models import WorktreeRecord

log = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


class WorktreeError(RuntimeError):
    """A git command needed to prepare a workspace failed."""


def short_id(task_id: str) -> str:
    return _UNSAFE.sub("-", task_id).strip("-")[:40] or "task"


class WorktreeManager:
    """Creates and removes worktrees under ``worktrees_dir``.

    All methods are blocking; the orchestrator calls them through
    ``asyncio.to_thread``.
    """

    def __init__(self, repo_root: Path, worktrees_dir: Path, *, branch_prefix: str = "specloop") -> None:
        self.repo_root = repo_root
        self.worktrees_dir = worktrees_dir
        self.branch_prefix = branch_prefix

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                ["git", *args],
                cwd=self.repo_root,
                check=check,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as exc:
            raise WorktreeError(f"git {' '.join(args)} failed: {(exc.stderr or '').strip()}") from exc

    def fetch(self, branch: str) -> None:
        self._git("fetch", "origin", branch)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def agent_branch(self, run_id: str, task_id: str, generation: int) -> str:
        return f"{self.branch_prefix}/{run_id}/task-{short_id(task_id)}-{generation}"

    def create_agent_worktree(
        self,
        run_id: str,
        task_id: str,
        target_branch: str,
        *,
        generation: int = 1,
    ) -> WorktreeRecord:
        """Fresh worktree on a throwaway branch cut from ``origin/<target_branch>``."""
        path = self.worktrees_dir / f"agent-{short_id(task_id)}-{generation}"
        branch = self.agent_branch(run_id, task_id, generation)
        self._create(path, branch, target_branch)
        return WorktreeRecord(path=str(path), branch=branch, generation=generation)

    def reuse_agent_worktree(self, record: WorktreeRecord, target_branch: str) -> WorktreeRecord:
        """Return ``record`` as-is if its checkout still exists, else re-attach its branch."""
        path = Path(record.path)
        if path.exists():
            return record
        log.info("worktree %s vanished, re-attaching branch %s", path, record.branch)
        self._prune()
        result = self._git("worktree", "add", str(path), record.branch, check=False)
        if result.returncode != 0:
            self._create(path, record.branch, target_branch)
        return record

    def maintenance_branch(self, run_id: str, index: int) -> str:
        return f"{self.branch_prefix}/{run_id}/maint-{index}"

    def create_maintenance_worktree(self, run_id: str, index: int, target_branch: str) -> Path:
        path = self.worktrees_dir / f"maint-{index}"
        self._create(path, self.maintenance_branch(run_id, index), target_branch)
        return path

    def create_judge_worktree(self, target_branch: str, iteration: int) -> Path:
        """Detached checkout of ``origin/<target_branch>``; the judge never commits."""
        return self._detached(self.worktrees_dir / f"judge-{iteration}", target_branch)

    def create_publish_worktree(self, branch: str) -> Path:
        return self._detached(self.worktrees_dir / "publish", branch)

    def _detached(self, path: Path, branch: str) -> Path:
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        self.fetch(branch)
        self.remove_worktree(path)
        self._git("worktree", "add", "--detach", str(path), f"origin/{branch}")
        return path

    def _create(self, path: Path, branch: str, target_branch: str) -> None:
        self.worktrees_dir.mkdir(parents=True, exist_ok=True)
        self.fetch(target_branch)
        self.remove_worktree(path)
        self._delete_branch(branch)
        self._git("worktree", "add", "-b", branch, str(path), f"origin/{target_branch}")

    # ------------------------------------------------------------------
    # Removal and inspection
    # ------------------------------------------------------------------

    def remove_worktree(self, path: str | Path, *, branch: str | None = None) -> None:
        """Remove a worktree. Safe to call on an already-removed path."""
        path = Path(path)
        result = self._git("worktree", "remove", "--force", str(path), check=False)
        if result.returncode != 0:
            if path.exists():
                shutil.rmtree(path, ignore_errors=True)
            self._prune()
        if branch:
            self._delete_branch(branch)

    def is_dirty(self, path: str | Path) -> str:
        """Return ``git status --porcelain`` output for ``path`` (empty when clean)."""
        result = subprocess.run(
            ["git", "-C", str(path), "status", "--porcelain"],
            check=True,
            capture_output=True,
            text=True,
        )
        return result.stdout.strip()

    def _prune(self) -> None:
        result = self._git("worktree", "prune", check=False)
        if result.returncode != 0:
            log.warning("git worktree prune failed: %s", result.stderr)

    def _delete_branch(self, branch: str) -> None:
        # Missing branch is the normal case.
        self._git("branch", "-D", branch, check=False)

    # ------------------------------------------------------------------
    # Integration branch
    # ------------------------------------------------------------------

    def integration_branch_name(self, run_id: str) -> str:
        return f"{self.branch_prefix}/{run_id}"

    def create_integration_branch(self, run_id: str, base_branch: str) -> str:
        """Create ``<prefix>/<run_id>`` from ``origin/<base>`` and publish it."""
        branch = self.integration_branch_name(run_id)
        self.fetch(base_branch)
        self._git("branch", branch, f"origin/{base_branch}")
        self._git("push", "-u", "origin", branch)
        return branch
