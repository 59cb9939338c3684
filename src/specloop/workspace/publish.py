"""Publishing a finished integration branch as a pull request."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

log = logging.getLogger(__name__)


class PublishError(RuntimeError):
    pass


def _run(cmd: list[str], cwd: Path) -> str:
    try:
        result = subprocess.run(cmd, cwd=cwd, check=True, capture_output=True, text=True)
    except FileNotFoundError as exc:
        raise PublishError(f"{cmd[0]} not found in PATH") from exc
    except subprocess.CalledProcessError as exc:
        raise PublishError(f"{' '.join(cmd[:3])} failed: {(exc.stderr or '').strip()}") from exc
    return result.stdout.strip()


def rebase_and_push(repo_root: Path, worktree: Path, branch: str, base_branch: str) -> str:
    """Rebase ``branch`` (checked out in ``worktree``) onto the latest base and push it.

    Falls back to publishing ``<branch>-rebased`` when the lease is lost.
    Returns the branch name that was pushed.
    """
    _run(["git", "fetch", "origin", base_branch, branch], repo_root)
    _run(["git", "-C", str(worktree), "rebase", f"origin/{base_branch}"], repo_root)
    try:
        _run(["git", "-C", str(worktree), "push", "--force-with-lease", "origin", f"HEAD:{branch}"], repo_root)
        return branch
    except PublishError as exc:
        log.warning("force-with-lease push of %s rejected: %s", branch, exc)
    fallback = f"{branch}-rebased"
    _run(["git", "-C", str(worktree), "push", "origin", f"HEAD:{fallback}"], repo_root)
    return fallback


def create_pull_request(repo_root: Path, *, head: str, base: str, title: str, body: str) -> str:
    """Open a PR with the GitHub CLI. Returns the PR URL."""
    return _run(
        ["gh", "pr", "create", "--head", head, "--base", base, "--title", title, "--body", body],
        repo_root,
    )
