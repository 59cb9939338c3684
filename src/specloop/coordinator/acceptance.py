"""Acceptance criteria stored outside the repository.

Criteria live under ``$XDG_CACHE_HOME/specloop/<run_id>/acceptance`` so a
coding agent working in a worktree never finds them. They are generated
once per run and never regenerated: changing them mid-run would move the
evaluation target.
"""

from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from pathlib import Path

from specloop.errors import ErrorCode, PreconditionError
from specloop.prompts import build_acceptance_prompt
from specloop.protocol.io import write_text_atomic

SECTION_FILES = {
    "user_stories": "user-stories.md",
    "edge_cases": "edge-cases.md",
    "negative_tests": "negative-tests.md",
}


def xdg_cache_home() -> Path:
    return Path(os.environ.get("XDG_CACHE_HOME") or Path.home() / ".cache")


def acceptance_cache_dir(run_id: str) -> Path:
    return xdg_cache_home() / "specloop" / run_id / "acceptance"


def split_sections(output: str) -> dict[str, str]:
    """Best-effort split of agent markdown into the three section files."""
    sections: dict[str, list[str]] = {key: [] for key in SECTION_FILES}
    current = "user_stories"
    for line in output.splitlines():
        lower = line.lower()
        if "user stor" in lower or "given/when/then" in lower:
            current = "user_stories"
        elif "edge case" in lower:
            current = "edge_cases"
        elif "negative test" in lower:
            current = "negative_tests"
        sections[current].append(line)
    return {
        "user_stories": "\n".join(sections["user_stories"]).strip() or output,
        "edge_cases": "\n".join(sections["edge_cases"]).strip() or "(No edge cases section found)",
        "negative_tests": "\n".join(sections["negative_tests"]).strip() or "(No negative tests section found)",
    }


class AcceptanceManager:
    def __init__(self, path: Path, *, generated: bool = True) -> None:
        self.path = path
        self.generated = generated

    @classmethod
    def for_run(cls, run_id: str) -> AcceptanceManager:
        return cls(acceptance_cache_dir(run_id))

    async def generate(self, frozen_spec: str, spawn: Callable[[str], Awaitable[str]]) -> None:
        """Ask an agent for criteria (``spawn(prompt) -> output``) and store them."""
        output = await spawn(build_acceptance_prompt(frozen_spec))
        self.path.mkdir(parents=True, exist_ok=True)
        for key, text in split_sections(output).items():
            write_text_atomic(self.path / SECTION_FILES[key], text + "\n")

    def verify(self) -> None:
        present = (
            (self.path / SECTION_FILES["user_stories"]).exists() if self.generated else self.path.exists()
        )
        if not present:
            raise PreconditionError(
                f"Acceptance criteria not found at {self.path}. They cannot be regenerated "
                "mid-run; start a new run with `specloop run --spec <path>`.",
                code=ErrorCode.ACCEPTANCE_MISSING,
            )
