"""Configuration schema for specloop YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field

BACKENDS = ("auto", "claude-code", "codex", "subprocess")
MAINTAIN_TRIGGERS = ("every_n_tasks", "after_all", "never")
ON_COMPLETE = ("pr", "none")


@dataclass(slots=True)
class AgentConfig:
    backend: str = "auto"  # auto | claude-code | codex | subprocess
    command: str = ""  # required for backend=subprocess; the prompt is appended as last argv
    max_concurrency: int = 4
    timeout_per_task: str = "15m"
    max_retries_per_task: int = 2


@dataclass(slots=True)
class WorktreeConfig:
    base_branch: str = "main"
    cleanup: bool = True
    branch_prefix: str = "specloop"


@dataclass(slots=True)
class StoreConfig:
    command: str = "tbd"


@dataclass(slots=True)
class DecomposeConfig:
    auto: bool = True
    existing_selector: str = ""  # label selecting pre-existing tasks
    max_selected_tasks: int = 200


@dataclass(slots=True)
class ImplementConfig:
    guidelines: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MaintainConfig:
    trigger: str = "every_n_tasks"  # every_n_tasks | after_all | never
    n: int = 25


@dataclass(slots=True)
class JudgeConfig:
    enabled: bool = True
    max_iterations: int = 3
    on_complete: str = "pr"  # pr | none


@dataclass(slots=True)
class PhasesConfig:
    decompose: DecomposeConfig = field(default_factory=DecomposeConfig)
    implement: ImplementConfig = field(default_factory=ImplementConfig)
    maintain: MaintainConfig = field(default_factory=MaintainConfig)
    judge: JudgeConfig = field(default_factory=JudgeConfig)


@dataclass(slots=True)
class AcceptanceConfig:
    generate: bool = True
    path: str = ""  # pre-written criteria directory, used when generate is false


@dataclass(slots=True)
class SpecloopConfig:
    target_branch: str = "auto"  # "auto" = per-run integration branch, anything else = direct mode
    agent: AgentConfig = field(default_factory=AgentConfig)
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    store: StoreConfig = field(default_factory=StoreConfig)
    phases: PhasesConfig = field(default_factory=PhasesConfig)
    acceptance: AcceptanceConfig = field(default_factory=AcceptanceConfig)

    @property
    def integration_mode(self) -> bool:
        return self.target_branch == "auto"
