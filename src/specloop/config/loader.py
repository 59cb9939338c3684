"""YAML config loader for specloop."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from specloop.config.schema import (
    BACKENDS,
    MAINTAIN_TRIGGERS,
    ON_COMPLETE,
    AcceptanceConfig,
    AgentConfig,
    DecomposeConfig,
    ImplementConfig,
    JudgeConfig,
    MaintainConfig,
    PhasesConfig,
    SpecloopConfig,
    StoreConfig,
    WorktreeConfig,
)
from specloop.errors import ConfigurationError

CONFIG_RELPATH = Path(".specloop") / "config.yml"

_DURATION_RE = re.compile(r"^\s*(\d+)\s*(ms|s|m|h)\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: str | int | float) -> float:
    """Parse ``500ms`` / ``30s`` / ``15m`` / ``1h`` into seconds.

    Bare numbers are taken as seconds.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value <= 0:
            raise ConfigurationError(f"Duration must be positive: {value!r}")
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigurationError(f"Invalid duration: {value!r} (expected e.g. 30s, 15m, 1h)")
    seconds = int(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ConfigurationError(f"Duration must be positive: {value!r}")
    return seconds


def load_config(path: str | Path) -> SpecloopConfig:
    """Load and validate a config file. A missing file yields defaults."""
    p = Path(path)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Cannot parse {p}: {exc}") from exc
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigurationError(f"{p}: top level must be a mapping")

    phases_raw = _section(raw, "phases")
    cfg = SpecloopConfig(
        target_branch=str(raw.get("target_branch", "auto")),
        agent=AgentConfig(**_pick(_section(raw, "agent"), AgentConfig)),
        worktree=WorktreeConfig(**_pick(_section(raw, "worktree"), WorktreeConfig)),
        store=StoreConfig(**_pick(_section(raw, "store"), StoreConfig)),
        phases=PhasesConfig(
            decompose=DecomposeConfig(**_pick(_section(phases_raw, "decompose"), DecomposeConfig)),
            implement=ImplementConfig(**_pick(_section(phases_raw, "implement"), ImplementConfig)),
            maintain=MaintainConfig(**_pick(_section(phases_raw, "maintain"), MaintainConfig)),
            judge=JudgeConfig(**_pick(_section(phases_raw, "judge"), JudgeConfig)),
        ),
        acceptance=AcceptanceConfig(**_pick(_section(raw, "acceptance"), AcceptanceConfig)),
    )
    validate_config(cfg)
    return cfg


def validate_config(cfg: SpecloopConfig) -> None:
    agent = cfg.agent
    if agent.backend not in BACKENDS:
        raise ConfigurationError(
            f"agent.backend must be one of {', '.join(BACKENDS)}, got {agent.backend!r}"
        )
    if agent.backend == "subprocess" and not str(agent.command).strip():
        raise ConfigurationError("agent.command is required when agent.backend is 'subprocess'")
    _require_int("agent.max_concurrency", agent.max_concurrency, minimum=1)
    _require_int("agent.max_retries_per_task", agent.max_retries_per_task, minimum=0)
    parse_duration(agent.timeout_per_task)

    maintain = cfg.phases.maintain
    if maintain.trigger not in MAINTAIN_TRIGGERS:
        raise ConfigurationError(
            f"phases.maintain.trigger must be one of {', '.join(MAINTAIN_TRIGGERS)}, got {maintain.trigger!r}"
        )
    _require_int("phases.maintain.n", maintain.n, minimum=1)

    judge = cfg.phases.judge
    if judge.on_complete not in ON_COMPLETE:
        raise ConfigurationError(
            f"phases.judge.on_complete must be one of {', '.join(ON_COMPLETE)}, got {judge.on_complete!r}"
        )
    _require_int("phases.judge.max_iterations", judge.max_iterations, minimum=1)
    _require_int(
        "phases.decompose.max_selected_tasks",
        cfg.phases.decompose.max_selected_tasks,
        minimum=1,
    )

    guidelines = cfg.phases.implement.guidelines
    if not isinstance(guidelines, list) or not all(isinstance(g, str) for g in guidelines):
        raise ConfigurationError("phases.implement.guidelines must be a list of names")
    if judge.enabled and not cfg.acceptance.generate and not cfg.acceptance.path:
        raise ConfigurationError("acceptance.path is required when acceptance.generate is false")


def apply_overrides(
    cfg: SpecloopConfig,
    *,
    concurrency: int | None = None,
    backend: str | None = None,
    timeout: str | None = None,
) -> SpecloopConfig:
    """Layer CLI flags on top of file configuration, then re-validate."""
    if concurrency is not None:
        cfg.agent.max_concurrency = concurrency
    if backend is not None:
        cfg.agent.backend = backend
    if timeout is not None:
        cfg.agent.timeout_per_task = timeout
    validate_config(cfg)
    return cfg


def task_timeout_seconds(cfg: SpecloopConfig) -> float:
    return parse_duration(cfg.agent.timeout_per_task)


def _require_int(name: str, value: Any, *, minimum: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigurationError(f"{name} must be an integer >= {minimum}, got {value!r}")


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"'{key}' must be a mapping")
    return value


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
