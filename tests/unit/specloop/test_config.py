"""Tests for YAML config loading, validation and CLI overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from specloop.config.loader import apply_overrides, load_config, parse_duration, task_timeout_seconds
from specloop.config.schema import SpecloopConfig
from specloop.errors import ConfigurationError, ErrorCode


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yml"
    path.write_text(text, encoding="utf-8")
    return path


@pytest.mark.parametrize(
    ("value", "seconds"),
    [("500ms", 0.5), ("30s", 30.0), ("15m", 900.0), ("1h", 3600.0), (" 2 m ", 120.0), (45, 45.0), (1.5, 1.5)],
)
def test_parse_duration(value: str | int | float, seconds: float) -> None:
    assert parse_duration(value) == seconds


@pytest.mark.parametrize("value", ["", "15", "15 minutes", "-5m", "0s", 0, -3, True])
def test_parse_duration_rejects(value: object) -> None:
    with pytest.raises(ConfigurationError):
        parse_duration(value)  # type: ignore[arg-type]


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    cfg = load_config(tmp_path / "absent.yml")
    assert cfg == SpecloopConfig()
    assert cfg.integration_mode
    assert task_timeout_seconds(cfg) == 900.0


def test_empty_file_yields_defaults(tmp_path: Path) -> None:
    assert load_config(_write(tmp_path, "")) == SpecloopConfig()


def test_full_file(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
target_branch: develop
agent:
  backend: codex
  max_concurrency: 8
  timeout_per_task: 30m
  max_retries_per_task: 0
worktree:
  base_branch: trunk
  cleanup: false
store:
  command: tbd --quiet
phases:
  decompose:
    auto: false
    existing_selector: sprint-4
  implement:
    guidelines: [python, testing]
  maintain:
    trigger: after_all
  judge:
    max_iterations: 5
    on_complete: none
acceptance:
  generate: false
  path: docs/acceptance
""",
    )
    cfg = load_config(path)

    assert not cfg.integration_mode
    assert cfg.agent.backend == "codex"
    assert cfg.agent.max_concurrency == 8
    assert cfg.agent.max_retries_per_task == 0
    assert cfg.worktree.base_branch == "trunk"
    assert cfg.worktree.cleanup is False
    assert cfg.store.command == "tbd --quiet"
    assert cfg.phases.decompose.existing_selector == "sprint-4"
    assert cfg.phases.implement.guidelines == ["python", "testing"]
    assert cfg.phases.maintain.trigger == "after_all"
    assert cfg.phases.maintain.n == 25
    assert cfg.phases.judge.on_complete == "none"
    assert cfg.acceptance.path == "docs/acceptance"


def test_unknown_keys_are_ignored(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, "agent:\n  model: opus\n  max_concurrency: 3\nextra: 1\n"))
    assert cfg.agent.max_concurrency == 3


@pytest.mark.parametrize(
    ("text", "fragment"),
    [
        ("agent:\n  backend: gemini\n", "agent.backend"),
        ("agent:\n  backend: subprocess\n", "agent.command"),
        ("agent:\n  max_concurrency: 0\n", "agent.max_concurrency"),
        ("agent:\n  max_retries_per_task: yes\n", "agent.max_retries_per_task"),
        ("agent:\n  timeout_per_task: soon\n", "Invalid duration"),
        ("phases:\n  maintain:\n    trigger: hourly\n", "phases.maintain.trigger"),
        ("phases:\n  maintain:\n    n: 0\n", "phases.maintain.n"),
        ("phases:\n  judge:\n    on_complete: merge\n", "phases.judge.on_complete"),
        ("phases:\n  implement:\n    guidelines: python\n", "guidelines"),
        ("acceptance:\n  generate: false\n", "acceptance.path"),
        ("agent: [1, 2]\n", "'agent' must be a mapping"),
        ("- just\n- a list\n", "top level must be a mapping"),
        ("agent: {backend: [\n", "Cannot parse"),
    ],
)
def test_invalid_config(tmp_path: Path, text: str, fragment: str) -> None:
    with pytest.raises(ConfigurationError) as excinfo:
        load_config(_write(tmp_path, text))
    assert fragment in str(excinfo.value)
    assert excinfo.value.code == ErrorCode.CONFIG_INVALID
    assert excinfo.value.exit_code == 2


def test_acceptance_path_not_needed_without_judge(tmp_path: Path) -> None:
    cfg = load_config(_write(tmp_path, "phases:\n  judge:\n    enabled: false\nacceptance:\n  generate: false\n"))
    assert not cfg.phases.judge.enabled


class TestOverrides:
    def test_flags_replace_file_values(self) -> None:
        cfg = apply_overrides(SpecloopConfig(), concurrency=1, backend="claude-code", timeout="90s")
        assert cfg.agent.max_concurrency == 1
        assert cfg.agent.backend == "claude-code"
        assert task_timeout_seconds(cfg) == 90.0

    def test_none_keeps_file_values(self) -> None:
        cfg = SpecloopConfig()
        cfg.agent.max_concurrency = 6
        assert apply_overrides(cfg).agent.max_concurrency == 6

    def test_overrides_are_validated(self) -> None:
        with pytest.raises(ConfigurationError, match="max_concurrency"):
            apply_overrides(SpecloopConfig(), concurrency=0)
        with pytest.raises(ConfigurationError, match="Invalid duration"):
            apply_overrides(SpecloopConfig(), timeout="forever")
