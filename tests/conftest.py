"""Global test fixtures for specloop."""

from __future__ import annotations

from pathlib import Path

import pytest

from specloop.config.schema import SpecloopConfig


@pytest.fixture(autouse=True)
def isolated_cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Keep acceptance caches out of the real ``~/.cache``."""
    cache = tmp_path / "xdg-cache"
    monkeypatch.setenv("XDG_CACHE_HOME", str(cache))
    return cache


@pytest.fixture
def repo(tmp_path: Path) -> Path:
    root = tmp_path / "repo"
    root.mkdir()
    return root


@pytest.fixture
def spec_file(repo: Path) -> Path:
    path = repo / "spec.md"
    path.write_text("# Widget\n\nBuild a widget.\n", encoding="utf-8")
    return path


@pytest.fixture
def config() -> SpecloopConfig:
    """Direct-mode config (no integration branch, no PR) suited to fakes."""
    cfg = SpecloopConfig(target_branch="develop")
    cfg.agent.max_concurrency = 2
    cfg.agent.timeout_per_task = "30s"
    cfg.agent.max_retries_per_task = 1
    cfg.phases.maintain.trigger = "never"
    return cfg
