"""Tests for checkpoint persistence and frozen-spec integrity."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from specloop.errors import ErrorCode, IntegrityError
from specloop.persistence.checkpoint import CheckpointManager, compute_file_hash, verify_spec_hash
from specloop.protocol.models import (
    ActiveAgent,
    Checkpoint,
    MaintenanceRun,
    RetryCounts,
    RunPhase,
    WorktreeRecord,
)


def _checkpoint(**overrides) -> Checkpoint:
    base = {
        "run_id": "run-20260101-000000-abcd1234",
        "spec_path": "/repo/spec.md",
        "frozen_spec_path": "/repo/.specloop/runs/r/frozen-spec.md",
        "frozen_spec_hash": "f" * 64,
        "target_branch": "specloop/run-1",
        "base_branch": "main",
    }
    base.update(overrides)
    return Checkpoint(**base)


def test_roundtrip_preserves_nested_state(tmp_path: Path) -> None:
    cp = _checkpoint(state=RunPhase.IMPLEMENTING, iteration=2, total_agent_spawns=7)
    cp.tasks.total = 3
    cp.tasks.completed = ["a"]
    cp.tasks.in_progress = ["b"]
    cp.tasks.blocked = ["c"]
    cp.tasks.retry_counts["b"] = RetryCounts(fresh=1, incomplete=2)
    cp.tasks.claims["b"] = "run-1:2:4"
    cp.tasks.retry_modes["c"] = "fresh"
    cp.tasks.worktrees["b"] = WorktreeRecord(path="/wt/agent-b-2", branch="specloop/r/task-b-2", generation=2)
    cp.agents.append(ActiveAgent(agent_id=7, task_id="b", worktree="/wt/agent-b-2", branch="x", claim="run-1:2:4", pid=42))
    cp.maintenance.run_count = 1
    cp.maintenance.runs.append(MaintenanceRun(id="maint-1", trigger_completed_count=25, state="success"))
    cp.observations.pending = ["obs-1"]

    manager = CheckpointManager(tmp_path)
    manager.save(cp)
    loaded = manager.load()

    assert loaded == cp
    assert loaded.state is RunPhase.IMPLEMENTING
    assert loaded.tasks.retries("b").total == 3
    assert loaded.maintenance.runs[0].terminal


def test_saved_file_is_plain_yaml(tmp_path: Path) -> None:
    CheckpointManager(tmp_path).save(_checkpoint())
    data = yaml.safe_load((tmp_path / "checkpoint.yml").read_text())
    assert data["state"] == "freezing"
    assert data["schema_version"] == 1
    assert not (tmp_path / "checkpoint.yml.tmp").exists()


def test_leftover_tmp_is_discarded(tmp_path: Path) -> None:
    manager = CheckpointManager(tmp_path)
    manager.save(_checkpoint(iteration=1))
    manager.tmp_path.write_text("iteration: 99\n")

    assert manager.load().iteration == 1
    assert not manager.tmp_path.exists()


def test_read_only_load_keeps_tmp(tmp_path: Path) -> None:
    manager = CheckpointManager(tmp_path)
    manager.save(_checkpoint())
    manager.tmp_path.write_text("partial")
    manager.load(discard_tmp=False)
    assert manager.tmp_path.exists()


def test_crash_before_rename_keeps_previous_state(tmp_path: Path) -> None:
    manager = CheckpointManager(tmp_path)
    manager.save(_checkpoint(iteration=1))

    with patch("specloop.protocol.io.os.replace", side_effect=OSError("power loss")):
        with pytest.raises(OSError):
            manager.save(_checkpoint(iteration=2))

    assert manager.tmp_path.exists()
    assert manager.load().iteration == 1


@pytest.mark.parametrize(
    "content",
    [
        "not: [valid",
        "- just\n- a list\n",
        "run_id: r\nschema_version: 1\n",
    ],
    ids=["bad-yaml", "not-mapping", "missing-fields"],
)
def test_corrupt_checkpoint(tmp_path: Path, content: str) -> None:
    (tmp_path / "checkpoint.yml").write_text(content)
    with pytest.raises(IntegrityError) as excinfo:
        CheckpointManager(tmp_path).load()
    assert excinfo.value.code == ErrorCode.CHECKPOINT_CORRUPT
    assert excinfo.value.exit_code == 3


def test_missing_checkpoint(tmp_path: Path) -> None:
    with pytest.raises(IntegrityError):
        CheckpointManager(tmp_path).load()


def test_schema_version_mismatch(tmp_path: Path) -> None:
    data = _checkpoint().to_dict()
    data["schema_version"] = 99
    (tmp_path / "checkpoint.yml").write_text(yaml.safe_dump(data))

    with pytest.raises(IntegrityError) as excinfo:
        CheckpointManager(tmp_path).load()
    assert excinfo.value.details == {"found": 99, "expected": 1}


class TestSpecHash:
    def test_hash_is_sha256_hex(self, tmp_path: Path) -> None:
        path = tmp_path / "spec.md"
        path.write_bytes(b"")
        assert compute_file_hash(path) == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_verify_passes_for_unchanged_file(self, tmp_path: Path) -> None:
        path = tmp_path / "frozen.md"
        path.write_text("# Spec\n")
        verify_spec_hash(path, compute_file_hash(path))

    def test_verify_detects_modification(self, tmp_path: Path) -> None:
        path = tmp_path / "frozen.md"
        path.write_text("# Spec\n")
        expected = compute_file_hash(path)
        path.write_text("# Spec\nextra\n")

        with pytest.raises(IntegrityError) as excinfo:
            verify_spec_hash(path, expected)
        assert excinfo.value.code == ErrorCode.SPEC_HASH_MISMATCH
        assert excinfo.value.details["expected"] == expected

    def test_verify_detects_deletion(self, tmp_path: Path) -> None:
        path = tmp_path / "frozen.md"
        path.write_text("x")
        expected = compute_file_hash(path)
        os.remove(path)
        with pytest.raises(IntegrityError, match="cannot be read"):
            verify_spec_hash(path, expected)
