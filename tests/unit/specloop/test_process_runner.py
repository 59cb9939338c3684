"""Tests for specloop.runner.process against real /bin/sh children."""

from __future__ import annotations

import asyncio
import os
import subprocess
import time

import pytest

from specloop.runner import process
from specloop.runner.process import (
    _normalize_returncode,
    active_pids,
    group_alive,
    kill_orphan,
    run_process,
)

pytestmark = pytest.mark.skipif(os.name != "posix", reason="process groups need POSIX")


def _sh(script: str, **kwargs):
    return asyncio.run(run_process("/bin/sh", ["-c", script], cwd=os.getcwd(), **kwargs))


def test_exit_code_and_merged_output() -> None:
    result = _sh("echo out; echo err >&2; exit 3", timeout_s=10)
    assert result.exit_code == 3
    assert not result.timed_out
    assert set(result.output_tail) == {"out", "err"}
    assert result.pid is not None


def test_tail_is_bounded() -> None:
    result = _sh("for i in 1 2 3 4 5 6 7 8 9 10; do echo line$i; done", timeout_s=10, max_lines=3)
    assert result.output_tail == ["line8", "line9", "line10"]
    assert result.last_lines == "line8\nline9\nline10"


def test_partial_last_line_is_kept() -> None:
    assert _sh("printf 'no newline'", timeout_s=10).output_tail == ["no newline"]


def test_long_lines_keep_their_end() -> None:
    script = "head -c 300000 /dev/zero | tr '\\000' x; printf 'end\\nshort\\n'; head -c 5000 /dev/zero | tr '\\000' y"
    result = _sh(script, timeout_s=10, max_line_chars=100)
    assert result.output_tail == ["x" * 97 + "end", "short", "y" * 100]


def test_timeout_terminates_group() -> None:
    started = time.monotonic()
    result = _sh("sleep 30 & sleep 30; wait", timeout_s=0.3, grace_s=1.0)
    assert result.timed_out
    assert result.exit_code == 128 + 15
    assert time.monotonic() - started < 10
    assert not group_alive(result.pid)


def test_missing_binary_reports_127() -> None:
    result = asyncio.run(run_process("/nonexistent/agent-cli", [], cwd=os.getcwd(), timeout_s=5))
    assert result.exit_code == 127
    assert "failed to start" in result.output_tail[0]
    assert result.pid is None


def test_env_is_merged_and_nested_session_vars_stripped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CLAUDECODE", "1")
    result = _sh('echo "${CLAUDECODE:-unset} $EXTRA"', timeout_s=10, env={"EXTRA": "yes"})
    assert result.output_tail == ["unset yes"]


def test_on_spawn_sees_live_pid() -> None:
    seen: list[int] = []

    def on_spawn(pid: int) -> None:
        seen.append(pid)
        assert pid in active_pids()

    result = _sh("exit 0", timeout_s=10, on_spawn=on_spawn)
    assert seen == [result.pid]
    assert result.pid not in active_pids()


def test_cancel_kills_process_tree() -> None:
    pids: list[int] = []

    async def scenario() -> None:
        task = asyncio.create_task(
            run_process("/bin/sh", ["-c", "sleep 30"], cwd=os.getcwd(), timeout_s=60, on_spawn=pids.append, grace_s=1.0)
        )
        await asyncio.sleep(0.3)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(scenario())
    assert pids and not group_alive(pids[0])
    assert process.active_pids() == []


def test_kill_orphan_terminates_foreign_group() -> None:
    orphan = subprocess.Popen(["/bin/sh", "-c", "sleep 30"], start_new_session=True)
    try:
        assert group_alive(orphan.pid)
        asyncio.run(kill_orphan(orphan.pid, grace_s=0.5))
        assert orphan.wait(timeout=5) != 0
    finally:
        if orphan.poll() is None:
            orphan.kill()
            orphan.wait()
    assert not group_alive(orphan.pid)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(0, 0), (2, 2), (-15, 143), (-9, 137), (None, 1)],
)
def test_normalize_returncode(raw: int | None, expected: int) -> None:
    assert _normalize_returncode(raw) == expected
