"""External process runner.

Every agent process is started in its own session/process group so that a
timeout or an interrupt can signal the whole descendant tree. Output from
stdout and stderr is merged and only a bounded tail is kept.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from collections import deque
from collections.abc import Callable, Mapping

import psutil

from specloop.protocol.models import ProcessResult

logger = logging.getLogger(__name__)

MAX_OUTPUT_LINES = 5_000
MAX_LINE_CHARS = 65_536  # longer lines keep their end
KILL_GRACE_SECONDS = 10.0
_DRAIN_SECONDS = 5.0
_READ_CHUNK = 65_536

# Env vars that make nested agent CLIs refuse to start ("cannot launch
# inside another session").
STRIP_ENV_VARS = frozenset(
    {"CLAUDECODE", "CLAUDE_CODE_ENTRYPOINT", "CLAUDE_REPL", "CLAUDE_CODE_PACKAGE_DIR"}
)

_POSIX = os.name == "posix"

# pid -> live child, consulted by the interrupt handler.
_active: dict[int, asyncio.subprocess.Process] = {}


def child_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if k not in STRIP_ENV_VARS}
    if extra:
        env.update(extra)
    return env


def active_pids() -> list[int]:
    return list(_active)


async def run_process(
    command: str,
    args: list[str],
    *,
    cwd: str,
    timeout_s: float,
    env: Mapping[str, str] | None = None,
    on_spawn: Callable[[int], None] | None = None,
    grace_s: float = KILL_GRACE_SECONDS,
    max_lines: int = MAX_OUTPUT_LINES,
    max_line_chars: int = MAX_LINE_CHARS,
) -> ProcessResult:
    """Run ``command args`` to completion or until ``timeout_s`` expires.

    Never raises for process-level failures: a binary that cannot be started
    is reported as a non-zero exit with the reason in the output tail.
    Cancelling the awaiting task kills the process tree before re-raising.
    """
    start = time.monotonic()
    tail: deque[str] = deque(maxlen=max_lines)
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            env=child_env(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=_POSIX,
        )
    except OSError as exc:
        logger.warning("failed to start %s: %s", command, exc)
        return ProcessResult(
            exit_code=127 if isinstance(exc, FileNotFoundError) else 1,
            output_tail=[f"failed to start {command}: {exc}"],
            duration_s=time.monotonic() - start,
            timed_out=False,
        )

    pid = proc.pid
    _active[pid] = proc
    if on_spawn is not None:
        on_spawn(pid)
    pump = asyncio.create_task(_pump(proc.stdout, tail, max_line_chars))
    timed_out = False
    try:
        try:
            await asyncio.wait_for(proc.wait(), timeout=timeout_s)
        except TimeoutError:
            timed_out = True
            logger.info("process %d exceeded %.1fs, terminating group", pid, timeout_s)
            await kill_process_tree(proc, grace_s=grace_s)
    except asyncio.CancelledError:
        await kill_process_tree(proc, grace_s=grace_s)
        pump.cancel()
        raise
    finally:
        _active.pop(pid, None)

    # A detached grandchild can hold the pipe open after the leader exits.
    try:
        await asyncio.wait_for(pump, timeout=_DRAIN_SECONDS)
    except TimeoutError:
        pass

    return ProcessResult(
        exit_code=_normalize_returncode(proc.returncode),
        output_tail=list(tail),
        duration_s=time.monotonic() - start,
        timed_out=timed_out,
        pid=pid,
    )


async def _pump(stream: asyncio.StreamReader | None, tail: deque[str], max_line_chars: int) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    partial = ""
    while True:
        chunk = await stream.read(_READ_CHUNK)
        if not chunk:
            break
        partial += decoder.decode(chunk)
        *lines, partial = partial.split("\n")
        tail.extend(line[-max_line_chars:] for line in lines)
        partial = partial[-max_line_chars:]
    partial += decoder.decode(b"", final=True)
    if partial:
        tail.append(partial[-max_line_chars:])


def _normalize_returncode(code: int | None) -> int:
    if code is None:
        return 1
    if code < 0:
        # Killed by signal N: report the shell convention 128+N.
        return 128 - code
    return code


# ---------------------------------------------------------------------------
# Termination
# ---------------------------------------------------------------------------


async def kill_process_tree(proc: asyncio.subprocess.Process, *, grace_s: float = KILL_GRACE_SECONDS) -> None:
    """SIGTERM the whole tree, wait ``grace_s``, then SIGKILL survivors."""
    if not _POSIX:
        await asyncio.to_thread(_psutil_kill_tree, proc.pid, grace_s)
        await proc.wait()
        return

    if not _signal_group(proc.pid, signal.SIGTERM):
        await proc.wait()
        return
    deadline = time.monotonic() + grace_s
    try:
        await asyncio.wait_for(proc.wait(), timeout=grace_s)
    except TimeoutError:
        pass
    while group_alive(proc.pid) and time.monotonic() < deadline:
        await asyncio.sleep(0.1)
    _signal_group(proc.pid, signal.SIGKILL)
    await proc.wait()


async def kill_orphan(pid: int, *, grace_s: float = KILL_GRACE_SECONDS) -> None:
    """Terminate a process tree this process did not spawn (e.g. after a crash)."""
    if not _POSIX:
        await asyncio.to_thread(_psutil_kill_tree, pid, grace_s)
        return
    if not _signal_group(pid, signal.SIGTERM):
        return
    deadline = time.monotonic() + grace_s
    while group_alive(pid) and time.monotonic() < deadline:
        await asyncio.sleep(0.1)
    _signal_group(pid, signal.SIGKILL)


async def terminate_all(*, grace_s: float = KILL_GRACE_SECONDS) -> int:
    """Kill every registered process tree. Returns how many were signalled."""
    procs = list(_active.values())
    if procs:
        await asyncio.gather(
            *(kill_process_tree(p, grace_s=grace_s) for p in procs),
            return_exceptions=True,
        )
    return len(procs)


def group_alive(pid: int) -> bool:
    """True if the process group led by ``pid`` (or the pid itself) still exists."""
    if not _POSIX:
        return psutil.pid_exists(pid)
    try:
        os.killpg(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _signal_group(pgid: int, sig: signal.Signals) -> bool:
    try:
        os.killpg(pgid, sig)
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning("not permitted to signal process group %d", pgid)
        return False
    return True


def _psutil_kill_tree(pid: int, grace_s: float) -> None:
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        procs = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        procs = []
    procs.append(parent)
    for p in procs:
        try:
            p.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=grace_s)
    for p in alive:
        try:
            p.kill()
        except psutil.NoSuchProcess:
            pass
