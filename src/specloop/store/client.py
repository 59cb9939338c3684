"""Client for the external task store (issue tracker CLI).

The orchestrator's own store operations are serialized through one lock;
agents write to the store concurrently on their own. Read and status calls
are retried with backoff. ``create`` is not retried because a timed-out
create may still have succeeded.
"""

from __future__ import annotations

import asyncio
import json
import logging
import shlex
from pathlib import Path
from typing import Any, Protocol

from tenacity import RetryCallState

from specloop.coordinator.event_log import EventLog
from specloop.errors import ErrorCode, RuntimeOrchestrationError
from specloop.protocol.models import Task
from specloop.retry import DEFAULT_BACKOFF, Backoff, retry_async

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_S = 120.0


class TaskStoreError(RuntimeError):
    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class TaskStore(Protocol):
    async def list_tasks(
        self,
        *,
        labels: list[str] | None = None,
        status: str | None = None,
        strict: bool = False,
    ) -> list[Task]: ...

    async def show(self, task_id: str) -> Task | None: ...

    async def create(
        self, title: str, *, labels: list[str], type: str = "task", description: str = ""
    ) -> str | None: ...

    async def update_status(self, task_id: str, status: str) -> None: ...

    async def close(self, task_id: str, reason: str) -> None: ...

    async def add_label(self, task_id: str, label: str) -> None: ...

    async def sync(self) -> None: ...


class CliTaskStore:
    def __init__(
        self,
        repo_root: Path,
        command: str = "tbd",
        *,
        events: EventLog | None = None,
        backoff: Backoff = DEFAULT_BACKOFF,
        timeout_s: float = COMMAND_TIMEOUT_S,
    ) -> None:
        self.repo_root = repo_root
        self._argv = shlex.split(command)
        self.events = events
        self._backoff = backoff
        self._timeout_s = timeout_s
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_once(self, args: list[str]) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._argv,
                *args,
                cwd=self.repo_root,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise TaskStoreError(f"cannot run {self._argv[0]}: {exc}", retryable=False) from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout_s)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            raise TaskStoreError(f"{self._argv[0]} {args[0]} timed out") from None
        if proc.returncode != 0:
            err = stderr.decode("utf-8", errors="replace").strip()
            raise TaskStoreError(f"{self._argv[0]} {' '.join(args)} exited {proc.returncode}: {err}")
        return stdout.decode("utf-8", errors="replace")

    def _log_retry(self, state: RetryCallState) -> None:
        logger.info("task store command failed (attempt %d), retrying", state.attempt_number)

    async def _exec(self, args: list[str], *, strict: bool, retry: bool = True) -> str:
        """Run one store command. Strict failures raise; others are logged and yield ``""``."""
        async with self._lock:
            try:
                if not retry:
                    return await self._run_once(args)
                return await retry_async(self._run_once, args, backoff=self._backoff, on_retry=self._log_retry)
            except TaskStoreError as exc:
                if strict:
                    raise RuntimeOrchestrationError(
                        f"Task store command failed: {exc}", code=ErrorCode.TASK_STORE_FAILED
                    ) from exc
                logger.warning("task store command failed: %s", exc)
                if self.events is not None:
                    self.events.emit("store_command_error", args=args, error=str(exc))
                return ""

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def list_tasks(
        self,
        *,
        labels: list[str] | None = None,
        status: str | None = None,
        strict: bool = False,
    ) -> list[Task]:
        args = ["list", *(f"--label={label}" for label in labels or []), "--json"]
        if status:
            args.insert(-1, f"--status={status}")
        return _parse_tasks(await self._exec(args, strict=strict))

    async def show(self, task_id: str) -> Task | None:
        out = await self._exec(["show", task_id, "--json"], strict=False)
        data = _loads(out)
        if isinstance(data, dict) and "id" in data:
            return Task.from_dict(data)
        return None

    async def create(
        self,
        title: str,
        *,
        labels: list[str],
        type: str = "task",
        description: str = "",
    ) -> str | None:
        args = ["create", title, f"--type={type}", *(f"--label={label}" for label in labels)]
        if description:
            args.append(f"--description={description}")
        args.append("--json")
        out = (await self._exec(args, strict=False, retry=False)).strip()
        if not out:
            return None
        data = _loads(out)
        if isinstance(data, dict) and data.get("id"):
            return str(data["id"])
        return out.splitlines()[-1].strip() or None

    async def update_status(self, task_id: str, status: str) -> None:
        await self._exec(["update", task_id, f"--status={status}"], strict=False)

    async def close(self, task_id: str, reason: str) -> None:
        await self._exec(["close", task_id, f"--reason={reason}"], strict=False)

    async def add_label(self, task_id: str, label: str) -> None:
        await self._exec(["label", "add", task_id, label], strict=True)

    async def sync(self) -> None:
        await self._exec(["sync"], strict=False)


def _loads(text: str) -> Any:
    if not text.strip():
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _parse_tasks(text: str) -> list[Task]:
    data = _loads(text)
    if not isinstance(data, list):
        return []
    return [Task.from_dict(item) for item in data if isinstance(item, dict) and "id" in item]
