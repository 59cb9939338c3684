"""Heartbeat-based run lock.

One orchestrator per run. A lock held by someone else is only reclaimed when
its heartbeat is stale *and* its process is verifiably dead on this host.
"""

from __future__ import annotations

import asyncio
import contextlib
import fcntl
import logging
import os
import socket
import uuid
from collections.abc import Callable, Iterator
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

import psutil

from specloop.errors import ErrorCode, PreconditionError
from specloop.protocol.io import read_json, write_json_atomic
from specloop.protocol.models import parse_iso, utc_now_iso

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_S = 5.0
STALE_AFTER_S = 30.0


@dataclass(slots=True)
class LockRecord:
    run_id: str
    pid: int
    hostname: str
    started_at: str
    heartbeat_at: str
    owner: str = ""


def read_lock(path: Path) -> LockRecord | None:
    data = read_json(path, None)
    if not isinstance(data, dict):
        return None
    try:
        return LockRecord(
            run_id=str(data["run_id"]),
            pid=int(data["pid"]),
            hostname=str(data["hostname"]),
            started_at=str(data["started_at"]),
            heartbeat_at=str(data["heartbeat_at"]),
            owner=str(data.get("owner", "")),
        )
    except (KeyError, TypeError, ValueError):
        return None


def is_reclaimable(record: LockRecord, *, stale_after_s: float = STALE_AFTER_S, hostname: str | None = None) -> bool:
    """Stale heartbeat AND dead process. Locks from other hosts are never reclaimed."""
    beat = parse_iso(record.heartbeat_at)
    if beat is not None:
        age = (datetime.now(UTC) - beat).total_seconds()
        if age <= stale_after_s:
            return False
    if record.hostname != (hostname or socket.gethostname()):
        return False
    return not psutil.pid_exists(record.pid)


@contextlib.contextmanager
def _guard(path: Path) -> Iterator[None]:
    """Serialize read-check-write on the lock file across processes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a+", encoding="utf-8") as handle:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class RunLock:
    def __init__(
        self,
        path: Path,
        run_id: str,
        *,
        heartbeat_interval_s: float = HEARTBEAT_INTERVAL_S,
        stale_after_s: float = STALE_AFTER_S,
    ) -> None:
        self.path = path
        self.guard_path = path.with_suffix(path.suffix + ".guard")
        self.run_id = run_id
        self.heartbeat_interval_s = heartbeat_interval_s
        self.stale_after_s = stale_after_s
        self.owner = uuid.uuid4().hex
        self._held = False
        self._task: asyncio.Task[None] | None = None

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> None:
        """Take the lock or raise ``E_RUN_LOCKED``."""
        with _guard(self.guard_path):
            existing = read_lock(self.path)
            if existing is not None and existing.owner != self.owner:
                if not is_reclaimable(existing, stale_after_s=self.stale_after_s):
                    raise PreconditionError(
                        f"Run {self.run_id} is locked by pid {existing.pid} on {existing.hostname} "
                        f"(last heartbeat {existing.heartbeat_at})",
                        code=ErrorCode.RUN_LOCKED,
                        details=asdict(existing),
                    )
                logger.warning(
                    "reclaiming abandoned lock for %s from dead pid %d", self.run_id, existing.pid
                )
            now = utc_now_iso()
            record = LockRecord(
                run_id=self.run_id,
                pid=os.getpid(),
                hostname=socket.gethostname(),
                started_at=now,
                heartbeat_at=now,
                owner=self.owner,
            )
            write_json_atomic(self.path, asdict(record))
        self._held = True

    def heartbeat(self) -> bool:
        """Refresh the heartbeat. Returns False if the lock is no longer ours."""
        with _guard(self.guard_path):
            existing = read_lock(self.path)
            if existing is None or existing.owner != self.owner:
                self._held = False
                return False
            existing.heartbeat_at = utc_now_iso()
            write_json_atomic(self.path, asdict(existing))
        return True

    def release(self) -> None:
        with _guard(self.guard_path):
            existing = read_lock(self.path)
            if existing is not None and existing.owner == self.owner:
                self.path.unlink(missing_ok=True)
        self._held = False

    def start_heartbeat(self, on_lost: Callable[[], None] | None = None) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._heartbeat_loop(on_lost))

    async def stop_heartbeat(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _heartbeat_loop(self, on_lost: Callable[[], None] | None) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval_s)
            try:
                ok = await asyncio.to_thread(self.heartbeat)
            except OSError as exc:
                logger.warning("run lock heartbeat failed: %s", exc)
                continue
            if not ok:
                logger.error("run lock for %s was taken over by another process", self.run_id)
                if on_lost is not None:
                    on_lost()
                return
