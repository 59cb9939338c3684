"""AgentPool: bounded set of in-flight agent coroutines.

Coding agents count against ``capacity``; maintenance agents run alongside
them without taking a slot. Callers assign work while ``has_capacity`` is
true and then block in :meth:`AgentPool.wait_for_any` until at least one
slot finishes.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Coroutine
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AgentSlot:
    key: str
    kind: str  # "task" | "maintenance"
    meta: dict[str, Any] = field(default_factory=dict)
    started: float = field(default_factory=time.monotonic)


class AgentPool:
    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._running: dict[asyncio.Task[Any], AgentSlot] = {}

    @property
    def has_capacity(self) -> bool:
        return self.active_count("task") < self.capacity

    def active_count(self, kind: str | None = None) -> int:
        if kind is None:
            return len(self._running)
        return sum(1 for slot in self._running.values() if slot.kind == kind)

    def active_keys(self, kind: str | None = None) -> list[str]:
        return [s.key for s in self._running.values() if kind is None or s.kind == kind]

    def assign(
        self,
        key: str,
        coro: Coroutine[Any, Any, Any],
        *,
        kind: str = "task",
        meta: dict[str, Any] | None = None,
    ) -> AgentSlot:
        if kind == "task" and not self.has_capacity:
            coro.close()
            raise RuntimeError(f"pool at capacity ({self.capacity}); cannot assign {key}")
        slot = AgentSlot(key=key, kind=kind, meta=dict(meta or {}))
        task = asyncio.create_task(coro, name=f"{kind}:{key}")
        self._running[task] = slot
        return slot

    async def wait_for_any(self) -> list[tuple[AgentSlot, Any]]:
        """Wait until at least one slot finishes.

        Returns ``(slot, result)`` pairs; a coroutine that raised yields the
        exception object as its result.
        """
        if not self._running:
            return []
        done, _ = await asyncio.wait(self._running, return_when=asyncio.FIRST_COMPLETED)
        finished: list[tuple[AgentSlot, Any]] = []
        for task in done:
            slot = self._running.pop(task)
            if task.cancelled():
                finished.append((slot, asyncio.CancelledError()))
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning("agent %s (%s) raised %s", slot.key, slot.kind, exc)
                finished.append((slot, exc))
            else:
                finished.append((slot, task.result()))
        return finished

    async def cancel_all(self) -> int:
        """Cancel every in-flight coroutine and wait for them to unwind."""
        tasks = list(self._running)
        self._running.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        return len(tasks)
