"""Critical-path task scheduler.

Picks ready tasks by impact depth (desc), then priority (P0 first), then
creation time (oldest first). The checkpoint, not the task store, decides
whether an in-scope blocker is done; out-of-scope blockers are resolved
only when the store reports them closed or no longer lists them.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from specloop.coordinator.graph import (
    DependencyGraph,
    build_dependency_graph,
    compute_all_impact_depths,
    detect_cycles,
)
from specloop.errors import ErrorCode
from specloop.protocol.models import Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PlannedTask:
    position: int
    task_id: str
    title: str
    impact_depth: int
    priority: int


@dataclass(slots=True)
class DeadlockReport:
    """Why no task can be scheduled although in-scope work remains."""

    kind: str  # "external" | "failed_blocker" | "unresolved"
    waiting: list[str]
    chains: list[str] = field(default_factory=list)

    @property
    def code(self) -> ErrorCode:
        return ErrorCode.EXTERNAL_BLOCKED if self.kind == "external" else ErrorCode.DEADLOCK

    @property
    def message(self) -> str:
        head = {
            "external": "Remaining tasks are blocked by open tasks outside this run",
            "failed_blocker": "Remaining tasks are blocked by tasks that permanently failed",
            "unresolved": "No task is ready and no agent is running",
        }[self.kind]
        detail = "\n".join(self.chains) if self.chains else ", ".join(self.waiting)
        return f"{head}:\n{detail}"


class Scheduler:
    def __init__(self, scope_ids: Iterable[str] = ()) -> None:
        self._scope: set[str] = set(scope_ids)
        self._graph = DependencyGraph()
        self._depths: dict[str, int] = {}
        self._tasks: dict[str, Task] = {}

    @property
    def scope(self) -> set[str]:
        return set(self._scope)

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    def set_scope(self, scope_ids: Iterable[str]) -> None:
        self._scope = set(scope_ids)

    def rebuild(self, tasks: Iterable[Task]) -> None:
        """Rebuild from a fresh task listing (in-scope tasks plus unfinished external blockers)."""
        task_list = list(tasks)
        self._tasks = {t.id: t for t in task_list}
        self._graph = build_dependency_graph(task_list)
        self._depths = compute_all_impact_depths(self._graph)

    def check_cycles(self) -> list[list[str]]:
        return detect_cycles(self._graph)

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def impact_depth(self, task_id: str) -> int:
        return self._depths.get(task_id, 0)

    def dependency_ids(self, task_id: str) -> list[str]:
        return list(self._graph.blockers(task_id))

    def _sort_key(self, task: Task) -> tuple[int, int, str, str]:
        return (-self.impact_depth(task.id), task.priority, task.created_at, task.id)

    def _blocker_resolved(self, blocker_id: str, completed: set[str]) -> bool:
        if blocker_id in self._scope:
            return blocker_id in completed
        blocker = self._tasks.get(blocker_id)
        # An id the listing cannot account for is still pending.
        return blocker is not None and blocker.status == TaskStatus.CLOSED

    def ready_tasks(
        self,
        completed: set[str],
        in_progress: set[str],
        blocked: set[str],
    ) -> list[Task]:
        ready: list[Task] = []
        for task_id in self._scope:
            if task_id in completed or task_id in in_progress or task_id in blocked:
                continue
            task = self._tasks.get(task_id)
            if task is None or task.status == TaskStatus.CLOSED:
                continue
            if all(self._blocker_resolved(b, completed) for b in self._graph.blockers(task_id)):
                ready.append(task)
        ready.sort(key=self._sort_key)
        return ready

    def pick_next(
        self,
        completed: set[str],
        in_progress: set[str],
        blocked: set[str],
    ) -> Task | None:
        ready = self.ready_tasks(completed, in_progress, blocked)
        return ready[0] if ready else None

    def detect_deadlock(
        self,
        completed: set[str],
        in_progress: set[str],
        blocked: set[str],
        active_count: int,
    ) -> DeadlockReport | None:
        if active_count > 0:
            return None
        if self.ready_tasks(completed, in_progress, blocked):
            return None
        waiting = sorted(self._scope - completed - blocked - in_progress)
        if not waiting:
            return None

        external: list[str] = []
        failed: list[str] = []
        for task_id in waiting:
            for blocker_id, via in self._root_blockers(task_id, completed, blocked):
                suffix = f" (via {via})" if via != blocker_id else ""
                if blocker_id in blocked:
                    failed.append(f"{task_id} blocked by failed task {blocker_id}{suffix}")
                elif blocker_id not in self._scope:
                    title = self._tasks[blocker_id].title if blocker_id in self._tasks else ""
                    external.append(f"{task_id} blocked by external task {blocker_id} ({title}){suffix}")

        if external:
            return DeadlockReport(kind="external", waiting=waiting, chains=external)
        if failed:
            return DeadlockReport(kind="failed_blocker", waiting=waiting, chains=failed)
        return DeadlockReport(kind="unresolved", waiting=waiting)

    def _root_blockers(
        self,
        task_id: str,
        completed: set[str],
        blocked: set[str],
    ) -> list[tuple[str, str]]:
        """Walk unresolved blockers back to the ones that cannot make progress.

        Returns ``(blocker_id, direct_blocker_of_task)`` pairs where the
        blocker is either a permanently failed in-scope task or an open
        out-of-scope task.
        """
        found: list[tuple[str, str]] = []
        seen: set[str] = {task_id}
        stack = [(b, b) for b in self._graph.blockers(task_id)]
        while stack:
            current, via = stack.pop()
            if current in seen or self._blocker_resolved(current, completed):
                continue
            seen.add(current)
            if current in blocked or current not in self._scope:
                found.append((current, via))
                continue
            stack.extend((b, via) for b in self._graph.blockers(current))
        return found

    def plan(self, completed: set[str], blocked: set[str]) -> tuple[list[PlannedTask], list[str]]:
        """Simulate the selection policy assuming every pick succeeds.

        Returns the assignment order and the tasks that would never become ready.
        """
        done = set(completed)
        order: list[PlannedTask] = []
        while True:
            task = self.pick_next(done, set(), blocked)
            if task is None:
                break
            order.append(
                PlannedTask(
                    position=len(order) + 1,
                    task_id=task.id,
                    title=task.title,
                    impact_depth=self.impact_depth(task.id),
                    priority=task.priority,
                )
            )
            done.add(task.id)
        unschedulable = sorted(
            t for t in self._scope - done - blocked
            if t in self._tasks and self._tasks[t].status != TaskStatus.CLOSED
        )
        return order, unschedulable
