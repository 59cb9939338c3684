"""Dependency graph construction and analysis.

The task store records dependencies inverted: ``A depends on B`` is stored on
B as ``{"type": "blocks", "target": "A"}``. :func:`build_dependency_graph`
is the only place that interprets that convention.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field

from specloop.errors import GraphError
from specloop.protocol.models import Task, TaskStatus

logger = logging.getLogger(__name__)

BLOCKS = "blocks"


@dataclass(slots=True)
class DependencyGraph:
    forward: dict[str, list[str]] = field(default_factory=dict)  # blocker -> tasks it unblocks
    reverse: dict[str, list[str]] = field(default_factory=dict)  # task -> its blockers
    roots: list[str] = field(default_factory=list)  # no non-terminal blocker
    all_ids: set[str] = field(default_factory=set)

    def successors(self, task_id: str) -> list[str]:
        return self.forward.get(task_id, [])

    def blockers(self, task_id: str) -> list[str]:
        return self.reverse.get(task_id, [])


def build_dependency_graph(tasks: Iterable[Task]) -> DependencyGraph:
    task_list = list(tasks)
    graph = DependencyGraph(all_ids={t.id for t in task_list})
    by_id = {t.id: t for t in task_list}

    for task in task_list:
        for dep in task.dependencies:
            if dep.type != BLOCKS:
                continue
            fwd = graph.forward.setdefault(task.id, [])
            if dep.target not in fwd:
                fwd.append(dep.target)
            rev = graph.reverse.setdefault(dep.target, [])
            if task.id not in rev:
                rev.append(task.id)

    for task in task_list:
        unresolved = [
            b for b in graph.blockers(task.id) if b in by_id and by_id[b].status != TaskStatus.CLOSED
        ]
        if not unresolved:
            graph.roots.append(task.id)
    return graph


def detect_cycles(graph: DependencyGraph) -> list[list[str]]:
    """Tarjan's SCC. Returns every strongly connected component that is a cycle.

    Self-loops are reported as single-element cycles. Edges to ids outside
    the graph are ignored.
    """
    index_of: dict[str, int] = {}
    lowlink: dict[str, int] = {}
    on_stack: set[str] = set()
    stack: list[str] = []
    cycles: list[list[str]] = []
    counter = 0

    for start in sorted(graph.all_ids):
        if start in index_of:
            continue
        # Iterative DFS: (node, iterator over successors)
        work: list[tuple[str, Iterable[str]]] = []
        index_of[start] = lowlink[start] = counter
        counter += 1
        stack.append(start)
        on_stack.add(start)
        work.append((start, iter(graph.successors(start))))

        while work:
            node, succ = work[-1]
            advanced = False
            for nxt in succ:
                if nxt not in graph.all_ids:
                    continue
                if nxt not in index_of:
                    index_of[nxt] = lowlink[nxt] = counter
                    counter += 1
                    stack.append(nxt)
                    on_stack.add(nxt)
                    work.append((nxt, iter(graph.successors(nxt))))
                    advanced = True
                    break
                if nxt in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[nxt])
            if advanced:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component: list[str] = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1 or node in graph.successors(node):
                    cycles.append(list(reversed(component)))
    return cycles


def compute_impact_depth(graph: DependencyGraph, task_id: str) -> int:
    """Number of distinct tasks transitively unblocked by ``task_id``."""
    seen: set[str] = {task_id}
    queue = deque([task_id])
    count = 0
    while queue:
        current = queue.popleft()
        for nxt in graph.successors(current):
            if nxt in seen or nxt not in graph.all_ids:
                continue
            seen.add(nxt)
            count += 1
            queue.append(nxt)
    return count


def compute_all_impact_depths(graph: DependencyGraph) -> dict[str, int]:
    return {task_id: compute_impact_depth(graph, task_id) for task_id in graph.all_ids}


def topological_sort(graph: DependencyGraph) -> list[str]:
    """Kahn's algorithm, blockers first. Raises :class:`GraphError` on a cycle."""
    in_degree = {task_id: 0 for task_id in graph.all_ids}
    for source, targets in graph.forward.items():
        if source not in graph.all_ids:
            continue
        for target in targets:
            if target in in_degree:
                in_degree[target] += 1

    queue = deque(sorted(t for t, d in in_degree.items() if d == 0))
    order: list[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for target in graph.successors(current):
            if target not in in_degree:
                continue
            in_degree[target] -= 1
            if in_degree[target] == 0:
                queue.append(target)

    if len(order) != len(graph.all_ids):
        cycles = detect_cycles(graph)
        raise GraphError(f"Dependency cycles detected: {cycles}", cycles=cycles)
    return order
