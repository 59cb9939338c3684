"""Tests for specloop.coordinator.graph."""

from __future__ import annotations

import pytest

from specloop.coordinator.graph import (
    build_dependency_graph,
    compute_all_impact_depths,
    compute_impact_depth,
    detect_cycles,
    topological_sort,
)
from specloop.errors import GraphError
from specloop.protocol.models import Dependency, Task


def _task(task_id: str, *blocks: str, status: str = "open", dep_type: str = "blocks") -> Task:
    return Task(id=task_id, status=status, dependencies=[Dependency(type=dep_type, target=t) for t in blocks])


def test_blocks_edges_are_inverted() -> None:
    # "b depends on a" is stored on a.
    graph = build_dependency_graph([_task("a", "b"), _task("b")])
    assert graph.successors("a") == ["b"]
    assert graph.blockers("b") == ["a"]
    assert graph.blockers("a") == []
    assert graph.roots == ["a"]


def test_closed_blocker_makes_dependent_a_root() -> None:
    graph = build_dependency_graph([_task("a", "b", status="closed"), _task("b")])
    assert set(graph.roots) == {"a", "b"}


def test_non_blocking_dependency_types_ignored() -> None:
    graph = build_dependency_graph([_task("a", "b", dep_type="related"), _task("b")])
    assert graph.blockers("b") == []


def test_duplicate_edges_collapse() -> None:
    task = Task(id="a", dependencies=[Dependency("blocks", "b"), Dependency("blocks", "b")])
    graph = build_dependency_graph([task, _task("b")])
    assert graph.successors("a") == ["b"]
    assert graph.blockers("b") == ["a"]


def test_edge_to_unknown_task_is_kept_but_harmless() -> None:
    graph = build_dependency_graph([_task("a", "ghost")])
    assert graph.successors("a") == ["ghost"]
    assert detect_cycles(graph) == []
    assert topological_sort(graph) == ["a"]


class TestImpactDepth:
    def test_counts_distinct_transitive_dependents(self) -> None:
        # a -> b -> d, a -> c -> d
        graph = build_dependency_graph([_task("a", "b", "c"), _task("b", "d"), _task("c", "d"), _task("d")])
        assert compute_impact_depth(graph, "a") == 3
        assert compute_impact_depth(graph, "b") == 1
        assert compute_impact_depth(graph, "d") == 0

    def test_all_depths(self) -> None:
        graph = build_dependency_graph([_task("a", "b"), _task("b", "c"), _task("c")])
        assert compute_all_impact_depths(graph) == {"a": 2, "b": 1, "c": 0}

    def test_cycle_does_not_loop(self) -> None:
        graph = build_dependency_graph([_task("a", "b"), _task("b", "a")])
        assert compute_impact_depth(graph, "a") == 1


class TestCycles:
    def test_two_node_cycle(self) -> None:
        graph = build_dependency_graph([_task("a", "b"), _task("b", "a"), _task("c")])
        assert detect_cycles(graph) == [["a", "b"]]

    def test_self_loop(self) -> None:
        graph = build_dependency_graph([_task("a", "a")])
        assert detect_cycles(graph) == [["a"]]

    def test_separate_cycles_reported_individually(self) -> None:
        graph = build_dependency_graph(
            [_task("a", "b"), _task("b", "a"), _task("x", "y"), _task("y", "z"), _task("z", "x")]
        )
        cycles = detect_cycles(graph)
        assert sorted(sorted(c) for c in cycles) == [["a", "b"], ["x", "y", "z"]]

    def test_acyclic(self) -> None:
        graph = build_dependency_graph([_task("a", "b", "c"), _task("b", "c"), _task("c")])
        assert detect_cycles(graph) == []


class TestTopologicalSort:
    def test_blockers_first(self) -> None:
        graph = build_dependency_graph([_task("c"), _task("b", "c"), _task("a", "b")])
        assert topological_sort(graph) == ["a", "b", "c"]

    def test_raises_on_cycle(self) -> None:
        graph = build_dependency_graph([_task("a", "b"), _task("b", "a")])
        with pytest.raises(GraphError) as excinfo:
            topological_sort(graph)
        assert excinfo.value.cycles == [["a", "b"]]
