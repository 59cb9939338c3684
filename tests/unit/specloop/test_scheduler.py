"""Tests for specloop.coordinator.scheduler."""

from __future__ import annotations

from specloop.coordinator.scheduler import Scheduler
from specloop.errors import ErrorCode
from specloop.protocol.models import Dependency, Task


def _task(
    task_id: str,
    *blocks: str,
    priority: int = 2,
    status: str = "open",
    created_at: str = "2026-01-01T00:00:00+00:00",
    title: str = "",
) -> Task:
    return Task(
        id=task_id,
        title=title or task_id.upper(),
        status=status,
        priority=priority,
        created_at=created_at,
        dependencies=[Dependency(type="blocks", target=t) for t in blocks],
    )


def _scheduler(tasks: list[Task], scope: list[str] | None = None) -> Scheduler:
    sched = Scheduler(scope if scope is not None else [t.id for t in tasks])
    sched.rebuild(tasks)
    return sched


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------


class TestOrdering:
    def test_impact_depth_beats_priority(self) -> None:
        sched = _scheduler([_task("p", priority=0), _task("q", "r", priority=3), _task("r")])
        assert [t.id for t in sched.ready_tasks(set(), set(), set())] == ["q", "p"]

    def test_priority_then_created_then_id(self) -> None:
        sched = _scheduler(
            [
                _task("late", priority=1, created_at="2026-01-02T00:00:00+00:00"),
                _task("early", priority=1, created_at="2026-01-01T00:00:00+00:00"),
                _task("zz", priority=0),
                _task("aa", priority=0),
            ]
        )
        assert [t.id for t in sched.ready_tasks(set(), set(), set())] == ["aa", "zz", "early", "late"]

    def test_pick_next_skips_busy_and_blocked(self) -> None:
        sched = _scheduler([_task("a"), _task("b"), _task("c")])
        assert sched.pick_next({"a"}, {"b"}, set()).id == "c"
        assert sched.pick_next({"a"}, {"b"}, {"c"}) is None

    def test_closed_tasks_are_never_ready(self) -> None:
        sched = _scheduler([_task("a", status="closed"), _task("b")])
        assert [t.id for t in sched.ready_tasks(set(), set(), set())] == ["b"]


# ---------------------------------------------------------------------------
# Blocker resolution
# ---------------------------------------------------------------------------


class TestBlockers:
    def test_in_scope_blocker_needs_completion(self) -> None:
        # Closed in the store but not completed by this run: still blocking.
        sched = _scheduler([_task("a", "b", status="closed"), _task("b")])
        assert sched.ready_tasks(set(), set(), set()) == []
        assert [t.id for t in sched.ready_tasks({"a"}, set(), set())] == ["b"]

    def test_open_external_blocker_blocks(self) -> None:
        sched = _scheduler([_task("ext", "a"), _task("a")], scope=["a"])
        assert sched.ready_tasks(set(), set(), set()) == []

    def test_in_progress_external_blocker_blocks(self) -> None:
        sched = _scheduler([_task("ext", "a", status="in_progress"), _task("a")], scope=["a"])
        assert sched.ready_tasks(set(), set(), set()) == []
        report = sched.detect_deadlock(set(), set(), set(), active_count=0)
        assert report is not None
        assert report.kind == "external"

    def test_absent_external_blocker_is_resolved(self) -> None:
        # Edges live on the blocker, so a blocker missing from the listing adds none.
        sched = _scheduler([_task("a")], scope=["a"])
        assert [t.id for t in sched.ready_tasks(set(), set(), set())] == ["a"]

    def test_closed_external_blocker_is_resolved(self) -> None:
        sched = _scheduler([_task("ext", "a", status="closed"), _task("a")], scope=["a"])
        assert [t.id for t in sched.ready_tasks(set(), set(), set())] == ["a"]

    def test_dependency_ids(self) -> None:
        sched = _scheduler([_task("a", "c"), _task("b", "c"), _task("c")])
        assert sorted(sched.dependency_ids("c")) == ["a", "b"]


# ---------------------------------------------------------------------------
# Deadlock detection
# ---------------------------------------------------------------------------


class TestDeadlock:
    def test_none_while_agents_active(self) -> None:
        sched = _scheduler([_task("a", "b"), _task("b")])
        assert sched.detect_deadlock(set(), {"a"}, set(), 1) is None

    def test_none_when_everything_finished_or_blocked(self) -> None:
        sched = _scheduler([_task("a"), _task("b")])
        assert sched.detect_deadlock({"a"}, set(), {"b"}, 0) is None

    def test_failed_blocker(self) -> None:
        sched = _scheduler([_task("a", "b"), _task("b", "c"), _task("c")])
        report = sched.detect_deadlock(set(), set(), {"a"}, 0)

        assert report is not None
        assert report.kind == "failed_blocker"
        assert report.code == ErrorCode.DEADLOCK
        assert report.waiting == ["b", "c"]
        assert "b blocked by failed task a" in report.message
        assert "c blocked by failed task a (via b)" in report.message

    def test_external_blocker_wins(self) -> None:
        sched = _scheduler([_task("ext", "a", title="Upstream"), _task("a")], scope=["a"])
        report = sched.detect_deadlock(set(), set(), set(), 0)

        assert report is not None
        assert report.kind == "external"
        assert report.code == ErrorCode.EXTERNAL_BLOCKED
        assert "a blocked by external task ext (Upstream)" in report.message

    def test_cycle_reports_unresolved(self) -> None:
        sched = _scheduler([_task("a", "b"), _task("b", "a")])
        report = sched.detect_deadlock(set(), set(), set(), 0)
        assert report is not None
        assert report.kind == "unresolved"
        assert sched.check_cycles() == [["a", "b"]]


# ---------------------------------------------------------------------------
# Dry-run planning
# ---------------------------------------------------------------------------


class TestPlan:
    def test_order_follows_selection_policy(self) -> None:
        sched = _scheduler([_task("p", priority=0), _task("q", "r"), _task("r")])
        order, unschedulable = sched.plan(set(), set())

        assert [p.task_id for p in order] == ["q", "p", "r"]
        assert [p.position for p in order] == [1, 2, 3]
        assert order[0].impact_depth == 1
        assert order[1].priority == 0
        assert unschedulable == []

    def test_blocked_dependents_are_unschedulable(self) -> None:
        sched = _scheduler([_task("a", "b"), _task("b"), _task("c")])
        order, unschedulable = sched.plan(set(), {"a"})
        assert [p.task_id for p in order] == ["c"]
        assert unschedulable == ["b"]

    def test_completed_tasks_are_skipped(self) -> None:
        sched = _scheduler([_task("a", "b"), _task("b")])
        order, _ = sched.plan({"a"}, set())
        assert [p.task_id for p in order] == ["b"]

    def test_plan_does_not_mutate_inputs(self) -> None:
        sched = _scheduler([_task("a")])
        completed: set[str] = set()
        sched.plan(completed, set())
        assert completed == set()
