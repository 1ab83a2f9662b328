"""Tests for the dependency graph and conflict tracking (taskgrid/scheduling/dependency_manager.py)."""

import pytest

from taskgrid.exceptions_unified import CycleDetectedError
from taskgrid.scheduling.dependency_manager import TaskDependencyManager, file_overlap
from taskgrid.scheduling.models import ConflictResolution, ErrorCode, Task, TaskStatus


def _task(task_id, status=TaskStatus.VALIDATED, **kwargs) -> Task:
    return Task(id=task_id, title=task_id, description="work", status=status, **kwargs)


@pytest.fixture
def manager():
    return TaskDependencyManager()


# ========================================================================
# GRAPH
# ========================================================================


class TestGraph:
    def test_register_builds_reverse_index(self, manager):
        manager.register_task(_task("b", depends_on=["a"], prefers=["c"]))
        assert manager.get_dependencies("b") == ["a"]
        assert manager.get_dependents("a") == ["b"]
        assert manager.get_soft_dependents("c") == ["b"]

    def test_register_keeps_edges_to_unknown_ids(self, manager):
        manager.register_task(_task("b", depends_on=["later"]))
        assert manager.get_dependents("later") == ["b"]

    def test_add_dependency_rejects_self(self, manager):
        with pytest.raises(CycleDetectedError):
            manager.add_dependency("a", "a")

    def test_add_dependency_rejects_cycle(self, manager):
        manager.add_dependency("b", "a")
        manager.add_dependency("c", "b")
        with pytest.raises(CycleDetectedError) as exc:
            manager.add_dependency("a", "c")
        assert exc.value.cycle == ["a", "c", "b", "a"]
        assert manager.get_dependencies("a") == []

    def test_add_dependency_duplicate_returns_false(self, manager):
        assert manager.add_dependency("b", "a") is True
        assert manager.add_dependency("b", "a") is False

    def test_remove_dependency(self, manager):
        manager.add_dependency("b", "a")
        assert manager.remove_dependency("b", "a") is True
        assert manager.get_dependents("a") == []
        assert manager.remove_dependency("b", "a") is False

    def test_forget_task_keeps_incoming_edges(self, manager):
        manager.register_task(_task("b", depends_on=["a"]))
        manager.forget_task("a")
        assert manager.get_dependents("a") == ["b"]
        manager.forget_task("b")
        assert manager.get_dependents("a") == []

    def test_dependency_chain_is_transitive(self, manager):
        manager.add_dependency("c", "b")
        manager.add_dependency("b", "a")
        assert manager.get_dependency_chain("c") == ["b", "a"]

    def test_stats(self, manager):
        manager.register_task(_task("b", depends_on=["a"], prefers=["x", "y"]))
        assert manager.stats == {
            "hard_edges": 1,
            "soft_edges": 2,
            "active_conflicts": 0,
            "allowed_pairs": 0,
        }


# ========================================================================
# VALIDATION
# ========================================================================


class TestValidation:
    def test_missing_hard_and_soft_dependencies(self, manager):
        task = _task("t", depends_on=["ghost"], prefers=["phantom"])
        issues = manager.validate_dependencies(task, [task])
        codes = [i.code for i in issues]
        assert ErrorCode.MISSING_DEPENDENCY in codes
        assert ErrorCode.MISSING_SOFT_DEPENDENCY in codes
        assert manager.has_blocking_issues(issues)
        assert manager.blocking_ids(issues) == ["ghost"]

    def test_missing_soft_dependency_is_not_blocking(self, manager):
        task = _task("t", prefers=["phantom"])
        issues = manager.validate_dependencies(task, {"t": task})
        assert not manager.has_blocking_issues(issues)

    def test_cycle_through_task(self, manager):
        a = _task("a", depends_on=["b"])
        b = _task("b", depends_on=["a"])
        issues = manager.validate_dependencies(a, [a, b])
        cycle = [i for i in issues if i.code == ErrorCode.CIRCULAR_DEPENDENCY]
        assert cycle
        assert cycle[0].details["cycle"] == ["a", "b", "a"]
        assert manager.blocking_ids(issues) == ["b"]

    def test_self_dependency(self, manager):
        a = _task("a", depends_on=["a"])
        issues = manager.validate_dependencies(a, [a])
        assert [i.code for i in issues] == [ErrorCode.CIRCULAR_DEPENDENCY]


# ========================================================================
# CONFLICTS
# ========================================================================


class TestConflicts:
    def test_file_overlap(self):
        assert file_overlap(_task("a", files=["x.py"]), _task("b", files=["x.py", "y.py"]))
        assert not file_overlap(_task("a", files=["x.py"]), _task("b", files=["z.py"]))

    def test_check_conflicts_records_and_clears(self, manager):
        running = _task("run", status=TaskStatus.IN_PROGRESS, files=["x.py"])
        task = _task("t", files=["x.py"])

        assert manager.check_conflicts(task, [running]) == ["run"]
        record = manager.get_conflict("t")
        assert record.conflicting_tasks == ["run"]
        assert "run" in record.reason
        assert manager.get_conflicting_tasks("run") == ["t"]

        assert manager.check_conflicts(task, []) == []
        assert not manager.has_conflict("t")

    def test_allow_permits_pair_from_then_on(self, manager):
        running = _task("run", status=TaskStatus.IN_PROGRESS, files=["x.py"])
        task = _task("t", files=["x.py"])
        manager.check_conflicts(task, [running])

        assert manager.resolve_conflict("t", ConflictResolution.ALLOW) is True
        assert manager.is_allowed_pair("run", "t")
        assert manager.check_conflicts(task, [running]) == []

    def test_block_keeps_record(self, manager):
        running = _task("run", status=TaskStatus.IN_PROGRESS, files=["x.py"])
        task = _task("t", files=["x.py"])
        manager.check_conflicts(task, [running])

        assert manager.resolve_conflict("t", "block") is True
        assert manager.get_conflict("t").decision == ConflictResolution.BLOCK
        # A later re-check keeps the operator's decision
        manager.check_conflicts(task, [running])
        assert manager.get_conflict("t").decision == ConflictResolution.BLOCK

    def test_resolve_without_conflict(self, manager):
        assert manager.resolve_conflict("nobody", ConflictResolution.MERGE) is False

    def test_custom_predicate(self, manager):
        manager.set_conflict_predicate(lambda a, b: bool(a.tags & b.tags))
        running = _task("run", status=TaskStatus.IN_PROGRESS, tags={"db-migration"})
        assert manager.check_conflicts(_task("t", tags={"db-migration"}), [running]) == ["run"]


# ========================================================================
# QUERIES
# ========================================================================


class TestQueries:
    def test_ready_tasks(self, manager):
        done = _task("a", status=TaskStatus.COMPLETED)
        waiting = _task("b", status=TaskStatus.BLOCKED, depends_on=["a"])
        still = _task("c", status=TaskStatus.VALIDATED, depends_on=["b"])
        running = _task("d", status=TaskStatus.IN_PROGRESS)
        assert manager.get_ready_tasks([done, waiting, still, running]) == [waiting]

    def test_topological_order_keeps_input_order_for_ties(self, manager):
        a = _task("a")
        b = _task("b", depends_on=["a"])
        c = _task("c")
        d = _task("d", depends_on=["b", "c", "outside"])
        ordered = manager.topological_order([d, c, b, a])
        assert [t.id for t in ordered] == ["c", "a", "b", "d"]

    def test_topological_order_raises_on_cycle(self, manager):
        a = _task("a", depends_on=["b"])
        b = _task("b", depends_on=["a"])
        with pytest.raises(CycleDetectedError) as exc:
            manager.topological_order([a, b, _task("c")])
        assert exc.value.cycle == ["a", "b"]
