"""Tests for the ready-first priority queue (taskgrid/scheduling/priority_queue.py)."""

import pytest

from taskgrid.scheduling.models import Task, TaskPriority, TaskStatus
from taskgrid.scheduling.priority_queue import TaskPriorityQueue


def _task(task_id, priority=TaskPriority.MEDIUM, status=TaskStatus.READY, **kwargs) -> Task:
    return Task(
        id=task_id,
        title=task_id,
        description="work",
        priority=priority,
        numeric_priority=priority.numeric,
        status=status,
        **kwargs,
    )


@pytest.fixture
def queue():
    return TaskPriorityQueue(soft_dependency_boost=5)


class TestOrdering:
    def test_higher_priority_first(self, queue):
        queue.enqueue(_task("low", TaskPriority.LOW))
        queue.enqueue(_task("high", TaskPriority.HIGH))
        queue.enqueue(_task("mid", TaskPriority.MEDIUM))
        assert [queue.dequeue().id for _ in range(3)] == ["high", "mid", "low"]
        assert queue.dequeue() is None

    def test_fifo_among_equal_priority(self, queue):
        for tid in ("first", "second", "third"):
            queue.enqueue(_task(tid))
        assert [t.id for t in queue.to_list()] == ["first", "second", "third"]

    def test_ready_before_validated(self, queue):
        queue.enqueue(_task("waiting", TaskPriority.HIGH, status=TaskStatus.VALIDATED))
        queue.enqueue(_task("ready", TaskPriority.LOW))
        assert queue.dequeue().id == "ready"
        assert queue.dequeue().id == "waiting"

    def test_fifo_position_survives_requeue(self, queue):
        a, b = _task("a"), _task("b")
        queue.enqueue(a)
        queue.enqueue(b)
        assert queue.dequeue().id == "a"
        queue.enqueue(a)
        assert queue.peek().id == "a"

    def test_non_queueable_status_rejected(self, queue):
        assert queue.enqueue(_task("busy", status=TaskStatus.IN_PROGRESS)) is False
        assert queue.is_empty()


class TestDequeueReady:
    def test_skips_validated_entries(self, queue):
        queue.enqueue(_task("v", status=TaskStatus.VALIDATED))
        assert queue.dequeue_ready() is None
        assert queue.contains("v")

    def test_drops_stale_ready_entry(self, queue):
        task = _task("t")
        queue.enqueue(task)
        task.status = TaskStatus.BLOCKED
        assert queue.dequeue_ready() is None
        assert not queue.contains("t")

    def test_moves_demoted_entry_to_validated(self, queue):
        task = _task("t")
        queue.enqueue(task)
        task.status = TaskStatus.VALIDATED
        assert queue.dequeue_ready() is None
        assert queue.contains("t")
        assert queue.stats["validated"] == 1


class TestMutation:
    def test_remove_invalidates_entry(self, queue):
        queue.enqueue(_task("a"))
        queue.enqueue(_task("b"))
        assert queue.remove("a") is True
        assert queue.remove("a") is False
        assert queue.dequeue().id == "b"

    def test_update_priority_reorders(self, queue):
        queue.enqueue(_task("a"))
        queue.enqueue(_task("b"))
        assert queue.update_priority("b", 200) is True
        assert queue.peek().id == "b"
        assert queue.priority_of("b") == 200

    def test_enqueue_without_priority_keeps_existing(self, queue):
        task = _task("a")
        queue.enqueue(task, 77)
        queue.enqueue(task)
        assert queue.priority_of("a") == 77
        assert len(queue) == 1

    def test_move_to_ready_keeps_priority(self, queue):
        task = _task("a", status=TaskStatus.VALIDATED)
        queue.enqueue(task, 60)
        task.status = TaskStatus.READY
        assert queue.move_to_ready("a") is True
        assert queue.dequeue_ready().id == "a"

    def test_reorder_discards_stale_items(self, queue):
        queue.enqueue(_task("a"))
        queue.update_priority("a", 10)
        queue.update_priority("a", 90)
        queue.reorder()
        assert queue.dequeue().id == "a"
        assert queue.dequeue() is None

    def test_clear(self, queue):
        queue.enqueue_many([_task("a"), _task("b")])
        queue.clear()
        assert queue.size() == 0
        assert "a" not in queue


class TestSoftBoost:
    def test_full_boost_when_all_preferred_done(self, queue):
        tasks = {
            "p1": _task("p1", status=TaskStatus.COMPLETED),
            "p2": _task("p2", status=TaskStatus.COMPLETED),
        }
        task = _task("t", prefers=["p1", "p2"])
        assert queue.compute_effective_priority(task, tasks) == 55

    def test_partial_boost_is_proportional(self, queue):
        tasks = {
            "p1": _task("p1", status=TaskStatus.COMPLETED),
            "p2": _task("p2", status=TaskStatus.IN_PROGRESS),
            "p3": _task("p3", status=TaskStatus.READY),
        }
        task = _task("t", prefers=["p1", "p2", "p3"])
        # 5 * 1/3 rounds down to 1
        assert queue.compute_effective_priority(task, tasks) == 51

    def test_no_boost_when_none_done_or_missing(self, queue):
        task = _task("t", prefers=["ghost"])
        assert queue.compute_effective_priority(task, {}) == 50


class TestStats:
    def test_depth_history_is_bounded(self, queue):
        for i in range(12):
            queue.enqueue(_task(f"t{i}"))
        stats = queue.stats
        assert stats["total"] == 12
        assert stats["enqueued_total"] == 12
        assert stats["depth_history"] == list(range(3, 13))
        assert stats["average_depth"] == 7.5

    def test_dequeue_counted(self, queue):
        queue.enqueue(_task("a"))
        queue.dequeue()
        assert queue.stats["dequeued_total"] == 1
        assert queue.stats["ready"] == 0
