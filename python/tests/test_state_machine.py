"""Tests for the task lifecycle state machine (taskgrid/scheduling/state_machine.py)."""

import pytest

from taskgrid.event_bus import InMemoryEventBus
from taskgrid.interfaces.event_bus import EventType
from taskgrid.scheduling.models import ErrorCode, Task, TaskStatus
from taskgrid.scheduling.state_machine import TRANSITIONS, TaskStateMachine
from taskgrid.scheduling.task_store import TaskStore


def _task(task_id="t1", status=TaskStatus.QUEUED, **kwargs) -> Task:
    return Task(id=task_id, title=f"Task {task_id}", description="do it", status=status, **kwargs)


@pytest.fixture
def store():
    return TaskStore()


@pytest.fixture
def bus():
    return InMemoryEventBus()


@pytest.fixture
def machine(bus, store):
    return TaskStateMachine(bus, store.get)


class TestTransitionTable:
    def test_completed_is_terminal(self):
        assert TRANSITIONS[TaskStatus.COMPLETED] == frozenset()
        assert TaskStateMachine.is_terminal(TaskStatus.COMPLETED)
        assert not TaskStateMachine.is_terminal(TaskStatus.FAILED)

    def test_failed_can_only_retry_to_ready(self):
        assert TaskStateMachine.valid_next_states(TaskStatus.FAILED) == [TaskStatus.READY]

    def test_queued_cannot_jump_to_ready(self):
        assert not TaskStateMachine.is_valid_transition(TaskStatus.QUEUED, TaskStatus.READY)
        assert TaskStateMachine.is_valid_transition(TaskStatus.QUEUED, TaskStatus.VALIDATED)

    def test_in_progress_may_block_for_reassignment(self):
        assert TaskStateMachine.is_valid_transition(TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED)


class TestValidateTransition:
    def test_invalid_transition_reports_code(self, machine):
        issues = machine.validate_transition(_task(), TaskStatus.COMPLETED)
        assert len(issues) == 1
        assert issues[0].code == ErrorCode.INVALID_TRANSITION
        assert issues[0].details == {"from": "queued", "to": "completed"}

    def test_unknown_state_string(self, machine):
        issues = machine.validate_transition(_task(), "sleeping")
        assert issues[0].code == ErrorCode.INVALID_STATE

    def test_assigned_requires_agent(self, machine):
        issues = machine.validate_transition(_task(status=TaskStatus.READY), TaskStatus.ASSIGNED)
        assert [i.code for i in issues] == [ErrorCode.MISSING_REQUIRED_FIELD]
        assert issues[0].field == "assigned_to"

    def test_ready_requires_completed_dependencies(self, machine, store):
        store.add(_task("dep", status=TaskStatus.IN_PROGRESS, assigned_to="a1"))
        task = _task("t1", status=TaskStatus.VALIDATED, depends_on=["dep", "ghost"])

        issues = machine.validate_transition(task, TaskStatus.READY)
        codes = {i.details["dependency_id"]: i.code for i in issues}
        assert codes == {
            "dep": ErrorCode.DEPENDENCIES_NOT_SATISFIED,
            "ghost": ErrorCode.MISSING_DEPENDENCY,
        }

    def test_ready_when_dependencies_completed(self, machine, store):
        store.add(_task("dep", status=TaskStatus.COMPLETED))
        task = _task("t1", status=TaskStatus.VALIDATED, depends_on=["dep"])
        assert machine.validate_transition(task, TaskStatus.READY) == []


class TestTransition:
    async def test_rejected_transition_leaves_task_untouched(self, machine, bus):
        received = []

        async def handler(data):
            received.append(data)

        await bus.subscribe(EventType.TASK_STATE_CHANGED, handler)
        task = _task()
        issues = await machine.transition(task, TaskStatus.IN_PROGRESS)

        assert issues
        assert task.status == TaskStatus.QUEUED
        assert received == []

    async def test_publishes_state_changed_and_state_event(self, machine, bus):
        changed, ready = [], []

        async def on_changed(data):
            changed.append(data)

        async def on_ready(data):
            ready.append(data)

        await bus.subscribe(EventType.TASK_STATE_CHANGED, on_changed)
        await bus.subscribe(EventType.TASK_READY, on_ready)

        task = _task(status=TaskStatus.VALIDATED)
        assert await machine.transition(task, TaskStatus.READY) == []

        assert task.status == TaskStatus.READY
        assert changed[0]["previous_state"] == "validated"
        assert changed[0]["new_state"] == "ready"
        assert ready[0]["task_id"] == "t1"

    async def test_assignment_timestamps_and_clearing(self, machine):
        task = _task(status=TaskStatus.READY, assigned_to="a1")
        await machine.transition(task, TaskStatus.ASSIGNED)
        assert task.assigned_at is not None

        await machine.transition(task, TaskStatus.IN_PROGRESS)
        await machine.transition(task, TaskStatus.COMPLETED)
        assert task.completed_at is not None
        assert task.assigned_to is None

    async def test_failed_clears_assignment(self, machine):
        task = _task(status=TaskStatus.IN_PROGRESS, assigned_to="a1")
        await machine.transition(task, TaskStatus.FAILED)
        assert task.assigned_to is None

    async def test_stats_count_applied_transitions(self, machine):
        task = _task()
        await machine.transition(task, TaskStatus.VALIDATED)
        await machine.transition(task, TaskStatus.READY)
        await machine.transition(task, TaskStatus.COMPLETED)  # rejected
        assert machine.stats == {"queued->validated": 1, "validated->ready": 1}
