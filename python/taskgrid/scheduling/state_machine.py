"""Task lifecycle state machine.

Enforces the fixed transition table, per-state required fields and readiness
(every hard dependency exists and is completed).  A rejected transition
returns its issues and leaves the task untouched; an accepted one mutates the
task and publishes ``task.state_changed`` plus the state-specific event.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, List, Optional

from taskgrid.interfaces.event_bus import EventType, IEventBus
from taskgrid.scheduling.models import ErrorCode, Task, TaskStatus, ValidationIssue

logger = logging.getLogger(__name__)

TaskLookup = Callable[[str], Optional[Task]]


# ── Transition table ─────────────────────────────────────────────────

TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.QUEUED: frozenset({TaskStatus.VALIDATED, TaskStatus.FAILED}),
    TaskStatus.VALIDATED: frozenset({TaskStatus.READY, TaskStatus.BLOCKED, TaskStatus.FAILED}),
    TaskStatus.READY: frozenset({TaskStatus.ASSIGNED, TaskStatus.BLOCKED, TaskStatus.FAILED}),
    TaskStatus.ASSIGNED: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.FAILED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.BLOCKED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.READY, TaskStatus.FAILED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.READY}),
}

REQUIRED_FIELDS: Dict[TaskStatus, tuple] = {
    TaskStatus.ASSIGNED: ("assigned_to",),
    TaskStatus.IN_PROGRESS: ("assigned_to",),
}

# Leaving one of these for a non-assigned state drops the assignment.
ASSIGNED_FAMILY = frozenset(
    {TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS, TaskStatus.FAILED, TaskStatus.BLOCKED}
)
UNASSIGNED_STATES = frozenset({TaskStatus.READY, TaskStatus.VALIDATED})

STATE_EVENTS: Dict[TaskStatus, EventType] = {
    TaskStatus.READY: EventType.TASK_READY,
    TaskStatus.BLOCKED: EventType.TASK_BLOCKED,
    TaskStatus.ASSIGNED: EventType.TASK_ASSIGNED,
    TaskStatus.COMPLETED: EventType.TASK_COMPLETED,
    TaskStatus.FAILED: EventType.TASK_FAILED,
}


class TaskStateMachine:
    """Applies lifecycle transitions to ``Task`` records.

    *lookup* resolves dependency ids for readiness validation; it is usually
    ``TaskStore.get``.
    """

    def __init__(self, event_bus: IEventBus, lookup: TaskLookup) -> None:
        self._event_bus = event_bus
        self._lookup = lookup
        self._transition_counts: Dict[str, int] = {}

    # ── Queries ──────────────────────────────────────────────────────

    @staticmethod
    def is_valid_transition(current: TaskStatus, next_state: TaskStatus) -> bool:
        return next_state in TRANSITIONS.get(current, frozenset())

    @staticmethod
    def valid_next_states(current: TaskStatus) -> List[TaskStatus]:
        return sorted(TRANSITIONS.get(current, frozenset()), key=lambda s: s.value)

    @staticmethod
    def is_terminal(status: TaskStatus) -> bool:
        return not TRANSITIONS.get(status)

    def validate_transition(self, task: Task, next_state: TaskStatus) -> List[ValidationIssue]:
        """Return every reason *task* may not move to *next_state*."""
        if not isinstance(next_state, TaskStatus):
            try:
                next_state = TaskStatus(next_state)
            except ValueError:
                return [ValidationIssue(
                    code=ErrorCode.INVALID_STATE,
                    message=f"Unknown state {next_state!r}",
                    field="status",
                )]

        if not self.is_valid_transition(task.status, next_state):
            return [ValidationIssue(
                code=ErrorCode.INVALID_TRANSITION,
                message=f"Cannot transition from {task.status.value} to {next_state.value}",
                field="status",
                details={"from": task.status.value, "to": next_state.value},
            )]

        issues: List[ValidationIssue] = []
        for name in REQUIRED_FIELDS.get(next_state, ()):
            if not getattr(task, name, None):
                issues.append(ValidationIssue(
                    code=ErrorCode.MISSING_REQUIRED_FIELD,
                    message=f"{name} is required for state {next_state.value}",
                    field=name,
                ))

        if next_state == TaskStatus.READY:
            issues.extend(self.validate_readiness(task))
        return issues

    def validate_readiness(self, task: Task) -> List[ValidationIssue]:
        """Every hard dependency must exist and be completed."""
        issues: List[ValidationIssue] = []
        for dep_id in task.depends_on:
            dep = self._lookup(dep_id)
            if dep is None:
                issues.append(ValidationIssue(
                    code=ErrorCode.MISSING_DEPENDENCY,
                    message=f"Dependency {dep_id} does not exist",
                    field="depends_on",
                    details={"dependency_id": dep_id},
                ))
            elif dep.status != TaskStatus.COMPLETED:
                issues.append(ValidationIssue(
                    code=ErrorCode.DEPENDENCIES_NOT_SATISFIED,
                    message=f"Dependency {dep_id} is {dep.status.value}, not completed",
                    field="depends_on",
                    details={"dependency_id": dep_id, "status": dep.status.value},
                ))
        return issues

    # ── Transition ───────────────────────────────────────────────────

    async def transition(self, task: Task, next_state: TaskStatus) -> List[ValidationIssue]:
        """Move *task* to *next_state*.

        Returns the validation issues; when non-empty the task is unchanged.
        """
        issues = self.validate_transition(task, next_state)
        if issues:
            logger.debug(
                "Rejected transition %s: %s -> %s (%s)",
                task.id, task.status.value, getattr(next_state, "value", next_state),
                ", ".join(i.code.value for i in issues),
            )
            return issues

        previous = task.status
        now = datetime.now(timezone.utc)

        if previous in ASSIGNED_FAMILY and next_state in UNASSIGNED_STATES:
            task.assigned_to = None
        if next_state in (TaskStatus.COMPLETED, TaskStatus.FAILED):
            task.assigned_to = None
        if next_state == TaskStatus.ASSIGNED:
            task.assigned_at = now
        if next_state == TaskStatus.COMPLETED and task.completed_at is None:
            task.completed_at = now

        task.status = next_state
        key = f"{previous.value}->{next_state.value}"
        self._transition_counts[key] = self._transition_counts.get(key, 0) + 1
        logger.debug("Task %s: %s -> %s", task.id, previous.value, next_state.value)

        payload = {
            "task_id": task.id,
            "previous_state": previous.value,
            "new_state": next_state.value,
            "task": task.to_dict(),
        }
        await self._event_bus.publish(EventType.TASK_STATE_CHANGED, payload)
        state_event = STATE_EVENTS.get(next_state)
        if state_event is not None:
            await self._event_bus.publish(state_event, payload)
        return []

    @property
    def stats(self) -> Dict[str, int]:
        """Applied transition counts keyed ``"from->to"``."""
        return dict(self._transition_counts)
