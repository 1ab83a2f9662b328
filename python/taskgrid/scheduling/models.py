"""Task domain model for the TaskGrid scheduler.

Plain dataclasses and str-enums shared by the state machine, dependency
manager, priority queue and coordinator.
"""

from __future__ import annotations

import uuid
import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Set


# ── Enums ────────────────────────────────────────────────────────────


class TaskStatus(str, Enum):
    """Lifecycle states of a task."""

    QUEUED = "queued"  # created, not yet validated
    VALIDATED = "validated"  # structurally valid, readiness pending
    READY = "ready"  # all hard deps completed, assignable
    BLOCKED = "blocked"  # waiting on deps or a resource conflict
    ASSIGNED = "assigned"  # bound to an agent, dispatch pending
    IN_PROGRESS = "in-progress"  # accepted by the agent
    COMPLETED = "completed"  # terminal
    FAILED = "failed"  # may be retried back to ready


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def numeric(self) -> int:
        return PRIORITY_VALUES[self]


PRIORITY_VALUES: Dict[TaskPriority, int] = {
    TaskPriority.LOW: 10,
    TaskPriority.MEDIUM: 50,
    TaskPriority.HIGH: 100,
}


class ErrorCode(str, Enum):
    """Codes carried by ``ValidationIssue``."""

    MISSING_TITLE = "MISSING_TITLE"
    MISSING_DESCRIPTION = "MISSING_DESCRIPTION"
    DUPLICATE_TASK_ID = "DUPLICATE_TASK_ID"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    INVALID_STATE = "INVALID_STATE"
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"
    DEPENDENCIES_NOT_SATISFIED = "DEPENDENCIES_NOT_SATISFIED"
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    MISSING_SOFT_DEPENDENCY = "MISSING_SOFT_DEPENDENCY"


class ConflictResolution(str, Enum):
    """Operator decisions for a detected resource conflict."""

    BLOCK = "block"
    ALLOW = "allow"
    MERGE = "merge"


class LoadBalancingStrategy(str, Enum):
    BALANCED = "balanced"
    PERFORMANCE_OPTIMIZED = "performance-optimized"
    CAPACITY_OPTIMIZED = "capacity-optimized"


# ── Value objects ────────────────────────────────────────────────────


@dataclass(frozen=True)
class ValidationIssue:
    """A single validation or transition error."""

    code: ErrorCode
    message: str
    field: Optional[str] = None
    details: Dict[str, Any] = dataclasses.field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "field": self.field,
            "details": dict(self.details),
        }


@dataclass
class TaskConfig:
    """Caller-supplied description of a task to create."""

    title: str
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    task_id: Optional[str] = None
    files: List[str] = field(default_factory=list)
    depends_on: List[str] = field(default_factory=list)
    prefers: List[str] = field(default_factory=list)
    tags: Set[str] = field(default_factory=set)
    required_capabilities: Set[str] = field(default_factory=set)
    estimated_duration: Optional[float] = None

    def __post_init__(self) -> None:
        if not isinstance(self.priority, TaskPriority):
            self.priority = TaskPriority(self.priority)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:12]}"


@dataclass
class Task:
    """The unit of schedulable work.

    Mutated only by the state machine and the scheduler coordinator.
    """

    id: str
    title: str
    description: str
    priority: TaskPriority = TaskPriority.MEDIUM
    numeric_priority: int = PRIORITY_VALUES[TaskPriority.MEDIUM]
    status: TaskStatus = TaskStatus.QUEUED
    files: List[str] = field(default_factory=list)
    tags: Set[str] = field(default_factory=set)
    required_capabilities: Set[str] = field(default_factory=set)
    depends_on: List[str] = field(default_factory=list)
    prefers: List[str] = field(default_factory=list)
    blocked_by: List[str] = field(default_factory=list)
    conflicts_with: List[str] = field(default_factory=list)
    assigned_to: Optional[str] = None
    agent_match_score: Optional[float] = None
    estimated_duration: Optional[float] = None
    failure_reason: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    assigned_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, config: TaskConfig, task_id: str) -> "Task":
        return cls(
            id=task_id,
            title=config.title,
            description=config.description,
            priority=config.priority,
            numeric_priority=config.priority.numeric,
            files=list(config.files),
            tags=set(config.tags),
            required_capabilities=set(config.required_capabilities),
            depends_on=list(dict.fromkeys(config.depends_on)),
            prefers=list(dict.fromkeys(config.prefers)),
            estimated_duration=config.estimated_duration,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "numeric_priority": self.numeric_priority,
            "status": self.status.value,
            "files": list(self.files),
            "tags": sorted(self.tags),
            "required_capabilities": sorted(self.required_capabilities),
            "depends_on": list(self.depends_on),
            "prefers": list(self.prefers),
            "blocked_by": list(self.blocked_by),
            "conflicts_with": list(self.conflicts_with),
            "assigned_to": self.assigned_to,
            "agent_match_score": self.agent_match_score,
            "estimated_duration": self.estimated_duration,
            "failure_reason": self.failure_reason,
            "created_at": self.created_at.isoformat(),
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
