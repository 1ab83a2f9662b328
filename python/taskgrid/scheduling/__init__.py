"""Task scheduling and assignment for TaskGrid.

Lifecycle state machine, hard/soft dependency graph with conflict detection,
priority queue with soft-dependency boosting, capability matching, load
balancing, and the reconciliation engine that ties them together.
"""

from taskgrid.scheduling.capability_matcher import (
    CapabilityMatcher,
    ScoreBreakdown,
    ScoringWeights,
)
from taskgrid.scheduling.dependency_manager import (
    ConflictPredicate,
    ConflictRecord,
    TaskDependencyManager,
    file_overlap,
)
from taskgrid.scheduling.load_balancer import LoadBalancer, ReassignmentLimiter
from taskgrid.scheduling.models import (
    PRIORITY_VALUES,
    ConflictResolution,
    ErrorCode,
    LoadBalancingStrategy,
    Task,
    TaskConfig,
    TaskPriority,
    TaskStatus,
    ValidationIssue,
    generate_task_id,
)
from taskgrid.scheduling.priority_queue import TaskPriorityQueue
from taskgrid.scheduling.scheduler_coordinator import SchedulerCoordinator
from taskgrid.scheduling.state_machine import TRANSITIONS, TaskStateMachine
from taskgrid.scheduling.task_store import TaskStore, TaskView

__all__ = [
    # Models
    "PRIORITY_VALUES",
    "ConflictResolution",
    "ErrorCode",
    "LoadBalancingStrategy",
    "Task",
    "TaskConfig",
    "TaskPriority",
    "TaskStatus",
    "ValidationIssue",
    "generate_task_id",
    # Store
    "TaskStore",
    "TaskView",
    # State machine
    "TRANSITIONS",
    "TaskStateMachine",
    # Dependencies
    "ConflictPredicate",
    "ConflictRecord",
    "TaskDependencyManager",
    "file_overlap",
    # Queue
    "TaskPriorityQueue",
    # Matching and balancing
    "CapabilityMatcher",
    "ScoreBreakdown",
    "ScoringWeights",
    "LoadBalancer",
    "ReassignmentLimiter",
    # Coordinator
    "SchedulerCoordinator",
]
