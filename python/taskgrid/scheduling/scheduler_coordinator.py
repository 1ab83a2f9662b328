"""Reconciliation engine for TaskGrid.

The Scheduler Coordinator owns the task store and the priority queue and
wires together the state machine, dependency manager, capability matcher and
load balancer:

1. **Creation**: validate, register edges, route to ready / validated /
   blocked, enqueue, publish ``task.created``.
2. **Reconciliation**: bounded loop of ``assign_next_task`` that stops on the
   first failure.  Operator notices about unassigned work are only sent while
   the queue is non-empty.
3. **Completion / failure**: release the agent, ready dependents through the
   reverse index, unblock conflict waiters, boost soft dependents.
4. **Rebalancing**: rate-limited moves away from overloaded agents.

All mutation happens inside coordinator operations, and operations run one
at a time under a lock held by the outermost call; nested calls from the same
asyncio task (event handlers, dispatch sinks) reuse it.  Reconciliation
requests that arrive mid-operation (e.g. an agent turning idle while a
completion is processed) are deferred until the outermost operation finishes.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Union

from taskgrid.enhanced_logging import track_performance
from taskgrid.error_handler import LoggingErrorHandler
from taskgrid.exceptions_unified import CycleDetectedError, DispatchError, TaskValidationError
from taskgrid.interfaces.agent_pool import AVAILABLE_STATUSES, Agent, AgentStatus, IAgentPool
from taskgrid.interfaces.config import ISchedulerConfig
from taskgrid.interfaces.error_handler import IErrorHandler
from taskgrid.interfaces.event_bus import EventType, IEventBus, Subscription
from taskgrid.interfaces.notifier import INotifier, NullNotifier
from taskgrid.scheduling.capability_matcher import CapabilityMatcher
from taskgrid.scheduling.dependency_manager import TaskDependencyManager
from taskgrid.scheduling.load_balancer import LoadBalancer, ReassignmentLimiter
from taskgrid.scheduling.models import (
    ConflictResolution,
    ErrorCode,
    Task,
    TaskConfig,
    TaskStatus,
    ValidationIssue,
    generate_task_id,
)
from taskgrid.scheduling.priority_queue import TaskPriorityQueue
from taskgrid.scheduling.state_machine import TaskStateMachine
from taskgrid.scheduling.task_store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_ASSIGNMENT_ATTEMPTS = 10

WAITING_STATES = (TaskStatus.VALIDATED, TaskStatus.BLOCKED)
SETTLEABLE_STATES = (TaskStatus.READY, TaskStatus.VALIDATED, TaskStatus.BLOCKED)
ACTIVE_STATES = (TaskStatus.ASSIGNED, TaskStatus.IN_PROGRESS)


class SchedulerCoordinator:
    """Single-writer task scheduler.

    Collaborators are injected; ``notifier`` and ``error_handler`` default to
    no-op / logging implementations.  Scheduling components may be passed in
    for tuning (e.g. a queue with a different soft-dependency boost).
    """

    def __init__(
        self,
        agent_pool: IAgentPool,
        event_bus: IEventBus,
        config: ISchedulerConfig,
        notifier: Optional[INotifier] = None,
        error_handler: Optional[IErrorHandler] = None,
        *,
        dependency_manager: Optional[TaskDependencyManager] = None,
        priority_queue: Optional[TaskPriorityQueue] = None,
        matcher: Optional[CapabilityMatcher] = None,
        load_balancer: Optional[LoadBalancer] = None,
        id_factory: Callable[[], str] = generate_task_id,
        max_assignment_attempts: int = DEFAULT_MAX_ASSIGNMENT_ATTEMPTS,
    ) -> None:
        self._agent_pool = agent_pool
        self._event_bus = event_bus
        self._config = config
        self._notifier: INotifier = notifier or NullNotifier()
        self._error_handler: IErrorHandler = error_handler or LoggingErrorHandler()

        self._store = TaskStore()
        self._deps = dependency_manager if dependency_manager is not None else TaskDependencyManager()
        # An empty queue is falsy, so test against None
        self._queue = priority_queue if priority_queue is not None else TaskPriorityQueue()
        self._matcher = matcher if matcher is not None else CapabilityMatcher()
        self._balancer = load_balancer if load_balancer is not None else LoadBalancer(
            self._matcher,
            strategy=config.get_load_balancing_strategy(),
            utilization_threshold=config.get_utilization_threshold(),
        )
        self._state_machine = TaskStateMachine(event_bus, self._store.get)
        self._limiter = ReassignmentLimiter(config.get_max_reassignments_per_cycle())

        self._id_factory = id_factory
        self._max_attempts = max_assignment_attempts
        self._subscriptions: List[Subscription] = []
        self._lock = asyncio.Lock()
        self._owner: Optional[asyncio.Task] = None
        self._depth = 0
        self._reconcile_pending = False
        self._rebalancing = False
        self._counters: Dict[str, int] = {
            "tasks_created": 0,
            "assignments": 0,
            "dispatch_failures": 0,
            "reassignments": 0,
            "reconcile_passes": 0,
            "notifications": 0,
        }

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Subscribe to agent availability events."""
        if self._subscriptions:
            return
        self._subscriptions = [
            await self._event_bus.subscribe(EventType.AGENT_CREATED, self._on_agent_created),
            await self._event_bus.subscribe(EventType.AGENT_STATUS_CHANGED, self._on_agent_status_changed),
        ]
        logger.info("Scheduler started")

    async def stop(self) -> None:
        for sub in self._subscriptions:
            await sub.unsubscribe()
        self._subscriptions = []
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return bool(self._subscriptions)

    async def _on_agent_created(self, data: Dict[str, Any]) -> None:
        await self._request_reconcile()

    async def _on_agent_status_changed(self, data: Dict[str, Any]) -> None:
        try:
            status = AgentStatus(data.get("status"))
        except ValueError:
            return
        if status in AVAILABLE_STATUSES:
            await self._request_reconcile()

    # ── Mutation scope ───────────────────────────────────────────────

    @asynccontextmanager
    async def _mutation(self) -> AsyncIterator[None]:
        if self._owner is not None and self._owner is asyncio.current_task():
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            return

        async with self._lock:
            self._owner = asyncio.current_task()
            self._depth = 1
            try:
                yield
                while self._reconcile_pending:
                    await self.try_assign_tasks()
            finally:
                self._depth = 0
                self._owner = None

    async def _request_reconcile(self) -> None:
        # The lock holder picks the request up before it releases
        if self._depth > 0:
            self._reconcile_pending = True
            return
        await self.try_assign_tasks()

    # ── Creation ─────────────────────────────────────────────────────

    def validate_task(self, config: TaskConfig) -> List[ValidationIssue]:
        """Structural checks on a task configuration."""
        issues: List[ValidationIssue] = []
        if not config.title or not config.title.strip():
            issues.append(ValidationIssue(
                code=ErrorCode.MISSING_TITLE, message="Task title is required", field="title",
            ))
        if not config.description or not config.description.strip():
            issues.append(ValidationIssue(
                code=ErrorCode.MISSING_DESCRIPTION,
                message="Task description is required",
                field="description",
            ))
        if config.task_id is not None and config.task_id in self._store:
            issues.append(ValidationIssue(
                code=ErrorCode.DUPLICATE_TASK_ID,
                message=f"Task {config.task_id} already exists",
                field="task_id",
            ))
        return issues

    async def add_task(self, config: TaskConfig) -> Task:
        """Create, route and enqueue a task, then reconcile.

        Raises:
            TaskValidationError: when the configuration is structurally
                invalid; nothing is stored.
        """
        issues = self.validate_task(config)
        if issues:
            raise TaskValidationError(
                "Task validation failed: " + ", ".join(i.message for i in issues),
                issues=issues,
            )

        async with self._mutation():
            task = Task.from_config(config, config.task_id or self._id_factory())
            self._store.add(task)
            self._deps.register_task(task)
            self._counters["tasks_created"] += 1
            logger.debug("Creating task %s (%s)", task.id, task.title)

            await self._state_machine.transition(task, TaskStatus.VALIDATED)

            dep_issues = self._deps.validate_dependencies(task, self._store.as_mapping())
            for issue in dep_issues:
                if issue.code == ErrorCode.MISSING_SOFT_DEPENDENCY:
                    logger.warning("Task %s: %s", task.id, issue.message)

            if self._deps.has_blocking_issues(dep_issues):
                await self._block(task, self._deps.blocking_ids(dep_issues))
                logger.info("Task %s blocked by dependency errors", task.id)
            else:
                conflicts = await self._detect_conflicts(task)
                if conflicts:
                    await self._block(task, conflicts, conflicts=conflicts)
                else:
                    readiness = await self._state_machine.transition(task, TaskStatus.READY)
                    if readiness:
                        task.blocked_by = _dependency_ids(readiness)
                        await self._event_bus.publish(EventType.TASK_WAITING, {
                            "task_id": task.id,
                            "task": task.to_dict(),
                            "reasons": [i.to_dict() for i in readiness],
                        })

            if task.status in (TaskStatus.READY, TaskStatus.VALIDATED):
                self._queue.enqueue(task, self._effective_priority(task))

            await self._event_bus.publish(EventType.TASK_CREATED, {
                "task_id": task.id,
                "task": task.to_dict(),
            })
            await self._release_waiters(task.id)
            await self._request_reconcile()
        return task

    # ── Assignment ───────────────────────────────────────────────────

    async def assign_next_task(self) -> bool:
        """Assign the best ready task to the best agent.

        Returns False, without error, when the queue is empty, no agent is
        available or no ready task can be placed.
        """
        async with self._mutation():
            if self._queue.is_empty():
                logger.debug("No tasks in priority queue")
                return False
            agents = self._agent_pool.get_available_agents()
            if not agents:
                logger.debug("No available agents")
                return False

            task = self._queue.dequeue_ready()
            if task is None:
                logger.debug("No ready tasks available for assignment")
                return False

            conflicts = await self._detect_conflicts(task)
            if conflicts:
                await self._block(task, conflicts, conflicts=conflicts)
                return False

            ranked = self._matcher.rank_agents(agents, task)
            if ranked:
                best, score = ranked[0]
                task.agent_match_score = score
                await self._event_bus.publish(EventType.TASK_MATCH_SCORE, {
                    "task_id": task.id,
                    "score": score,
                    "agent_id": best.id,
                })

            agent = self._select_agent(agents, task)
            if agent is None:
                task.agent_match_score = None
                self._queue.enqueue(task, self._effective_priority(task))
                logger.debug("No suitable agent for task %s", task.id)
                return False

            return await self._dispatch(task, agent, context="assign_next_task")

    @track_performance(operation="reconcile")
    async def try_assign_tasks(self) -> int:
        """Run one reconciliation pass; returns the number of assignments."""
        async with self._mutation():
            self._reconcile_pending = False
            self._counters["reconcile_passes"] += 1

            if not self._config.is_auto_assign_tasks():
                logger.debug("Auto-assign disabled")
                if self._queue.size() > 0:
                    await self._notify_information("Task queued. Auto-assign is disabled; assign it manually.")
                return 0

            assigned = 0
            attempts = 0
            while attempts < self._max_attempts:
                queue_size = self._queue.size()
                available = self._agent_pool.get_available_agents()
                logger.debug(
                    "Assignment attempt %d: queue=%d available=%d",
                    attempts + 1, queue_size, len(available),
                )
                if queue_size == 0 or not available:
                    break
                if not await self.assign_next_task():
                    break
                assigned += 1
                attempts += 1

            queue_size = self._queue.size()
            if assigned == 0 and queue_size > 0:
                if not self._agent_pool.get_available_agents():
                    await self._notify_information("Task queued. All agents are busy.")
                else:
                    await self._notify_warning("Task added but not assigned. Check agent status.")
            return assigned

    async def assign_task(self, task_id: str, agent_id: str) -> bool:
        """Manually assign a ready task to a specific agent."""
        async with self._mutation():
            task = self._store.get(task_id)
            if task is None:
                logger.warning("Task %s not found", task_id)
                return False
            if task.status != TaskStatus.READY:
                logger.warning(
                    "Cannot assign task %s with status %s; only ready tasks can be assigned",
                    task_id, task.status.value,
                )
                return False
            agent = self._agent_pool.get_agent(agent_id)
            if agent is None:
                logger.warning("Agent %s not found", agent_id)
                return False
            if not agent.is_available:
                logger.warning("Agent %s cannot take work (%s)", agent_id, agent.status.value)
                return False

            conflicts = await self._detect_conflicts(task)
            if conflicts:
                await self._block(task, conflicts, conflicts=conflicts)
                return False

            self._queue.remove(task_id)
            task.agent_match_score = self._matcher.score_agent(agent, task)
            return await self._dispatch(task, agent, context="assign_task")

    # ── Completion / failure ─────────────────────────────────────────

    async def complete_task(self, task_id: str) -> bool:
        async with self._mutation():
            task = self._store.get(task_id)
            if task is None:
                logger.warning("Task %s not found", task_id)
                return False
            agent_id = task.assigned_to
            issues = await self._state_machine.transition(task, TaskStatus.COMPLETED)
            if issues:
                logger.error("Cannot complete task %s: %s", task_id, "; ".join(i.message for i in issues))
                return False

            self._queue.remove(task_id)
            if agent_id:
                await self._adjust_load(agent_id, -1)
            await self._after_finish(task)

            logger.info("Task completed: %s", task.title)
            await self._notify_information(f"Task completed: {task.title}")
            await self._request_reconcile()
            return True

    async def fail_task(self, task_id: str, reason: Optional[str] = None) -> bool:
        async with self._mutation():
            task = self._store.get(task_id)
            if task is None:
                logger.warning("Task %s not found", task_id)
                return False
            agent_id = task.assigned_to
            previous_reason = task.failure_reason
            task.failure_reason = reason
            issues = await self._state_machine.transition(task, TaskStatus.FAILED)
            if issues:
                task.failure_reason = previous_reason
                logger.error("Cannot fail task %s: %s", task_id, "; ".join(i.message for i in issues))
                return False

            self._queue.remove(task_id)
            if agent_id:
                await self._adjust_load(agent_id, -1)
            await self._after_finish(task)

            suffix = f" - {reason}" if reason else ""
            logger.error("Task failed: %s%s", task.title, suffix)
            await self._notify_error(f"Task failed: {task.title}{suffix}")
            await self._request_reconcile()
            return True

    async def retry_task(self, task_id: str) -> bool:
        """Send a failed task back to ready (or blocked on a fresh conflict)."""
        async with self._mutation():
            task = self._store.get(task_id)
            if task is None or task.status != TaskStatus.FAILED:
                return False
            issues = await self._state_machine.transition(task, TaskStatus.READY)
            if issues:
                task.blocked_by = _dependency_ids(issues)
                logger.warning("Retry of task %s rejected: %s", task_id, "; ".join(i.message for i in issues))
                return False
            task.failure_reason = None
            conflicts = await self._detect_conflicts(task)
            if conflicts:
                await self._block(task, conflicts, conflicts=conflicts)
            else:
                task.blocked_by = []
                self._queue.enqueue(task, self._effective_priority(task))
            await self._request_reconcile()
            return True

    # ── Conflicts and dependencies ───────────────────────────────────

    async def resolve_conflict(self, task_id: str, resolution: Union[ConflictResolution, str]) -> bool:
        """Apply an operator decision to a recorded conflict."""
        resolution = ConflictResolution(resolution)
        async with self._mutation():
            task = self._store.get(task_id)
            if task is None:
                return False
            if not self._deps.resolve_conflict(task_id, resolution):
                return False

            await self._event_bus.publish(EventType.TASK_CONFLICT_DECISION, {
                "task_id": task_id,
                "resolution": resolution.value,
            })
            if resolution == ConflictResolution.BLOCK:
                return True

            previous = list(task.conflicts_with)
            task.conflicts_with = []
            task.blocked_by = [b for b in task.blocked_by if b not in previous]
            await self._event_bus.publish(EventType.TASK_CONFLICT_RESOLVED, {
                "task_id": task_id,
                "resolution": resolution.value,
                "conflicts_with": previous,
            })
            if task.status in SETTLEABLE_STATES:
                await self._settle(task)
            await self._request_reconcile()
            return True

    async def add_task_dependency(self, task_id: str, depends_on: str) -> bool:
        """Add a hard dependency; cycles and self-dependencies are rejected."""
        async with self._mutation():
            task = self._store.get(task_id)
            if task is None:
                logger.warning("Task %s not found", task_id)
                return False
            if depends_on in task.depends_on:
                return False
            try:
                self._deps.add_dependency(task_id, depends_on)
            except CycleDetectedError as exc:
                logger.warning("Rejected dependency %s -> %s: %s", task_id, depends_on, exc.message)
                return False

            task.depends_on.append(depends_on)
            await self._event_bus.publish(EventType.TASK_DEPENDENCY_ADDED, {
                "task_id": task_id,
                "depends_on": depends_on,
            })
            if task.status in SETTLEABLE_STATES:
                await self._settle(task)
            await self._request_reconcile()
            return True

    async def remove_task_dependency(self, task_id: str, depends_on: str) -> bool:
        async with self._mutation():
            task = self._store.get(task_id)
            if task is None:
                logger.warning("Task %s not found", task_id)
                return False
            if depends_on not in task.depends_on:
                return False

            task.depends_on.remove(depends_on)
            self._deps.remove_dependency(task_id, depends_on)
            task.blocked_by = [b for b in task.blocked_by if b != depends_on]
            await self._event_bus.publish(EventType.TASK_DEPENDENCY_REMOVED, {
                "task_id": task_id,
                "depends_on": depends_on,
            })
            if task.status in SETTLEABLE_STATES:
                await self._settle(task)
            await self._request_reconcile()
            return True

    # ── Rebalancing ──────────────────────────────────────────────────

    async def reassign_for_load_balancing(self) -> int:
        """Move in-progress work off overloaded agents; returns moves made.

        Starts a new limiter cycle, so at most
        ``get_max_reassignments_per_cycle()`` tasks move per call.
        """
        async with self._mutation():
            if not self._config.is_load_balancing_enabled():
                return 0
            self._limiter.max_per_cycle = self._config.get_max_reassignments_per_cycle()
            self._limiter.reset()
            threshold = self._config.get_utilization_threshold()
            self._balancer.utilization_threshold = threshold

            moved = 0
            self._rebalancing = True
            try:
                for agent in self._balancer.find_overloaded_agents(self._agent_pool.list_agents()):
                    tasks = [t for t in self.get_tasks_for_agent(agent.id) if t.status in ACTIVE_STATES]
                    tasks.sort(key=lambda t: t.numeric_priority)
                    for task in tasks:
                        if self._limiter.remaining == 0:
                            break
                        candidates = [
                            a for a in self._agent_pool.get_available_agents()
                            if a.id != agent.id and a.utilization < threshold
                        ]
                        if await self.reassign_task_with_candidates(task.id, candidates):
                            moved += 1
                        current = self._agent_pool.get_agent(agent.id)
                        if current is None or current.utilization < threshold:
                            break
                    if self._limiter.remaining == 0:
                        break
            finally:
                self._rebalancing = False

            if moved:
                logger.info("Rebalanced %d task(s)", moved)
                await self._request_reconcile()
            return moved

    async def reassign_task_with_candidates(self, task_id: str, candidates: Iterable[Agent]) -> bool:
        """Move an assigned/in-progress task to the best of *candidates*.

        Inside ``reassign_for_load_balancing`` this counts against that
        pass's limiter cycle.  A direct call starts a fresh cycle of its own.
        """
        async with self._mutation():
            if not self._rebalancing:
                self._limiter.max_per_cycle = self._config.get_max_reassignments_per_cycle()
                self._limiter.reset()
            task = self._store.get(task_id)
            if task is None or task.status not in ACTIVE_STATES:
                return False
            source = task.assigned_to
            eligible = [a for a in candidates if a.id != source]
            target = self._balancer.select_agent(eligible, task, self._config.get_load_balancing_strategy())
            if target is None:
                logger.debug("No reassignment candidate for task %s", task_id)
                return False
            if not self._limiter.try_acquire():
                logger.info("Reassignment limit reached; task %s stays on %s", task_id, source)
                return False

            await self._state_machine.transition(task, TaskStatus.BLOCKED)
            if source:
                await self._adjust_load(source, -1)
            issues = await self._state_machine.transition(task, TaskStatus.READY)
            if issues:
                task.blocked_by = _dependency_ids(issues)
                logger.warning("Task %s could not return to ready during reassignment", task_id)
                return False

            if not await self._dispatch(task, target, context="reassign_task"):
                return False
            self._counters["reassignments"] += 1
            await self._event_bus.publish(EventType.TASK_REASSIGNED, {
                "task_id": task_id,
                "from_agent": source,
                "to_agent": target.id,
            })
            logger.info("Task %s reassigned from %s to %s", task_id, source, target.id)
            return True

    # ── Bulk clears ──────────────────────────────────────────────────

    async def clear_completed(self) -> int:
        async with self._mutation():
            removed = self._store.remove_where(lambda t: t.status == TaskStatus.COMPLETED)
            for task in removed:
                self._deps.forget_task(task.id)
                self._queue.remove(task.id)
            return len(removed)

    async def clear_all_tasks(self) -> int:
        async with self._mutation():
            for task in self.get_active_or_assigned_tasks():
                if task.assigned_to:
                    await self._adjust_load(task.assigned_to, -1)
            count = self._store.clear()
            self._deps.clear()
            self._queue.clear()
            logger.info("All tasks cleared (%d)", count)
            return count

    # ── Queries ──────────────────────────────────────────────────────

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._store.get(task_id)

    def get_tasks(self, status: Optional[TaskStatus] = None) -> List[Task]:
        if status is None:
            return self._store.all()
        return self._store.with_status(TaskStatus(status))

    def get_blocked_tasks(self) -> List[Task]:
        return self._store.with_status(TaskStatus.BLOCKED)

    def get_queued_tasks(self) -> List[Task]:
        """Queued tasks in dequeue order."""
        return self._queue.to_list()

    def get_active_or_assigned_tasks(self) -> List[Task]:
        return self._store.with_status(*ACTIVE_STATES)

    def get_tasks_for_agent(self, agent_id: str) -> List[Task]:
        return [t for t in self._store if t.assigned_to == agent_id]

    def get_dependent_tasks(self, task_id: str) -> List[Task]:
        return [t for t in (self._store.get(i) for i in self._ordered(self._deps.get_dependents(task_id))) if t]

    def get_task_stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._store:
            counts[task.status.value] += 1
        counts["total"] = len(self._store)
        return counts

    @property
    def queue(self) -> TaskPriorityQueue:
        return self._queue

    @property
    def dependency_manager(self) -> TaskDependencyManager:
        return self._deps

    @property
    def matcher(self) -> CapabilityMatcher:
        return self._matcher

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "tasks": self.get_task_stats(),
            "queue": self._queue.stats,
            "dependencies": self._deps.stats,
            "transitions": self._state_machine.stats,
            "load_balancer": self._balancer.stats,
            "reassignment_limiter": self._limiter.to_dict(),
            "counters": dict(self._counters),
        }

    # ── Internal helpers ─────────────────────────────────────────────

    def _select_agent(self, agents: List[Agent], task: Task) -> Optional[Agent]:
        if self._config.is_load_balancing_enabled():
            return self._balancer.select_agent(agents, task, self._config.get_load_balancing_strategy())
        return self._matcher.find_best_agent(agents, task)

    async def _dispatch(self, task: Task, agent: Agent, context: str) -> bool:
        """``ready -> assigned -> in-progress`` plus hand-off to the pool.

        On rejection or error the task goes ``assigned -> failed -> ready``,
        is requeued and the error is reported, never raised.
        """
        task.assigned_to = agent.id
        issues = await self._state_machine.transition(task, TaskStatus.ASSIGNED)
        if issues:
            logger.error("Cannot assign task %s: %s", task.id, "; ".join(i.message for i in issues))
            task.assigned_to = None
            task.agent_match_score = None
            if task.status in (TaskStatus.READY, TaskStatus.VALIDATED):
                self._queue.enqueue(task, self._effective_priority(task))
            return False

        error: Optional[Exception] = None
        try:
            accepted = await self._agent_pool.execute_task(agent.id, task)
        except Exception as exc:
            error = exc
        else:
            if not accepted:
                error = DispatchError(
                    f"Agent {agent.id} rejected task {task.id}",
                    details={"agent_id": agent.id, "task_id": task.id},
                )

        if error is not None:
            await self._revert_dispatch(task, error, context)
            return False

        issues = await self._state_machine.transition(task, TaskStatus.IN_PROGRESS)
        if issues:
            # The sink already moved the task on (e.g. failed it); nothing to count
            task.agent_match_score = None
            logger.warning(
                "Task %s left %s during dispatch to %s; not started",
                task.id, TaskStatus.ASSIGNED.value, agent.id,
            )
            return False

        await self._adjust_load(agent.id, +1)
        task.agent_match_score = None
        self._counters["assignments"] += 1
        logger.info("Task %s assigned to agent %s", task.id, agent.id)
        await self._notify_information(f'Task "{task.title}" assigned to {agent.name or agent.id}')
        return True

    async def _revert_dispatch(self, task: Task, error: Exception, context: str) -> None:
        self._counters["dispatch_failures"] += 1
        logger.warning("Dispatch of task %s failed: %s", task.id, error)
        await self._state_machine.transition(task, TaskStatus.FAILED)
        issues = await self._state_machine.transition(task, TaskStatus.READY)
        task.agent_match_score = None
        if issues:
            task.blocked_by = _dependency_ids(issues)
        else:
            self._queue.enqueue(task, self._effective_priority(task))
        await self._error_handler.handle_error(error, context)

    async def _adjust_load(self, agent_id: str, delta: int) -> None:
        capacity = self._agent_pool.get_agent_capacity(agent_id)
        if capacity is None:
            return
        load = max(0, capacity.current_load + delta)
        await self._agent_pool.update_agent_load(agent_id, load, capacity.max_capacity)

    async def _detect_conflicts(self, task: Task) -> List[str]:
        conflicts = self._deps.check_conflicts(task, self.get_active_or_assigned_tasks())
        if conflicts:
            record = self._deps.get_conflict(task.id)
            await self._event_bus.publish(EventType.TASK_CONFLICT_DETECTED, {
                "task_id": task.id,
                "conflicts_with": conflicts,
                "reason": record.reason if record else "",
            })
        return conflicts

    async def _block(self, task: Task, blocked_by: List[str], conflicts: Optional[List[str]] = None) -> None:
        self._queue.remove(task.id)
        task.blocked_by = list(blocked_by)
        task.conflicts_with = list(conflicts or [])
        if task.status != TaskStatus.BLOCKED:
            issues = await self._state_machine.transition(task, TaskStatus.BLOCKED)
            if issues:
                logger.warning("Task %s could not be blocked: %s", task.id, issues[0].message)

    async def _settle(self, task: Task) -> bool:
        """Route a ready/validated/blocked task to where its graph says.

        Returns True when the task ends up ready and queued.
        """
        dep_issues = self._deps.validate_dependencies(task, self._store.as_mapping())
        if self._deps.has_blocking_issues(dep_issues):
            await self._block(task, self._deps.blocking_ids(dep_issues))
            return False

        conflicts = await self._detect_conflicts(task)
        if conflicts:
            await self._block(task, conflicts, conflicts=conflicts)
            return False

        waiting = _dependency_ids(self._state_machine.validate_readiness(task))
        if waiting:
            if task.status == TaskStatus.READY:
                await self._block(task, waiting)
            else:
                task.blocked_by = waiting
            return False

        had_conflicts = bool(task.conflicts_with)
        resolved = [b for b in task.blocked_by if b in task.depends_on]
        if task.status != TaskStatus.READY:
            issues = await self._state_machine.transition(task, TaskStatus.READY)
            if issues:
                return False
        task.blocked_by = []
        task.conflicts_with = []

        if had_conflicts:
            await self._event_bus.publish(EventType.TASK_CONFLICT_RESOLVED, {
                "task_id": task.id,
                "resolution": "auto",
            })
        if resolved:
            await self._event_bus.publish(EventType.TASK_DEPENDENCY_RESOLVED, {
                "task_id": task.id,
                "resolved": resolved,
            })
        if self._queue.contains(task.id):
            self._queue.move_to_ready(task.id)
        else:
            self._queue.enqueue(task, self._effective_priority(task))
        return True

    async def _release_waiters(self, created_id: str) -> None:
        """Re-check blocked tasks that named *created_id* before it existed."""
        for waiter_id in self._ordered(self._deps.get_dependents(created_id)):
            waiter = self._store.get(waiter_id)
            if waiter is not None and waiter.status == TaskStatus.BLOCKED:
                await self._settle(waiter)

    async def _after_finish(self, task: Task) -> None:
        """Follow-up for a task that reached completed or failed."""
        if task.status == TaskStatus.COMPLETED:
            for dep_id in self._ordered(self._deps.get_dependents(task.id)):
                dependent = self._store.get(dep_id)
                if dependent is not None and dependent.status in WAITING_STATES:
                    await self._settle(dependent)

        for waiter_id in self._ordered(self._deps.get_conflicting_tasks(task.id)):
            waiter = self._store.get(waiter_id)
            if waiter is not None and waiter.status == TaskStatus.BLOCKED:
                await self._settle(waiter)

        if task.status == TaskStatus.COMPLETED:
            for soft_id in self._ordered(self._deps.get_soft_dependents(task.id)):
                soft = self._store.get(soft_id)
                if soft is not None and self._queue.contains(soft_id):
                    await self._recompute_priority(soft)

    async def _recompute_priority(self, task: Task) -> None:
        """Raise a queued task's priority after a soft dependency completed."""
        current = self._queue.priority_of(task.id)
        new = self._effective_priority(task)
        if current is None or new <= current:
            return
        self._queue.update_priority(task.id, new)
        logger.debug("Task %s priority %d -> %d", task.id, current, new)
        await self._event_bus.publish(EventType.TASK_PRIORITY_UPDATED, {
            "task_id": task.id,
            "previous_priority": current,
            "new_priority": new,
        })
        tasks = self._store.as_mapping()
        satisfied = [p for p in task.prefers if p in tasks and tasks[p].status == TaskStatus.COMPLETED]
        await self._event_bus.publish(EventType.TASK_SOFT_DEPENDENCY_SATISFIED, {
            "task_id": task.id,
            "task": task.to_dict(),
            "satisfied_dependencies": satisfied,
        })

    def _effective_priority(self, task: Task) -> int:
        boosted = self._queue.compute_effective_priority(task, self._store.as_mapping())
        current = self._queue.priority_of(task.id)
        return max(boosted, task.numeric_priority, current or 0)

    def _ordered(self, task_ids: Iterable[str]) -> List[str]:
        """Known ids in creation order."""
        handles = [(self._store.handle_of(i), i) for i in task_ids]
        return [i for h, i in sorted((h, i) for h, i in handles if h is not None)]

    async def _notify_information(self, message: str) -> None:
        self._counters["notifications"] += 1
        await self._notifier.show_information(message)

    async def _notify_warning(self, message: str) -> None:
        self._counters["notifications"] += 1
        await self._notifier.show_warning(message)

    async def _notify_error(self, message: str) -> None:
        self._counters["notifications"] += 1
        await self._notifier.show_error(message)


def _dependency_ids(issues: Iterable[ValidationIssue]) -> List[str]:
    ids = [i.details.get("dependency_id") for i in issues if i.details.get("dependency_id")]
    return list(dict.fromkeys(ids))
