"""Dependency graph and conflict tracking for TaskGrid.

Standalone module: no event bus, no store.  Pure Python over data passed in.

Provides:
- Hard (``depends_on``) and soft (``prefers``) edges with reverse indices
- Dependency validation (missing ids, cycles) without mutation
- Conflict detection through a pluggable predicate (file overlap by default)
- Operator conflict decisions (block / allow / merge)
- Topological ordering and transitive dependency chains
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Union

from taskgrid.exceptions_unified import CycleDetectedError
from taskgrid.scheduling.models import (
    ConflictResolution,
    ErrorCode,
    Task,
    TaskStatus,
    ValidationIssue,
)

logger = logging.getLogger(__name__)

ConflictPredicate = Callable[[Task, Task], bool]
TaskCollection = Union[Mapping[str, Task], Iterable[Task]]

BLOCKING_CODES = frozenset({ErrorCode.MISSING_DEPENDENCY, ErrorCode.CIRCULAR_DEPENDENCY})


def file_overlap(task: Task, other: Task) -> bool:
    """Default conflict rule: the two tasks touch at least one common file."""
    return bool(set(task.files) & set(other.files))


def _as_mapping(tasks: TaskCollection) -> Mapping[str, Task]:
    if isinstance(tasks, Mapping):
        return tasks
    return {t.id: t for t in tasks}


# ── Value objects ────────────────────────────────────────────────────


@dataclass
class ConflictRecord:
    """Active conflict between a task and running work."""

    task_id: str
    conflicting_tasks: List[str]
    reason: str
    decision: Optional[ConflictResolution] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "task_id": self.task_id,
            "conflicting_tasks": list(self.conflicting_tasks),
            "reason": self.reason,
            "decision": self.decision.value if self.decision else None,
        }


# ── Manager ──────────────────────────────────────────────────────────


class TaskDependencyManager:
    """Hard/soft dependency graph plus conflict bookkeeping.

    Edges may point at ids that do not exist yet; the reverse index then
    lets the scheduler find waiters as soon as that id is created.

    Not thread-safe; owned by the scheduler coordinator.
    """

    def __init__(self, conflict_predicate: ConflictPredicate = file_overlap) -> None:
        # Forward edges: task_id -> ids it depends ON
        self._dependencies: Dict[str, Set[str]] = {}
        # Reverse edges: task_id -> ids that depend on IT
        self._dependents: Dict[str, Set[str]] = {}
        # Soft edges: task_id -> ids it prefers
        self._soft: Dict[str, Set[str]] = {}
        self._soft_dependents: Dict[str, Set[str]] = {}
        self._conflicts: Dict[str, ConflictRecord] = {}
        # Pairs an operator allowed to run together
        self._allowed: Set[FrozenSet[str]] = set()
        self._predicate = conflict_predicate

    @property
    def conflict_predicate(self) -> ConflictPredicate:
        return self._predicate

    def set_conflict_predicate(self, predicate: ConflictPredicate) -> None:
        self._predicate = predicate

    # ── Graph mutation ───────────────────────────────────────────────

    def register_task(self, task: Task) -> None:
        """Record every edge declared on *task*.

        Cycles are not rejected here; ``validate_dependencies`` reports them
        so the task can be routed to ``blocked``.
        """
        for dep_id in task.depends_on:
            if dep_id != task.id:
                self._link(self._dependencies, self._dependents, task.id, dep_id)
        for pref_id in task.prefers:
            if pref_id != task.id:
                self._link(self._soft, self._soft_dependents, task.id, pref_id)

    def forget_task(self, task_id: str) -> None:
        """Drop *task_id*'s own edges, conflicts and allowed pairs.

        Edges other tasks hold toward *task_id* are kept so they keep
        reporting it as missing.
        """
        for dep_id in self._dependencies.pop(task_id, set()):
            self._dependents.get(dep_id, set()).discard(task_id)
        for pref_id in self._soft.pop(task_id, set()):
            self._soft_dependents.get(pref_id, set()).discard(task_id)
        self._conflicts.pop(task_id, None)
        self._allowed = {pair for pair in self._allowed if task_id not in pair}

    def add_dependency(self, task_id: str, depends_on: str) -> bool:
        """Add a hard edge ``task_id -> depends_on``.

        Returns False if the edge already exists.

        Raises:
            CycleDetectedError: on self-dependency or if the edge closes a cycle.
        """
        if task_id == depends_on:
            raise CycleDetectedError([task_id, task_id])
        if depends_on in self._dependencies.get(task_id, set()):
            return False
        path = self._find_path(depends_on, task_id)
        if path is not None:
            raise CycleDetectedError([task_id] + path)
        self._link(self._dependencies, self._dependents, task_id, depends_on)
        logger.debug("Dependency added: %s -> %s", task_id, depends_on)
        return True

    def remove_dependency(self, task_id: str, depends_on: str) -> bool:
        if depends_on not in self._dependencies.get(task_id, set()):
            return False
        self._unlink(self._dependencies, self._dependents, task_id, depends_on)
        logger.debug("Dependency removed: %s -> %s", task_id, depends_on)
        return True

    def add_soft_dependency(self, task_id: str, prefers: str) -> bool:
        if task_id == prefers or prefers in self._soft.get(task_id, set()):
            return False
        self._link(self._soft, self._soft_dependents, task_id, prefers)
        return True

    def remove_soft_dependency(self, task_id: str, prefers: str) -> bool:
        if prefers not in self._soft.get(task_id, set()):
            return False
        self._unlink(self._soft, self._soft_dependents, task_id, prefers)
        return True

    def clear(self) -> None:
        self._dependencies.clear()
        self._dependents.clear()
        self._soft.clear()
        self._soft_dependents.clear()
        self._conflicts.clear()
        self._allowed.clear()

    # ── Validation ───────────────────────────────────────────────────

    def validate_dependencies(self, task: Task, all_tasks: TaskCollection) -> List[ValidationIssue]:
        """Report missing hard/soft dependencies and cycles through *task*.

        The cycle search follows the ``depends_on`` lists of *all_tasks*, so
        the result reflects the tasks as given even before registration.
        """
        tasks = _as_mapping(all_tasks)
        issues: List[ValidationIssue] = []

        for dep_id in task.depends_on:
            if dep_id == task.id:
                issues.append(ValidationIssue(
                    code=ErrorCode.CIRCULAR_DEPENDENCY,
                    message=f"Task {task.id} depends on itself",
                    field="depends_on",
                    details={"cycle": [task.id, task.id]},
                ))
            elif dep_id not in tasks:
                issues.append(ValidationIssue(
                    code=ErrorCode.MISSING_DEPENDENCY,
                    message=f"Dependency {dep_id} does not exist",
                    field="depends_on",
                    details={"dependency_id": dep_id},
                ))

        for pref_id in task.prefers:
            if pref_id not in tasks:
                issues.append(ValidationIssue(
                    code=ErrorCode.MISSING_SOFT_DEPENDENCY,
                    message=f"Preferred task {pref_id} does not exist",
                    field="prefers",
                    details={"dependency_id": pref_id},
                ))

        cycle = self._find_cycle_through(task, tasks)
        if cycle is not None:
            issues.append(ValidationIssue(
                code=ErrorCode.CIRCULAR_DEPENDENCY,
                message="Circular dependency: " + " -> ".join(cycle),
                field="depends_on",
                details={"cycle": cycle},
            ))
        return issues

    @staticmethod
    def has_blocking_issues(issues: Iterable[ValidationIssue]) -> bool:
        return any(i.code in BLOCKING_CODES for i in issues)

    @staticmethod
    def blocking_ids(issues: Iterable[ValidationIssue]) -> List[str]:
        """Dependency ids named by blocking issues, for ``blocked_by``."""
        ids: List[str] = []
        for issue in issues:
            if issue.code == ErrorCode.MISSING_DEPENDENCY:
                ids.append(issue.details["dependency_id"])
            elif issue.code == ErrorCode.CIRCULAR_DEPENDENCY:
                cycle = issue.details.get("cycle", [])
                ids.extend(cycle[1:2])
        return list(dict.fromkeys(ids))

    # ── Conflicts ────────────────────────────────────────────────────

    def check_conflicts(self, task: Task, active_tasks: Iterable[Task]) -> List[str]:
        """Ids of *active_tasks* that *task* may not run alongside.

        Pairs an operator allowed are skipped.  The active conflict record
        for *task* is replaced (or dropped when the result is empty).
        """
        conflicts: List[str] = []
        for other in active_tasks:
            if other.id == task.id:
                continue
            if frozenset((task.id, other.id)) in self._allowed:
                continue
            if self._predicate(task, other):
                conflicts.append(other.id)

        if conflicts:
            previous = self._conflicts.get(task.id)
            self._conflicts[task.id] = ConflictRecord(
                task_id=task.id,
                conflicting_tasks=conflicts,
                reason=f"Resource overlap with tasks: {', '.join(conflicts)}",
                decision=previous.decision if previous else None,
            )
            logger.warning("Conflict detected for task %s with %s", task.id, conflicts)
        else:
            self._conflicts.pop(task.id, None)
        return conflicts

    def get_conflict(self, task_id: str) -> Optional[ConflictRecord]:
        return self._conflicts.get(task_id)

    def has_conflict(self, task_id: str) -> bool:
        return task_id in self._conflicts

    def get_conflicting_tasks(self, active_task_id: str) -> List[str]:
        """Ids of tasks whose recorded conflict names *active_task_id*."""
        return [
            tid for tid, record in self._conflicts.items()
            if active_task_id in record.conflicting_tasks
        ]

    def resolve_conflict(self, task_id: str, resolution: ConflictResolution) -> bool:
        """Apply an operator decision.

        ``allow``/``merge`` drop the record and permit the pairs from then on;
        ``block`` keeps it.  Returns False when *task_id* has no conflict.
        """
        resolution = ConflictResolution(resolution)
        record = self._conflicts.get(task_id)
        if record is None:
            return False

        if resolution == ConflictResolution.BLOCK:
            record.decision = resolution
            logger.info("Conflict for task %s kept blocked by operator", task_id)
            return True

        for other_id in record.conflicting_tasks:
            self._allowed.add(frozenset((task_id, other_id)))
        del self._conflicts[task_id]
        logger.info("Conflict for task %s resolved by %s", task_id, resolution.value)
        return True

    def is_allowed_pair(self, a: str, b: str) -> bool:
        return frozenset((a, b)) in self._allowed

    # ── Queries ──────────────────────────────────────────────────────

    def get_ready_tasks(self, all_tasks: TaskCollection) -> List[Task]:
        """Waiting tasks whose every hard dependency exists and is completed."""
        tasks = _as_mapping(all_tasks)
        ready: List[Task] = []
        for task in tasks.values():
            if task.status not in (TaskStatus.VALIDATED, TaskStatus.BLOCKED):
                continue
            if all(
                dep in tasks and tasks[dep].status == TaskStatus.COMPLETED
                for dep in task.depends_on
            ):
                ready.append(task)
        return ready

    def get_dependencies(self, task_id: str) -> List[str]:
        return sorted(self._dependencies.get(task_id, set()))

    def get_dependents(self, task_id: str) -> List[str]:
        return sorted(self._dependents.get(task_id, set()))

    def get_soft_dependents(self, task_id: str) -> List[str]:
        return sorted(self._soft_dependents.get(task_id, set()))

    def get_dependency_chain(self, task_id: str) -> List[str]:
        """All transitive hard dependencies of *task_id*, nearest first."""
        chain: List[str] = []
        seen: Set[str] = {task_id}
        queue: deque[str] = deque(sorted(self._dependencies.get(task_id, set())))
        while queue:
            dep = queue.popleft()
            if dep in seen:
                continue
            seen.add(dep)
            chain.append(dep)
            queue.extend(sorted(self._dependencies.get(dep, set())))
        return chain

    def topological_order(self, tasks: Iterable[Task]) -> List[Task]:
        """Kahn's ordering of *tasks*, dependencies first.

        Ties keep the input order.  Edges to ids outside *tasks* are ignored.

        Raises:
            CycleDetectedError: if the tasks contain a cycle.
        """
        ordered_input = list(tasks)
        by_id = {t.id: t for t in ordered_input}
        position = {t.id: i for i, t in enumerate(ordered_input)}
        in_degree: Dict[str, int] = {}
        adj: Dict[str, List[str]] = {tid: [] for tid in by_id}
        for t in ordered_input:
            deps = [d for d in dict.fromkeys(t.depends_on) if d in by_id and d != t.id]
            in_degree[t.id] = len(deps)
            for d in deps:
                adj[d].append(t.id)

        frontier = sorted((tid for tid, deg in in_degree.items() if deg == 0), key=position.get)
        result: List[Task] = []
        while frontier:
            tid = frontier.pop(0)
            result.append(by_id[tid])
            released = []
            for nxt in adj[tid]:
                in_degree[nxt] -= 1
                if in_degree[nxt] == 0:
                    released.append(nxt)
            frontier = sorted(frontier + released, key=position.get)

        if len(result) < len(ordered_input):
            remaining = [tid for tid, deg in in_degree.items() if deg > 0]
            raise CycleDetectedError(sorted(remaining, key=position.get))
        return result

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "hard_edges": sum(len(v) for v in self._dependencies.values()),
            "soft_edges": sum(len(v) for v in self._soft.values()),
            "active_conflicts": len(self._conflicts),
            "allowed_pairs": len(self._allowed),
        }

    # ── Internal helpers ─────────────────────────────────────────────

    @staticmethod
    def _link(forward: Dict[str, Set[str]], reverse: Dict[str, Set[str]], src: str, dst: str) -> None:
        forward.setdefault(src, set()).add(dst)
        reverse.setdefault(dst, set()).add(src)

    @staticmethod
    def _unlink(forward: Dict[str, Set[str]], reverse: Dict[str, Set[str]], src: str, dst: str) -> None:
        forward.get(src, set()).discard(dst)
        reverse.get(dst, set()).discard(src)

    def _find_path(self, start: str, target: str) -> Optional[List[str]]:
        """Path from *start* to *target* along registered hard edges."""
        visited: Set[str] = set()
        stack: List[tuple[str, List[str]]] = [(start, [start])]
        while stack:
            node, path = stack.pop()
            if node == target:
                return path
            if node in visited:
                continue
            visited.add(node)
            for dep in self._dependencies.get(node, set()):
                stack.append((dep, path + [dep]))
        return None

    @staticmethod
    def _find_cycle_through(task: Task, tasks: Mapping[str, Task]) -> Optional[List[str]]:
        """Cycle ``task -> ... -> task`` following ``depends_on`` fields."""
        def deps_of(tid: str) -> List[str]:
            if tid == task.id:
                return task.depends_on
            other = tasks.get(tid)
            return other.depends_on if other is not None else []

        visited: Set[str] = set()
        stack: List[tuple[str, List[str]]] = [
            (dep, [task.id, dep]) for dep in deps_of(task.id) if dep != task.id
        ]
        while stack:
            node, path = stack.pop()
            if node == task.id:
                return path
            if node in visited:
                continue
            visited.add(node)
            for dep in deps_of(node):
                stack.append((dep, path + [dep]))
        return None
