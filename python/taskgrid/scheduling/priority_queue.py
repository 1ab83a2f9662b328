"""Priority queue of schedulable tasks.

Two heaps (``ready`` and ``validated``) ordered by effective numeric
priority descending, then by first-enqueue order.  Entries are invalidated
lazily: removing or re-prioritising a task bumps its version and stale heap
entries are skipped on pop.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Tuple

from taskgrid.scheduling.models import Task, TaskStatus

logger = logging.getLogger(__name__)

QUEUEABLE = (TaskStatus.READY, TaskStatus.VALIDATED)
DEPTH_HISTORY = 10

_HeapItem = Tuple[int, int, int, str]  # (-priority, sequence, version, task_id)


@dataclass
class _Record:
    task: Task
    bucket: TaskStatus
    priority: int
    version: int


class TaskPriorityQueue:
    """Ready-first priority queue with soft-dependency boosting.

    Args:
        soft_dependency_boost: priority added once every preferred task of a
            queued task has completed.
    """

    def __init__(self, soft_dependency_boost: int = 5) -> None:
        self.soft_dependency_boost = soft_dependency_boost
        self._heaps: Dict[TaskStatus, List[_HeapItem]] = {s: [] for s in QUEUEABLE}
        self._records: Dict[str, _Record] = {}
        # First-enqueue order, kept across remove/re-enqueue
        self._sequence: Dict[str, int] = {}
        self._counter = itertools.count()
        self._versions = itertools.count()
        self._depth_history: Deque[int] = deque(maxlen=DEPTH_HISTORY)
        self._enqueued_total = 0
        self._dequeued_total = 0

    # ── Priority ─────────────────────────────────────────────────────

    def compute_effective_priority(self, task: Task, all_tasks: Mapping[str, Task]) -> int:
        """Base numeric priority plus the soft-dependency boost.

        Full boost when every preferred task is completed, a proportional
        share (at least 1) when only some are, nothing otherwise.
        """
        base = task.numeric_priority
        if not task.prefers or self.soft_dependency_boost <= 0:
            return base
        done = sum(
            1 for pid in task.prefers
            if pid in all_tasks and all_tasks[pid].status == TaskStatus.COMPLETED
        )
        if done == 0:
            return base
        if done == len(task.prefers):
            return base + self.soft_dependency_boost
        return base + max(1, int(self.soft_dependency_boost * done / len(task.prefers)))

    # ── Mutation ─────────────────────────────────────────────────────

    def enqueue(self, task: Task, priority: Optional[int] = None) -> bool:
        """Insert or refresh *task*; returns False for a non-queueable status."""
        if task.status not in QUEUEABLE:
            logger.debug("Not enqueuing %s in status %s", task.id, task.status.value)
            return False
        if priority is None:
            existing = self._records.get(task.id)
            priority = existing.priority if existing else task.numeric_priority
        if task.id not in self._sequence:
            self._sequence[task.id] = next(self._counter)
        self._push(task, task.status, priority)
        self._enqueued_total += 1
        self._record_depth()
        return True

    def enqueue_many(self, tasks: Iterable[Task]) -> int:
        return sum(1 for t in tasks if self.enqueue(t))

    def dequeue(self) -> Optional[Task]:
        """Pop the best ready task, falling back to validated tasks."""
        task = self._pop(TaskStatus.READY)
        if task is None:
            task = self._pop(TaskStatus.VALIDATED)
        return task

    def dequeue_ready(self) -> Optional[Task]:
        """Pop the best task whose status is exactly ``ready``.

        Entries whose task has since left ``ready`` are dropped, or moved to
        the validated heap when the task is validated.
        """
        while True:
            task = self._pop(TaskStatus.READY)
            if task is None or task.status == TaskStatus.READY:
                return task
            logger.debug("Skipping stale ready entry %s (%s)", task.id, task.status.value)
            if task.status == TaskStatus.VALIDATED:
                self.enqueue(task)

    def remove(self, task_id: str) -> bool:
        if self._records.pop(task_id, None) is None:
            return False
        self._record_depth()
        return True

    def move_to_ready(self, task_id: str) -> bool:
        """Move a validated entry into the ready heap, keeping its priority."""
        record = self._records.get(task_id)
        if record is None:
            return False
        if record.bucket == TaskStatus.READY:
            return True
        self._push(record.task, TaskStatus.READY, record.priority)
        return True

    def update_priority(self, task_id: str, priority: int) -> bool:
        record = self._records.get(task_id)
        if record is None:
            return False
        if record.priority != priority:
            self._push(record.task, record.bucket, priority)
        return True

    def reorder(self) -> None:
        """Rebuild both heaps from live entries, discarding stale items."""
        for bucket in QUEUEABLE:
            self._heaps[bucket] = [
                (-r.priority, self._sequence[tid], r.version, tid)
                for tid, r in self._records.items()
                if r.bucket == bucket
            ]
            heapq.heapify(self._heaps[bucket])

    def clear(self) -> None:
        for heap in self._heaps.values():
            heap.clear()
        self._records.clear()
        self._sequence.clear()
        self._record_depth()

    # ── Queries ──────────────────────────────────────────────────────

    def peek(self) -> Optional[Task]:
        for bucket in QUEUEABLE:
            item = self._top(bucket)
            if item is not None:
                return self._records[item[3]].task
        return None

    def contains(self, task_id: str) -> bool:
        return task_id in self._records

    def priority_of(self, task_id: str) -> Optional[int]:
        record = self._records.get(task_id)
        return record.priority if record else None

    def size(self) -> int:
        return len(self._records)

    def is_empty(self) -> bool:
        return not self._records

    def to_list(self) -> List[Task]:
        """Queued tasks in dequeue order."""
        ordered: List[Task] = []
        for bucket in QUEUEABLE:
            items = sorted(
                (-r.priority, self._sequence[tid], tid)
                for tid, r in self._records.items()
                if r.bucket == bucket
            )
            ordered.extend(self._records[tid].task for _, _, tid in items)
        return ordered

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    @property
    def stats(self) -> Dict[str, object]:
        ready = sum(1 for r in self._records.values() if r.bucket == TaskStatus.READY)
        history = list(self._depth_history)
        return {
            "ready": ready,
            "validated": len(self._records) - ready,
            "total": len(self._records),
            "enqueued_total": self._enqueued_total,
            "dequeued_total": self._dequeued_total,
            "depth_history": history,
            "average_depth": round(sum(history) / len(history), 2) if history else 0.0,
        }

    # ── Heap internals ───────────────────────────────────────────────

    def _push(self, task: Task, bucket: TaskStatus, priority: int) -> None:
        version = next(self._versions)
        self._records[task.id] = _Record(task=task, bucket=bucket, priority=priority, version=version)
        heapq.heappush(self._heaps[bucket], (-priority, self._sequence[task.id], version, task.id))

    def _is_live(self, item: _HeapItem, bucket: TaskStatus) -> bool:
        record = self._records.get(item[3])
        return record is not None and record.version == item[2] and record.bucket == bucket

    def _top(self, bucket: TaskStatus) -> Optional[_HeapItem]:
        heap = self._heaps[bucket]
        while heap and not self._is_live(heap[0], bucket):
            heapq.heappop(heap)
        return heap[0] if heap else None

    def _pop(self, bucket: TaskStatus) -> Optional[Task]:
        item = self._top(bucket)
        if item is None:
            return None
        heapq.heappop(self._heaps[bucket])
        record = self._records.pop(item[3])
        self._dequeued_total += 1
        self._record_depth()
        return record.task

    def _record_depth(self) -> None:
        self._depth_history.append(len(self._records))
