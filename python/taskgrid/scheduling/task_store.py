"""Arena-backed task storage.

Tasks live in a dense list addressed by stable integer handles, with a
secondary ``id -> handle`` index.  Removing a task leaves a hole in the arena
so existing handles never shift; only ``clear`` resets the arena.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Callable, Dict, Iterator, List, Optional

from taskgrid.scheduling.models import Task, TaskStatus

logger = logging.getLogger(__name__)


class TaskView(Mapping):
    """Mapping facade over a ``TaskStore``."""

    def __init__(self, store: "TaskStore") -> None:
        self._store = store

    def __getitem__(self, task_id: str) -> Task:
        task = self._store.get(task_id)
        if task is None:
            raise KeyError(task_id)
        return task

    def __iter__(self) -> Iterator[str]:
        return (t.id for t in self._store)

    def __len__(self) -> int:
        return len(self._store)


class TaskStore:
    """Owns every ``Task`` record known to the scheduler."""

    def __init__(self) -> None:
        self._arena: List[Optional[Task]] = []
        self._index: Dict[str, int] = {}

    # ── Mutation ─────────────────────────────────────────────────────

    def add(self, task: Task) -> int:
        """Store *task* and return its handle.

        Raises:
            ValueError: if a task with the same id is already stored.
        """
        if task.id in self._index:
            raise ValueError(f"Task {task.id!r} already exists")
        handle = len(self._arena)
        self._arena.append(task)
        self._index[task.id] = handle
        return handle

    def remove(self, task_id: str) -> Optional[Task]:
        handle = self._index.pop(task_id, None)
        if handle is None:
            return None
        task = self._arena[handle]
        self._arena[handle] = None
        return task

    def remove_where(self, predicate: Callable[[Task], bool]) -> List[Task]:
        """Drop every task matching *predicate*; surviving handles are kept."""
        removed = [t for t in self if predicate(t)]
        for task in removed:
            self.remove(task.id)
        if removed:
            logger.debug("Removed %d tasks from store", len(removed))
        return removed

    def clear(self) -> int:
        count = len(self._index)
        self._rebuild([])
        return count

    # ── Lookup ───────────────────────────────────────────────────────

    def get(self, task_id: str) -> Optional[Task]:
        handle = self._index.get(task_id)
        if handle is None:
            return None
        return self._arena[handle]

    def handle_of(self, task_id: str) -> Optional[int]:
        return self._index.get(task_id)

    def by_handle(self, handle: int) -> Optional[Task]:
        if 0 <= handle < len(self._arena):
            return self._arena[handle]
        return None

    def with_status(self, *statuses: TaskStatus) -> List[Task]:
        wanted = set(statuses)
        return [t for t in self if t.status in wanted]

    def all(self) -> List[Task]:
        return list(self)

    def as_mapping(self) -> "TaskView":
        """Live read-only ``id -> Task`` view; lookups go through the index."""
        return TaskView(self)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._index

    def __len__(self) -> int:
        return len(self._index)

    def __iter__(self) -> Iterator[Task]:
        for task in self._arena:
            if task is not None:
                yield task

    # ── Internal helpers ─────────────────────────────────────────────

    def _rebuild(self, tasks: List[Task]) -> None:
        self._arena = list(tasks)
        self._index = {t.id: i for i, t in enumerate(self._arena)}
