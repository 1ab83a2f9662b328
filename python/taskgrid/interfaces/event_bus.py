"""Interface for event bus and pub/sub messaging.

Decouples the scheduler from its observers by communicating through
published events.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol


class EventType(Enum):
    """Standard event types in the system."""
    # Task lifecycle
    TASK_CREATED = "task.created"
    TASK_STATE_CHANGED = "task.state_changed"
    TASK_READY = "task.ready"
    TASK_BLOCKED = "task.blocked"
    TASK_ASSIGNED = "task.assigned"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    TASK_WAITING = "task.waiting"
    TASK_REASSIGNED = "task.reassigned"
    TASK_MATCH_SCORE = "task.match_score"
    TASK_PRIORITY_UPDATED = "task.priority_updated"
    # Dependencies
    TASK_DEPENDENCY_ADDED = "task.dependency_added"
    TASK_DEPENDENCY_REMOVED = "task.dependency_removed"
    TASK_DEPENDENCY_RESOLVED = "task.dependency_resolved"
    TASK_SOFT_DEPENDENCY_SATISFIED = "task.soft_dependency_satisfied"
    # Conflicts
    TASK_CONFLICT_DETECTED = "task.conflict_detected"
    TASK_CONFLICT_RESOLVED = "task.conflict_resolved"
    TASK_CONFLICT_DECISION = "task.conflict_decision"
    # Agent lifecycle
    AGENT_CREATED = "agent.created"
    AGENT_STATUS_CHANGED = "agent.status_changed"


EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


@dataclass
class Subscription:
    """Handle returned by ``subscribe``; call ``unsubscribe`` to detach."""

    subscription_id: str
    event_type: EventType
    bus: "IEventBus"

    async def unsubscribe(self) -> None:
        await self.bus.unsubscribe(self.subscription_id)


class IEventBus(Protocol):
    """Interface for publish-subscribe event messaging."""

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None
    ) -> None:
        """Publish an event to the bus.

        Args:
            event_type: Type of event
            data: Event data/payload
            source: Optional source identifier
        """
        ...

    async def subscribe(
        self,
        event_type: EventType,
        handler: EventHandler
    ) -> Subscription:
        """Subscribe to events of a type.

        Args:
            event_type: Type of events to listen for
            handler: Async (or plain) function to handle events

        Returns:
            Subscription handle for later unsubscribe
        """
        ...

    async def unsubscribe(self, subscription_id: str) -> None:
        """Unsubscribe from events.

        Args:
            subscription_id: ID from the Subscription handle
        """
        ...
