"""TaskGrid interface contracts (Protocol-based dependency injection)."""

from taskgrid.interfaces.agent_pool import (
    AVAILABLE_STATUSES,
    Agent,
    AgentCapacity,
    AgentStatus,
    IAgentPool,
)
from taskgrid.interfaces.config import ISchedulerConfig
from taskgrid.interfaces.error_handler import IErrorHandler
from taskgrid.interfaces.event_bus import EventHandler, EventType, IEventBus, Subscription
from taskgrid.interfaces.notifier import INotifier, NullNotifier

__all__ = [
    "AVAILABLE_STATUSES",
    "Agent",
    "AgentCapacity",
    "AgentStatus",
    "IAgentPool",
    "ISchedulerConfig",
    "IErrorHandler",
    "EventHandler",
    "EventType",
    "IEventBus",
    "Subscription",
    "INotifier",
    "NullNotifier",
]
