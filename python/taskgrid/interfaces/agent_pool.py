"""Interface for the agent pool collaborator.

The pool owns agent records.  The scheduler only reads them, hands tasks off
through ``execute_task`` and reports load through ``update_agent_load``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol


class AgentStatus(str, Enum):
    IDLE = "idle"
    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"
    ERROR = "error"


AVAILABLE_STATUSES = frozenset({AgentStatus.IDLE, AgentStatus.ONLINE})


@dataclass
class Agent:
    """A worker that can accept tasks."""
    id: str
    name: str = ""
    capabilities: List[str] = field(default_factory=list)
    status: AgentStatus = AgentStatus.IDLE
    current_load: int = 0
    max_capacity: int = 1
    specialization: Optional[str] = None
    agent_type: Optional[str] = None
    tasks_completed: int = 0

    @property
    def available_capacity(self) -> int:
        return max(0, self.max_capacity - self.current_load)

    @property
    def utilization(self) -> float:
        """Current load as a percentage of capacity."""
        if self.max_capacity <= 0:
            return 100.0
        return min(100.0, 100.0 * self.current_load / self.max_capacity)

    @property
    def is_available(self) -> bool:
        return self.status in AVAILABLE_STATUSES and self.available_capacity > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "capabilities": list(self.capabilities),
            "status": self.status.value,
            "current_load": self.current_load,
            "max_capacity": self.max_capacity,
            "available_capacity": self.available_capacity,
            "utilization": round(self.utilization, 1),
            "specialization": self.specialization,
            "agent_type": self.agent_type,
            "tasks_completed": self.tasks_completed,
        }


@dataclass(frozen=True)
class AgentCapacity:
    current_load: int
    max_capacity: int


class IAgentPool(Protocol):
    """Interface for the pool of workers tasks are dispatched to.

    Responsibilities:
    - Report which agents can take work
    - Accept or reject task hand-offs
    - Publish ``agent.created`` / ``agent.status_changed`` on the event bus
    """

    def get_available_agents(self) -> List[Agent]:
        """Agents that are idle/online with spare capacity."""
        ...

    def list_agents(self) -> List[Agent]:
        """Every registered agent regardless of status."""
        ...

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        ...

    def get_agent_capacity(self, agent_id: str) -> Optional[AgentCapacity]:
        ...

    async def execute_task(self, agent_id: str, task: Any) -> bool:
        """Hand *task* off to *agent_id*.

        Returns:
            True when the agent accepted the task, False when it rejected it.
            Implementations may also raise ``DispatchError``.
        """
        ...

    async def update_agent_load(self, agent_id: str, load: int, max_capacity: int) -> None:
        """Record the agent's new load after (re)assignment or release."""
        ...
