"""In-memory agent pool.

Implements ``IAgentPool`` for single-process deployments and tests.  Task
hand-off is delegated to an optional *dispatch sink*: a callable that may
return ``False`` (or an awaitable of it) to reject a task, or raise.
"""

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from taskgrid.exceptions_unified import AgentNotFoundError, DispatchError
from taskgrid.interfaces.agent_pool import (
    AVAILABLE_STATUSES,
    Agent,
    AgentCapacity,
    AgentStatus,
)
from taskgrid.interfaces.event_bus import EventType, IEventBus

logger = logging.getLogger(__name__)

DispatchSink = Callable[[Agent, Any], Union[Optional[bool], Awaitable[Optional[bool]]]]


class InMemoryAgentPool:
    """Agent registry with load/status bookkeeping.

    Load drives status: an agent at capacity turns ``busy`` and an agent
    below capacity returns to ``idle``.  ``offline`` and ``error`` agents
    keep their status until ``set_status`` changes it.
    """

    def __init__(
        self,
        event_bus: Optional[IEventBus] = None,
        dispatch_sink: Optional[DispatchSink] = None,
    ) -> None:
        self._agents: Dict[str, Agent] = {}
        self._event_bus = event_bus
        self._dispatch_sink = dispatch_sink
        self._dispatched: List[Tuple[str, str]] = []
        self._rejected = 0

    def set_dispatch_sink(self, sink: Optional[DispatchSink]) -> None:
        self._dispatch_sink = sink

    # ── Registry ─────────────────────────────────────────────────────

    async def register_agent(self, agent: Agent) -> Agent:
        """Add *agent* and publish ``agent.created``.

        Raises:
            ValueError: if the id is already registered.
        """
        if agent.id in self._agents:
            raise ValueError(f"Agent {agent.id!r} already registered")
        if not agent.name:
            agent.name = agent.id
        self._agents[agent.id] = agent
        logger.info("Agent registered: %s (%s)", agent.id, ", ".join(agent.capabilities) or "no capabilities")
        await self._publish(EventType.AGENT_CREATED, {"agent_id": agent.id, "agent": agent.to_dict()})
        return agent

    async def remove_agent(self, agent_id: str) -> bool:
        agent = self._agents.pop(agent_id, None)
        if agent is None:
            return False
        await self._publish(EventType.AGENT_STATUS_CHANGED, {
            "agent_id": agent_id,
            "status": AgentStatus.OFFLINE.value,
            "previous_status": agent.status.value,
        })
        return True

    async def set_status(self, agent_id: str, status: AgentStatus) -> Agent:
        agent = self._require(agent_id)
        await self._change_status(agent, AgentStatus(status))
        return agent

    # ── IAgentPool ───────────────────────────────────────────────────

    def get_available_agents(self) -> List[Agent]:
        return [a for a in self._agents.values() if a.is_available]

    def list_agents(self) -> List[Agent]:
        return list(self._agents.values())

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    def get_agent_capacity(self, agent_id: str) -> Optional[AgentCapacity]:
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        return AgentCapacity(current_load=agent.current_load, max_capacity=agent.max_capacity)

    async def execute_task(self, agent_id: str, task: Any) -> bool:
        """Hand *task* to the dispatch sink.

        Raises:
            DispatchError: if the agent is unknown.
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            raise DispatchError(f"Agent {agent_id} is not registered", details={"agent_id": agent_id})
        if agent.status not in AVAILABLE_STATUSES and agent.status != AgentStatus.BUSY:
            logger.warning("Agent %s is %s; rejecting task %s", agent_id, agent.status.value, task.id)
            self._rejected += 1
            return False

        accepted = True
        if self._dispatch_sink is not None:
            result = self._dispatch_sink(agent, task)
            if inspect.isawaitable(result):
                result = await result
            accepted = result is not False

        if accepted:
            self._dispatched.append((agent_id, task.id))
            logger.debug("Task %s dispatched to %s", task.id, agent_id)
        else:
            self._rejected += 1
        return accepted

    async def update_agent_load(self, agent_id: str, load: int, max_capacity: int) -> None:
        agent = self._agents.get(agent_id)
        if agent is None:
            logger.warning("Load update for unknown agent %s", agent_id)
            return
        agent.current_load = max(0, load)
        agent.max_capacity = max_capacity
        if agent.status in (AgentStatus.OFFLINE, AgentStatus.ERROR):
            return
        if agent.current_load >= agent.max_capacity:
            await self._change_status(agent, AgentStatus.BUSY)
        elif agent.status == AgentStatus.BUSY:
            await self._change_status(agent, AgentStatus.IDLE)

    # ── Introspection ────────────────────────────────────────────────

    @property
    def dispatched(self) -> List[Tuple[str, str]]:
        """``(agent_id, task_id)`` pairs accepted so far."""
        return list(self._dispatched)

    @property
    def stats(self) -> Dict[str, Any]:
        by_status: Dict[str, int] = {}
        for agent in self._agents.values():
            by_status[agent.status.value] = by_status.get(agent.status.value, 0) + 1
        return {
            "agents": len(self._agents),
            "available": len(self.get_available_agents()),
            "by_status": by_status,
            "dispatched": len(self._dispatched),
            "rejected": self._rejected,
        }

    # ── Internal helpers ─────────────────────────────────────────────

    def _require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    async def _change_status(self, agent: Agent, status: AgentStatus) -> None:
        if agent.status == status:
            return
        previous = agent.status
        agent.status = status
        logger.debug("Agent %s: %s -> %s", agent.id, previous.value, status.value)
        await self._publish(EventType.AGENT_STATUS_CHANGED, {
            "agent_id": agent.id,
            "status": status.value,
            "previous_status": previous.value,
        })

    async def _publish(self, event_type: EventType, data: Dict[str, Any]) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event_type, data, source="agent_pool")
