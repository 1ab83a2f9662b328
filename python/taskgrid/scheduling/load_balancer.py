"""Agent selection strategies and rebalancing rate limiting."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from taskgrid.interfaces.agent_pool import AVAILABLE_STATUSES, Agent
from taskgrid.scheduling.capability_matcher import CapabilityMatcher
from taskgrid.scheduling.models import LoadBalancingStrategy, Task

logger = logging.getLogger(__name__)


class ReassignmentLimiter:
    """Per-cycle counter that never grants more than ``max_per_cycle``."""

    def __init__(self, max_per_cycle: int = 3) -> None:
        self.max_per_cycle = max(0, max_per_cycle)
        self._used = 0
        self._cycles = 0
        self._denied = 0

    def try_acquire(self) -> bool:
        if self._used >= self.max_per_cycle:
            self._denied += 1
            return False
        self._used += 1
        return True

    def reset(self) -> None:
        """Start a new balancing cycle."""
        self._used = 0
        self._cycles += 1

    @property
    def used(self) -> int:
        return self._used

    @property
    def remaining(self) -> int:
        return max(0, self.max_per_cycle - self._used)

    def to_dict(self) -> Dict[str, int]:
        return {
            "max_per_cycle": self.max_per_cycle,
            "used": self._used,
            "remaining": self.remaining,
            "cycles": self._cycles,
            "denied": self._denied,
        }


class LoadBalancer:
    """Chooses an agent for a task among eligible candidates.

    Eligible means status idle/online, strictly positive spare capacity and
    capable according to the matcher.

    Strategies:
        balanced               most spare capacity, ties by capability score
        performance-optimized  0.6 * (100 - utilization) + 0.4 * capability * 100
        capacity-optimized     most spare capacity
    """

    def __init__(
        self,
        matcher: CapabilityMatcher,
        strategy: LoadBalancingStrategy = LoadBalancingStrategy.BALANCED,
        utilization_threshold: float = 80.0,
    ) -> None:
        self._matcher = matcher
        self.strategy = LoadBalancingStrategy(strategy)
        self.utilization_threshold = utilization_threshold
        self._selections: Dict[str, int] = {}

    def eligible_agents(self, agents: Iterable[Agent], task: Task) -> List[Agent]:
        return [
            a for a in agents
            if a.status in AVAILABLE_STATUSES
            and a.available_capacity > 0
            and self._matcher.is_capable(a, task)
        ]

    def rank(
        self,
        agents: Iterable[Agent],
        task: Task,
        strategy: Optional[LoadBalancingStrategy] = None,
    ) -> List[Tuple[Agent, float]]:
        """Eligible agents with their strategy score, best first.

        For ``balanced`` the score is the spare capacity; the capability
        score only orders ties.
        """
        strategy = LoadBalancingStrategy(strategy or self.strategy)
        keyed = []
        for agent in self.eligible_agents(agents, task):
            cap = self._matcher.calculate_match_score(agent.capabilities, task.required_capabilities)
            if strategy == LoadBalancingStrategy.PERFORMANCE_OPTIMIZED:
                score = 0.6 * (100.0 - agent.utilization) + 0.4 * (cap * 100.0)
                key: Tuple[float, ...] = (score,)
            elif strategy == LoadBalancingStrategy.CAPACITY_OPTIMIZED:
                score = float(agent.available_capacity)
                key = (score,)
            else:
                score = float(agent.available_capacity)
                key = (score, cap)
            keyed.append((key, agent, score))
        keyed.sort(key=lambda item: item[0], reverse=True)
        return [(agent, score) for _, agent, score in keyed]

    def select_agent(
        self,
        agents: Iterable[Agent],
        task: Task,
        strategy: Optional[LoadBalancingStrategy] = None,
    ) -> Optional[Agent]:
        ranked = self.rank(agents, task, strategy)
        if not ranked:
            logger.debug("No eligible agents for task %s", task.id)
            return None
        agent, score = ranked[0]
        self._selections[agent.id] = self._selections.get(agent.id, 0) + 1
        logger.debug(
            "Selected agent %s for task %s (%s, score %.2f)",
            agent.id, task.id, LoadBalancingStrategy(strategy or self.strategy).value, score,
        )
        return agent

    def find_overloaded_agents(self, agents: Iterable[Agent]) -> List[Agent]:
        """Agents whose utilization is at or above the threshold, busiest first."""
        overloaded = [a for a in agents if a.utilization >= self.utilization_threshold]
        overloaded.sort(key=lambda a: a.utilization, reverse=True)
        return overloaded

    @property
    def stats(self) -> Dict[str, object]:
        return {
            "strategy": self.strategy.value,
            "utilization_threshold": self.utilization_threshold,
            "selections": dict(self._selections),
        }
