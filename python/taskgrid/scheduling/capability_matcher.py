"""Agent/task capability matching and composite agent scoring.

Capability coverage is case-insensitive and synonym-aware.  The composite
score blends five components, each clamped to [0, 1]:

    capability       0.40   coverage of required capabilities
    specialization   0.25   specialization words found in description/tags
    type             0.20   agent type compatible with the inferred task type
    workload         0.10   1 - utilization
    performance      0.05   experience from completed tasks
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from taskgrid.interfaces.agent_pool import Agent
from taskgrid.scheduling.models import Task

logger = logging.getLogger(__name__)


CAPABILITY_GROUPS: Tuple[Tuple[str, ...], ...] = (
    ("react", "frontend", "javascript", "typescript", "ui/ux"),
    ("typescript", "javascript", "frontend", "react", "node.js"),
    ("javascript", "frontend", "backend", "node.js", "react"),
    ("node.js", "backend", "javascript", "apis", "server"),
    ("python", "backend", "ai", "ml", "data science"),
    ("database", "postgresql", "mongodb", "redis", "sql"),
    ("apis", "rest", "graphql", "backend", "node.js"),
    ("testing", "qa", "e2e", "unit testing", "automation"),
    ("devops", "docker", "kubernetes", "ci/cd", "cloud"),
    ("mobile", "react native", "ios", "android", "mobile ui"),
)

TYPE_COMPATIBILITY: Dict[str, FrozenSet[str]] = {
    "frontend": frozenset({"frontend", "fullstack"}),
    "backend": frozenset({"backend", "fullstack"}),
    "fullstack": frozenset({"frontend", "backend", "fullstack"}),
    "mobile": frozenset({"mobile", "frontend"}),
    "devops": frozenset({"devops", "backend"}),
    "testing": frozenset({"testing", "frontend", "backend"}),
    "ai": frozenset({"ai", "backend"}),
    "database": frozenset({"database", "backend"}),
}

# Checked in order; first hit wins.
TASK_TYPE_KEYWORDS: Tuple[Tuple[str, FrozenSet[str]], ...] = (
    ("frontend", frozenset({"frontend", "react", "ui", "css"})),
    ("backend", frozenset({"backend", "api", "server", "database"})),
    ("mobile", frozenset({"mobile", "ios", "android"})),
    ("devops", frozenset({"devops", "docker", "deploy"})),
    ("testing", frozenset({"test", "tests", "testing", "qa", "automation"})),
    ("ai", frozenset({"ai", "ml", "python"})),
    ("database", frozenset({"database", "sql", "mongo"})),
)

_WORD = re.compile(r"[a-z0-9.+#/-]+")


def _build_synonyms(groups: Iterable[Iterable[str]]) -> Dict[str, FrozenSet[str]]:
    """Map each capability to the union of every group containing it."""
    merged: Dict[str, set] = {}
    for group in groups:
        members = {c.lower() for c in group}
        for cap in members:
            merged.setdefault(cap, set()).update(members)
    return {cap: frozenset(members) for cap, members in merged.items()}


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass
class ScoringWeights:
    capability: float = 0.4
    specialization: float = 0.25
    type: float = 0.2
    workload: float = 0.1
    performance: float = 0.05

    def to_dict(self) -> Dict[str, float]:
        return {
            "capability": self.capability,
            "specialization": self.specialization,
            "type": self.type,
            "workload": self.workload,
            "performance": self.performance,
        }


@dataclass(frozen=True)
class ScoreBreakdown:
    capability: float
    specialization: float
    type: float
    workload: float
    performance: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "capability": round(self.capability, 3),
            "specialization": round(self.specialization, 3),
            "type": round(self.type, 3),
            "workload": round(self.workload, 3),
            "performance": round(self.performance, 3),
        }


class CapabilityMatcher:
    """Scores and ranks agents for a task.

    Args:
        min_score: composite score the best agent must reach in
            ``find_best_agent``.
        weights: component weights; defaults to ``ScoringWeights()``.
    """

    def __init__(
        self,
        min_score: float = 0.0,
        weights: Optional[ScoringWeights] = None,
        capability_groups: Iterable[Iterable[str]] = CAPABILITY_GROUPS,
    ) -> None:
        self.min_score = min_score
        self._weights = weights or ScoringWeights()
        self._synonyms = _build_synonyms(capability_groups)

    # ── Capability coverage ──────────────────────────────────────────

    def calculate_match_score(
        self,
        agent_capabilities: Iterable[str],
        required_capabilities: Iterable[str],
    ) -> float:
        """Fraction of *required_capabilities* the agent covers.

        No requirements scores 1.0.
        """
        required = [c.lower() for c in required_capabilities if c]
        if not required:
            return 1.0
        owned = {c.lower() for c in agent_capabilities if c}
        matched = sum(1 for cap in required if self._covers(owned, cap))
        return matched / len(required)

    def is_capable(self, agent: Agent, task: Task) -> bool:
        """The agent covers at least one required capability (or none are required)."""
        return self.calculate_match_score(agent.capabilities, task.required_capabilities) > 0.0

    def _covers(self, owned: set, required: str) -> bool:
        if required in owned:
            return True
        synonyms = self._synonyms.get(required)
        return bool(synonyms and owned & synonyms)

    # ── Composite scoring ────────────────────────────────────────────

    def score_breakdown(self, agent: Agent, task: Task) -> ScoreBreakdown:
        return ScoreBreakdown(
            capability=_clamp(self.calculate_match_score(agent.capabilities, task.required_capabilities)),
            specialization=_clamp(self._specialization_score(agent, task)),
            type=_clamp(self._type_score(agent, task)),
            workload=_clamp(1.0 - agent.utilization / 100.0),
            performance=_clamp(self._performance_score(agent)),
        )

    def score_agent(self, agent: Agent, task: Task) -> float:
        b = self.score_breakdown(agent, task)
        w = self._weights
        total = (
            b.capability * w.capability
            + b.specialization * w.specialization
            + b.type * w.type
            + b.workload * w.workload
            + b.performance * w.performance
        )
        score = _clamp(total)
        logger.debug("Agent %s scored %.2f for task %s", agent.id, score, task.id)
        return score

    def rank_agents(self, agents: Iterable[Agent], task: Task) -> List[Tuple[Agent, float]]:
        """``(agent, score)`` pairs, best first; ties keep input order."""
        scored = [(agent, self.score_agent(agent, task)) for agent in agents]
        scored.sort(key=lambda pair: pair[1], reverse=True)
        return scored

    def find_best_agent(self, agents: Iterable[Agent], task: Task) -> Optional[Agent]:
        """Best available, capable agent at or above ``min_score``."""
        candidates = [a for a in agents if a.is_available and self.is_capable(a, task)]
        if not candidates:
            logger.debug("No available capable agents for task %s", task.id)
            return None
        best, score = self.rank_agents(candidates, task)[0]
        if score < self.min_score:
            logger.warning(
                "Best agent %s score %.2f below minimum %.2f for task %s",
                best.id, score, self.min_score, task.id,
            )
            return None
        logger.info("Best agent for task %s: %s (score %.2f)", task.id, best.id, score)
        return best

    def get_match_explanation(self, agent: Agent, task: Task) -> str:
        b = self.score_breakdown(agent, task)
        pct = f"{b.capability * 100:.0f}%"
        if b.capability > 0.7:
            parts = [f"Strong capability match ({pct})"]
        elif b.capability > 0.3:
            parts = [f"Moderate capability match ({pct})"]
        else:
            parts = [f"Weak capability match ({pct})"]
        if b.specialization > 0.5:
            parts.append("Good specialization match")
        if b.type >= 1.0:
            parts.append("Perfect type compatibility")
        elif agent.agent_type and self._infer_task_type(task):
            parts.append("Type mismatch")
        parts.append("Agent is idle" if agent.current_load == 0 else "Agent is busy")
        return ", ".join(parts)

    # ── Weights ──────────────────────────────────────────────────────

    @property
    def weights(self) -> ScoringWeights:
        return ScoringWeights(**self._weights.to_dict())

    def update_weights(self, **changes: float) -> None:
        """Update named weights in place; unknown names raise ``ValueError``."""
        for name, value in changes.items():
            if not hasattr(self._weights, name):
                raise ValueError(f"Unknown scoring weight: {name}")
            setattr(self._weights, name, float(value))
        logger.info("Matcher weights updated: %s", self._weights.to_dict())

    # ── Components ───────────────────────────────────────────────────

    @staticmethod
    def _specialization_score(agent: Agent, task: Task) -> float:
        if not agent.specialization:
            return 0.0
        spec_words = [w for w in re.split(r"[,\s]+", agent.specialization.lower()) if w]
        if not spec_words:
            return 0.0
        text_words = set((task.description or "").lower().split())
        text_words.update(t.lower() for t in task.tags)
        return sum(1 for w in spec_words if w in text_words) / len(spec_words)

    def _type_score(self, agent: Agent, task: Task) -> float:
        if not agent.agent_type:
            return 0.0
        task_type = self._infer_task_type(task)
        if task_type is None:
            return 0.0
        compatible = TYPE_COMPATIBILITY.get(agent.agent_type.lower(), frozenset())
        return 1.0 if task_type in compatible else 0.0

    @staticmethod
    def _infer_task_type(task: Task) -> Optional[str]:
        text = f"{task.description or ''} {' '.join(task.tags)}".lower()
        words = set(_WORD.findall(text))
        for task_type, keywords in TASK_TYPE_KEYWORDS:
            if words & keywords:
                return task_type
        return None

    @staticmethod
    def _performance_score(agent: Agent) -> float:
        if agent.tasks_completed <= 0:
            return 0.5
        return min(1.0, agent.tasks_completed / 10)
