"""Tests for load balancing strategies and the reassignment limiter (taskgrid/scheduling/load_balancer.py)."""

import pytest

from taskgrid.interfaces.agent_pool import Agent, AgentStatus
from taskgrid.scheduling.capability_matcher import CapabilityMatcher
from taskgrid.scheduling.load_balancer import LoadBalancer, ReassignmentLimiter
from taskgrid.scheduling.models import LoadBalancingStrategy, Task


def _agent(agent_id, capabilities=("python",), load=0, capacity=1, **kwargs) -> Agent:
    return Agent(
        id=agent_id,
        capabilities=list(capabilities),
        current_load=load,
        max_capacity=capacity,
        **kwargs,
    )


def _task(required=("python",)) -> Task:
    return Task(id="t1", title="t1", description="work", required_capabilities=set(required))


@pytest.fixture
def balancer():
    return LoadBalancer(CapabilityMatcher())


class TestEligibility:
    def test_filters_status_capacity_and_capability(self, balancer):
        agents = [
            _agent("ok"),
            _agent("busy", status=AgentStatus.BUSY, capacity=2),
            _agent("offline", status=AgentStatus.OFFLINE),
            _agent("full", load=1, capacity=1),
            _agent("wrong", capabilities=["ios"]),
            _agent("online", status=AgentStatus.ONLINE),
        ]
        assert [a.id for a in balancer.eligible_agents(agents, _task())] == ["ok", "online"]

    def test_no_eligible_agent(self, balancer):
        assert balancer.select_agent([_agent("wrong", capabilities=["ios"])], _task()) is None


class TestStrategies:
    def test_balanced_prefers_spare_capacity(self, balancer):
        small = _agent("small", capacity=2)
        large = _agent("large", load=1, capacity=4)
        assert balancer.select_agent([small, large], _task()).id == "large"

    def test_balanced_breaks_ties_by_capability(self, balancer):
        partial = _agent("partial", capabilities=["python"], capacity=2)
        full = _agent("full", capabilities=["python", "sql"], capacity=2)
        ranked = balancer.rank([partial, full], _task(["python", "sql"]))
        assert [a.id for a, _ in ranked] == ["full", "partial"]
        assert ranked[0][1] == 2.0

    def test_performance_optimized(self, balancer):
        loaded = _agent("loaded", capabilities=["python", "sql"], load=1, capacity=4)
        partial = _agent("partial", capabilities=["python"], capacity=4)
        ranked = balancer.rank(
            [partial, loaded], _task(["python", "sql"]), LoadBalancingStrategy.PERFORMANCE_OPTIMIZED,
        )
        # loaded: 0.6 * 75 + 0.4 * 100 = 85; partial: 0.6 * 100 + 0.4 * 50 = 80
        assert [a.id for a, _ in ranked] == ["loaded", "partial"]
        assert ranked[0][1] == pytest.approx(85.0)

    def test_capacity_optimized_ignores_capability_quality(self):
        balancer = LoadBalancer(CapabilityMatcher(), strategy="capacity-optimized")
        partial = _agent("partial", capabilities=["python"], capacity=3)
        full = _agent("full", capabilities=["python", "sql"], capacity=2)
        assert balancer.select_agent([full, partial], _task(["python", "sql"])).id == "partial"

    def test_selection_stats(self, balancer):
        balancer.select_agent([_agent("a")], _task())
        balancer.select_agent([_agent("a")], _task())
        assert balancer.stats["selections"] == {"a": 2}
        assert balancer.stats["strategy"] == "balanced"


class TestOverload:
    def test_overloaded_busiest_first(self, balancer):
        agents = [
            _agent("half", load=1, capacity=2),
            _agent("at_threshold", load=4, capacity=5),
            _agent("full", load=2, capacity=2),
        ]
        assert [a.id for a in balancer.find_overloaded_agents(agents)] == ["full", "at_threshold"]


class TestReassignmentLimiter:
    def test_never_exceeds_limit(self):
        limiter = ReassignmentLimiter(max_per_cycle=2)
        assert limiter.try_acquire()
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        assert limiter.remaining == 0

    def test_reset_starts_new_cycle(self):
        limiter = ReassignmentLimiter(max_per_cycle=1)
        limiter.try_acquire()
        limiter.try_acquire()
        limiter.reset()
        assert limiter.used == 0
        assert limiter.to_dict() == {
            "max_per_cycle": 1,
            "used": 0,
            "remaining": 1,
            "cycles": 1,
            "denied": 1,
        }

    def test_zero_limit(self):
        assert not ReassignmentLimiter(max_per_cycle=0).try_acquire()
