from taskgrid.agents.pool import DispatchSink, InMemoryAgentPool

__all__ = ["DispatchSink", "InMemoryAgentPool"]
