"""Interface for scheduler configuration lookups."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from taskgrid.scheduling.models import LoadBalancingStrategy


class ISchedulerConfig(Protocol):
    """Read-only scheduler configuration.

    ``taskgrid.config.settings.Settings`` satisfies this structurally.
    """

    def is_auto_assign_tasks(self) -> bool:
        ...

    def is_load_balancing_enabled(self) -> bool:
        ...

    def get_load_balancing_strategy(self) -> LoadBalancingStrategy:
        ...

    def get_max_reassignments_per_cycle(self) -> int:
        ...

    def get_utilization_threshold(self) -> float:
        """Percent utilization at or above which an agent counts as overloaded."""
        ...
