"""Dependency injection container for TaskGrid.

Lightweight wiring of core services at application startup.
Uses lazy initialization — services are created on first access.
"""

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class TaskGridContainer:
    """Composition root for the scheduler and its collaborators."""

    def __init__(self, settings=None) -> None:
        self._settings = settings
        self._event_bus = None
        self._notification_service = None
        self._error_handler = None
        self._agent_pool = None
        self._scheduler = None

    @property
    def settings(self):
        if self._settings is None:
            from taskgrid.config.settings import get_settings
            self._settings = get_settings()
        return self._settings

    @property
    def event_bus(self):
        if self._event_bus is None:
            from taskgrid.event_bus import InMemoryEventBus
            self._event_bus = InMemoryEventBus()
        return self._event_bus

    @property
    def notification_service(self):
        if self._notification_service is None:
            from taskgrid.notifications.notification_service import NotificationService
            self._notification_service = NotificationService(
                max_stored=self.settings.notifications_max_stored,
            )
            logger.info("NotificationService initialized")
        return self._notification_service

    @property
    def error_handler(self):
        if self._error_handler is None:
            from taskgrid.error_handler import LoggingErrorHandler
            self._error_handler = LoggingErrorHandler()
        return self._error_handler

    @property
    def agent_pool(self):
        if self._agent_pool is None:
            from taskgrid.agents.pool import InMemoryAgentPool
            self._agent_pool = InMemoryAgentPool(event_bus=self.event_bus)
            logger.info("InMemoryAgentPool initialized")
        return self._agent_pool

    @property
    def scheduler(self):
        if self._scheduler is None:
            from taskgrid.scheduling.capability_matcher import CapabilityMatcher
            from taskgrid.scheduling.priority_queue import TaskPriorityQueue
            from taskgrid.scheduling.scheduler_coordinator import SchedulerCoordinator

            settings = self.settings
            self._scheduler = SchedulerCoordinator(
                agent_pool=self.agent_pool,
                event_bus=self.event_bus,
                config=settings,
                notifier=self.notification_service,
                error_handler=self.error_handler,
                priority_queue=TaskPriorityQueue(soft_dependency_boost=settings.soft_dependency_boost),
                matcher=CapabilityMatcher(min_score=settings.matcher_min_score),
                max_assignment_attempts=settings.max_assignment_attempts,
            )
            logger.info(
                "SchedulerCoordinator initialized (strategy=%s)",
                settings.load_balancing_strategy.value,
            )
        return self._scheduler

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()

    def status(self) -> Dict[str, Any]:
        """Report which services are initialized."""
        return {
            "settings": self._settings is not None,
            "event_bus": self._event_bus is not None,
            "notification_service": self._notification_service is not None,
            "error_handler": self._error_handler is not None,
            "agent_pool": self._agent_pool is not None,
            "scheduler": self._scheduler is not None,
        }


# Global container
_container: Optional[TaskGridContainer] = None


def get_container() -> TaskGridContainer:
    global _container
    if _container is None:
        _container = TaskGridContainer()
    return _container


def init_container(settings=None) -> TaskGridContainer:
    global _container
    if _container is None:
        _container = TaskGridContainer(settings=settings)
    return _container


def shutdown_container() -> None:
    global _container
    _container = None
