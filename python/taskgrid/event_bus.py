"""In-process event bus for scheduler lifecycle events.

The scheduler, the agent pool and API stream observers all talk through one
``InMemoryEventBus``.  Delivery is synchronous with ``publish``: handlers run
one after another in subscription order, so by the time ``publish`` returns
every observer has seen the event.  A handler that raises is logged and
counted; the remaining handlers still run.
"""

import inspect
import logging
import uuid
from typing import Any, Callable, Dict, Optional

from taskgrid.interfaces.event_bus import EventType, Subscription

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Any]


class InMemoryEventBus:
    """Satisfies ``taskgrid.interfaces.IEventBus`` structurally."""

    def __init__(self) -> None:
        self._handlers: Dict[EventType, Dict[str, Handler]] = {}
        # subscription id -> event type, for unsubscribe without a scan
        self._index: Dict[str, EventType] = {}
        self._published: Dict[EventType, int] = {}
        self._handler_errors = 0

    async def publish(
        self,
        event_type: EventType,
        data: Dict[str, Any],
        source: Optional[str] = None,
    ) -> None:
        payload = {**data, "_source": source} if source else data
        self._published[event_type] = self._published.get(event_type, 0) + 1

        # Snapshot: handlers may unsubscribe themselves mid-delivery
        for handler in list(self._handlers.get(event_type, {}).values()):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self._handler_errors += 1
                logger.exception("Event handler failed for %s", event_type.value)

    async def subscribe(self, event_type: EventType, handler: Handler) -> Subscription:
        sub_id = uuid.uuid4().hex[:12]
        self._handlers.setdefault(event_type, {})[sub_id] = handler
        self._index[sub_id] = event_type
        logger.debug("Subscribed %s to %s", sub_id, event_type.value)
        return Subscription(subscription_id=sub_id, event_type=event_type, bus=self)

    async def unsubscribe(self, subscription_id: str) -> None:
        event_type = self._index.pop(subscription_id, None)
        if event_type is None:
            return
        handlers = self._handlers.get(event_type, {})
        handlers.pop(subscription_id, None)
        if not handlers:
            self._handlers.pop(event_type, None)

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, {}))

    @property
    def handler_errors(self) -> int:
        return self._handler_errors

    @property
    def stats(self) -> Dict[str, int]:
        """Published event counts keyed by event name."""
        return {et.value: n for et, n in self._published.items()}
