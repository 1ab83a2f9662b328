"""Operator notices raised by the scheduler.

``NotificationService`` implements ``taskgrid.interfaces.INotifier``.  Every
``show_*`` call becomes a stored ``Notification`` that the HTTP API lists and
marks read.  Storage is bounded: past ``max_stored`` the oldest notice goes.
"""

import logging
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

SCHEDULER_SOURCE = "scheduler"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# Log level used when echoing a notice to the service log
_LOG_LEVELS = {
    Severity.INFO: logging.DEBUG,
    Severity.WARNING: logging.INFO,
    Severity.ERROR: logging.WARNING,
}


@dataclass
class Notification:
    id: str
    title: str
    body: str
    severity: Severity = Severity.INFO
    source: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    read: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "severity": self.severity.value,
            "source": self.source,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
            "read": self.read,
        }


class NotificationService:
    """Bounded, id-indexed store of operator notices."""

    def __init__(self, max_stored: int = 1000, title: str = "Scheduler"):
        if max_stored < 1:
            raise ValueError("max_stored must be at least 1")
        self._items: "OrderedDict[str, Notification]" = OrderedDict()
        self._max_stored = max_stored
        self._title = title
        self._sent: Dict[Severity, int] = {s: 0 for s in Severity}
        self._evicted = 0

    # ── INotifier ────────────────────────────────────────────────────

    async def show_information(self, message: str) -> None:
        await self._notify(message, Severity.INFO)

    async def show_warning(self, message: str) -> None:
        await self._notify(message, Severity.WARNING)

    async def show_error(self, message: str) -> None:
        await self._notify(message, Severity.ERROR)

    async def _notify(self, message: str, severity: Severity) -> None:
        await self.send(self.create_notification(self._title, message, severity, source=SCHEDULER_SOURCE))

    # ── Store ────────────────────────────────────────────────────────

    async def send(self, notification: Notification) -> None:
        self._items[notification.id] = notification
        self._sent[notification.severity] += 1
        logger.log(
            _LOG_LEVELS[notification.severity],
            "Notification [%s] %s",
            notification.severity.value,
            notification.body,
        )
        while len(self._items) > self._max_stored:
            self._items.popitem(last=False)
            self._evicted += 1

    async def list(
        self,
        severity: Optional[Severity] = None,
        read: Optional[bool] = None,
        limit: int = 50,
    ) -> List[Notification]:
        """Newest first, optionally filtered by severity and read flag."""
        results: List[Notification] = []
        for n in reversed(self._items.values()):
            if len(results) >= limit:
                break
            if severity is not None and n.severity != severity:
                continue
            if read is not None and n.read != read:
                continue
            results.append(n)
        return results

    async def get(self, notification_id: str) -> Optional[Notification]:
        return self._items.get(notification_id)

    async def mark_read(self, notification_id: str) -> bool:
        """Returns False when the id is unknown (or already evicted)."""
        notification = self._items.get(notification_id)
        if notification is None:
            return False
        notification.read = True
        return True

    async def mark_all_read(self) -> int:
        changed = 0
        for n in self._items.values():
            if not n.read:
                n.read = True
                changed += 1
        return changed

    async def count(self) -> int:
        return len(self._items)

    async def count_unread(self) -> int:
        return sum(1 for n in self._items.values() if not n.read)

    async def clear(self) -> None:
        self._items.clear()

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "stored": len(self._items),
            "max_stored": self._max_stored,
            "evicted": self._evicted,
            "sent": {s.value: count for s, count in self._sent.items()},
        }

    @staticmethod
    def create_notification(
        title: str,
        body: str,
        severity: Severity = Severity.INFO,
        source: str = "",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        return Notification(
            id=uuid.uuid4().hex,
            title=title,
            body=body,
            severity=Severity(severity),
            source=source,
            metadata=dict(metadata or {}),
        )
