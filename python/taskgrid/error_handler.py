"""Default error reporting collaborator.

Errors the scheduler recovers from (dispatch rejections, agent exceptions)
are turned into ``ErrorContext`` records, logged, and kept in a bounded
in-memory list served by ``GET /api/errors``.
"""

import logging
from collections import deque
from typing import Any, Deque, Dict, List

from taskgrid.exceptions_unified import ErrorContext, ErrorSeverity, create_error_context

logger = logging.getLogger(__name__)


class LoggingErrorHandler:
    """Satisfies ``IErrorHandler`` by logging and remembering recent errors."""

    def __init__(self, max_recent: int = 100) -> None:
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=max_recent)
        self._count = 0

    async def handle_error(self, error: Exception, context: str) -> None:
        ctx: ErrorContext = create_error_context(error)
        self._count += 1
        level = logging.WARNING if ctx.severity == ErrorSeverity.WARNING else logging.ERROR
        logger.log(
            level,
            "%s failed: %s",
            context,
            ctx.message,
            extra={"error_id": ctx.error_id, "category": ctx.category.value},
        )
        entry = ctx.to_api_response()
        entry["context"] = context
        self._recent.append(entry)

    @property
    def recent(self) -> List[Dict[str, Any]]:
        """Most recent handled errors, oldest first."""
        return list(self._recent)

    @property
    def error_count(self) -> int:
        return self._count

    def clear(self) -> None:
        self._recent.clear()
