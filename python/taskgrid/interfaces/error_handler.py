"""Interface for reporting errors the scheduler recovers from."""

from typing import Protocol


class IErrorHandler(Protocol):
    """Receives errors that were handled rather than re-raised.

    Used for dispatch failures: the task is requeued and the error is
    surfaced here instead of propagating out of the reconciliation loop.
    """

    async def handle_error(self, error: Exception, context: str) -> None:
        ...
