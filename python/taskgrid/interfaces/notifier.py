"""Interface for operator-facing notifications."""

from typing import Protocol


class INotifier(Protocol):
    """Fire-and-forget notification sink.

    The scheduler never calls it for an empty, fully-satisfied queue.
    """

    async def show_information(self, message: str) -> None:
        ...

    async def show_warning(self, message: str) -> None:
        ...

    async def show_error(self, message: str) -> None:
        ...


class NullNotifier:
    """Notifier that discards everything."""

    async def show_information(self, message: str) -> None:
        return None

    async def show_warning(self, message: str) -> None:
        return None

    async def show_error(self, message: str) -> None:
        return None
