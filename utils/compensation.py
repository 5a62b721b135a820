"""Compensating actions for multi-step persistence (upload, then record write).

Each step that leaves an external artifact behind registers its undo. On
failure the undos run newest-first; a failing undo is logged and the rest
still run. The original error is always re-raised by the caller.
"""
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)


class Compensations:
    def __init__(self) -> None:
        self._actions: list[tuple[str, Callable[[], Awaitable[None] | None]]] = []

    def add(self, description: str, action: Callable[[], Awaitable[None] | None]) -> None:
        self._actions.append((description, action))

    def __len__(self) -> int:
        return len(self._actions)

    async def run(self) -> list[str]:
        """Execute all registered actions in reverse order; returns the ones that failed."""
        failed: list[str] = []
        for description, action in reversed(self._actions):
            try:
                result = action()
                if result is not None:
                    await result
                logger.info("Compensated: %s", description)
            except Exception as exc:
                logger.error("Compensation failed (%s): %s", description, exc)
                failed.append(description)
        self._actions.clear()
        return failed

    def clear(self) -> None:
        self._actions.clear()
