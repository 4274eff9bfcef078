from __future__ import annotations

from threading import Event

from .errors import CycleCancelled


class CancellationToken:
    """Cooperative cancellation consulted at safe checkpoints inside a cycle."""

    def __init__(self) -> None:
        self._event = Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def checkpoint(self, name: str) -> None:
        if self._event.is_set():
            raise CycleCancelled(name)
