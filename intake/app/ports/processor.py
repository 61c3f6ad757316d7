"""Port: the external processor a queue supervises, and the consumer callbacks.

The queue only awaits the processor; what it computes is up to the caller.
A processor signals failure by raising; ``str(exc)`` is the message recorded
on the item.
"""
from __future__ import annotations

from typing import Any, Protocol

from intake.app.domain.models import WorkItem


class Processor(Protocol):
    async def __call__(self, payload: Any) -> Any: ...


class ItemCompleteCallback(Protocol):
    def __call__(self, item_id: str, result: Any) -> None: ...


class ItemErrorCallback(Protocol):
    def __call__(self, item_id: str, error: Exception) -> None: ...


class QueueObserver(Protocol):
    """Called with the new snapshot after every store mutation."""

    def __call__(self, items: tuple[WorkItem, ...]) -> None: ...
