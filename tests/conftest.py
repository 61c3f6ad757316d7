from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest
from fastapi import FastAPI

from intake.app.constants import QUEUE_KINDS, ItemStatus
from intake.app.domain.item_store import ItemStore
from intake.app.domain.models import QueueStats, WorkItem
from intake.app.routers.health import health_router
from intake.app.routers.queues import queue_router


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)


class ScriptedProcessor:
    """Processor that fails the first `failures[payload]` calls for a payload, then succeeds.

    Tracks overlapping calls so tests can assert the concurrency cap and that no
    payload is processed by two calls at once.
    """

    def __init__(self, failures: dict[Any, float] | None = None, *, delay: float = 0.01) -> None:
        self.failures: dict[Any, float] = dict(failures or {})
        self.delay = delay
        self.calls: list[Any] = []
        self.call_times: list[tuple[Any, float]] = []
        self.in_flight: set[Any] = set()
        self.max_in_flight = 0
        self.duplicate_dispatch = False

    async def __call__(self, payload: Any) -> str:
        self.calls.append(payload)
        self.call_times.append((payload, asyncio.get_running_loop().time()))
        if payload in self.in_flight:
            self.duplicate_dispatch = True
        self.in_flight.add(payload)
        self.max_in_flight = max(self.max_in_flight, len(self.in_flight))
        try:
            await asyncio.sleep(self.delay)
            remaining = self.failures.get(payload, 0)
            if remaining > 0:
                self.failures[payload] = remaining - 1
                raise RuntimeError(f"{payload} failed")
            return f"result-{payload}"
        finally:
            self.in_flight.discard(payload)


class GatedProcessor:
    """Processor whose calls block until the test releases them by payload."""

    def __init__(self) -> None:
        self.started: list[Any] = []
        self.cancelled: list[Any] = []
        self._gates: dict[Any, asyncio.Event] = {}
        self._failures: dict[Any, Exception] = {}

    def _gate(self, payload: Any) -> asyncio.Event:
        return self._gates.setdefault(payload, asyncio.Event())

    def release(self, payload: Any, *, error: Exception | None = None) -> None:
        if error is not None:
            self._failures[payload] = error
        self._gate(payload).set()

    async def __call__(self, payload: Any) -> str:
        self.started.append(payload)
        try:
            await self._gate(payload).wait()
        except asyncio.CancelledError:
            self.cancelled.append(payload)
            raise
        error = self._failures.pop(payload, None)
        if error is not None:
            self._gates.pop(payload, None)
            raise error
        return f"result-{payload}"


class SnapshotRecorder:
    """Queue observer that keeps every store snapshot."""

    def __init__(self) -> None:
        self.snapshots: list[tuple[WorkItem, ...]] = []

    def __call__(self, items: tuple[WorkItem, ...]) -> None:
        self.snapshots.append(items)

    def max_active(self) -> int:
        return max((sum(1 for item in snap if item.is_active) for snap in self.snapshots), default=0)

    def statuses_of(self, item_id: str) -> list[ItemStatus]:
        """Distinct consecutive statuses an item went through."""
        seen: list[ItemStatus] = []
        for snap in self.snapshots:
            for item in snap:
                if item.id == item_id and (not seen or seen[-1] != item.status):
                    seen.append(item.status)
        return seen


class CallbackRecorder:
    def __init__(self) -> None:
        self.completed: list[tuple[str, Any]] = []
        self.failed: list[tuple[str, Exception]] = []

    def on_complete(self, item_id: str, result: Any) -> None:
        self.completed.append((item_id, result))

    def on_error(self, item_id: str, error: Exception) -> None:
        self.failed.append((item_id, error))


class FakeQueue:
    """Implements the ProcessingQueue surface the routers use, without dispatching."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.store = ItemStore()
        self.is_paused = False
        self.cleared = False

    @property
    def items(self) -> tuple[WorkItem, ...]:
        return self.store.all()

    @property
    def stats(self) -> QueueStats:
        return QueueStats.from_items(self.store.all())

    def add_to_queue(self, item_id: str, payload: Any) -> bool:
        if item_id in self.store:
            return False
        self.store = self.store.add(WorkItem(id=item_id, payload=payload))
        return True

    def get_item_status(self, item_id: str) -> WorkItem | None:
        return self.store.find(item_id)

    def remove_from_queue(self, item_id: str) -> bool:
        found = item_id in self.store
        self.store = self.store.remove(item_id)
        return found

    def retry_item(self, item_id: str) -> bool:
        item = self.store.find(item_id)
        if item is None or item.status not in (ItemStatus.ERROR, ItemStatus.PENDING):
            return False
        self.store = self.store.update(item_id, status=ItemStatus.PENDING, retries=0)
        return True

    def set_item(self, item: WorkItem) -> None:
        self.store = ItemStore(tuple(i for i in self.store.all() if i.id != item.id) + (item,))

    def pause(self) -> None:
        self.is_paused = True

    def resume(self) -> None:
        self.is_paused = False

    def clear_queue(self) -> None:
        self.store = ItemStore()
        self.cleared = True


class FakeDependencies:
    """Implements the WorkerDependencies surface the routers use."""

    def __init__(self, *, ready: bool = True) -> None:
        self.ready = ready
        self._queues = {kind: FakeQueue(kind) for kind in QUEUE_KINDS}
        self.results: dict[tuple[str, str], Any] = {}
        self.match_outcome: Any = {"confirmed": [], "discrepancies": [], "unmatchedReceipts": [], "unmatchedStatements": []}

    @property
    def queues(self) -> dict[str, FakeQueue]:
        return dict(self._queues)

    def queue(self, kind: str) -> FakeQueue:
        try:
            return self._queues[kind]
        except KeyError:
            raise KeyError(f"unknown queue kind: {kind}") from None

    def result(self, kind: str, item_id: str) -> Any | None:
        return self.results.get((kind, item_id))

    def forget(self, kind: str, item_id: str) -> None:
        self.results.pop((kind, item_id), None)

    async def match_completed(self) -> dict[str, Any]:
        """Returns `match_outcome`, or raises it when it is an exception."""
        if isinstance(self.match_outcome, Exception):
            raise self.match_outcome
        return self.match_outcome

    def combined_stats(self) -> QueueStats:
        total = QueueStats()
        for queue in self._queues.values():
            total = total + queue.stats
        return total

    def pause_all(self) -> None:
        for queue in self._queues.values():
            queue.pause()

    def resume_all(self) -> None:
        for queue in self._queues.values():
            queue.resume()

    def clear_all(self) -> None:
        for queue in self._queues.values():
            queue.clear_queue()
        self.results.clear()


@pytest.fixture()
def test_app() -> FastAPI:
    app = FastAPI()
    app.state.dependencies = FakeDependencies()
    app.include_router(health_router)
    app.include_router(queue_router)
    return app
