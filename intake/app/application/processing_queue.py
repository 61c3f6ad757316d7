"""
Bounded-concurrency processing queue.

Lifecycle of an item:
  pending -> uploading -> analyzing -> extracting -> complete
  On processor failure: back to pending with retries + 1 and a backoff delay,
  or error once the retry budget is spent.

Dispatch:
  A single dispatch loop (one asyncio task at a time) takes eligible pending
  items in insertion order while fewer than max_concurrent items are active
  and the queue is not paused. Each dispatched item is processed in its own
  task; the loop yields between dispatches and never awaits an item.
  The loop is triggered by add, retry, resume, every settlement, and a wake-up
  timer armed for the earliest backed-off item.

State:
  All item state lives in an immutable ItemStore that is replaced through
  _commit(). Active counts and stats are recomputed from the store; there is
  no separate counter to drift.

Settlement after removal:
  Each dispatch carries a lease. A settlement is applied only while the item
  still exists with the same lease, so a late result for a removed (or removed
  and re-added) item changes nothing.
"""
from __future__ import annotations

import asyncio
import itertools
from functools import partial
from typing import Any, Callable

from loguru import logger

from intake.app.constants import ItemStatus
from intake.app.core import SERVICE_NAME
from intake.app.domain.item_store import ItemStore
from intake.app.domain.models import QueueStats, WorkItem
from intake.app.domain.retry_policy import RetryPolicy
from intake.app.ports.processor import (
    ItemCompleteCallback,
    ItemErrorCallback,
    Processor,
    QueueObserver,
)

DEFAULT_MAX_CONCURRENT = 3
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_DISPATCH_INTERVAL_SECONDS = 0.1

RETRYABLE_STATUSES = frozenset({ItemStatus.PENDING, ItemStatus.ERROR})


def _log(event: str, **kwargs: Any) -> None:
    logger.bind(service_name=SERVICE_NAME, event=event, **kwargs).info("")


class ProcessingQueue:
    """Supervises an async processor: caps concurrency, retries, pause/resume, removal."""

    def __init__(
        self,
        processor: Processor,
        *,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_retry_delay: float | None = None,
        dispatch_interval: float = DEFAULT_DISPATCH_INTERVAL_SECONDS,
        cancel_on_remove: bool = False,
        on_item_complete: ItemCompleteCallback | None = None,
        on_item_error: ItemErrorCallback | None = None,
        on_change: QueueObserver | None = None,
        name: str = "queue",
    ) -> None:
        if isinstance(max_concurrent, bool) or int(max_concurrent) != max_concurrent or max_concurrent < 1:
            raise ValueError("max_concurrent must be a positive integer")
        if dispatch_interval < 0:
            raise ValueError("dispatch_interval must be >= 0")
        self._processor = processor
        self._max_concurrent = int(max_concurrent)
        self._retry_policy = RetryPolicy(
            max_retries=max_retries,
            base_delay=retry_delay,
            max_delay=max_retry_delay,
        )
        self._dispatch_interval = dispatch_interval
        self._cancel_on_remove = cancel_on_remove
        self._on_item_complete = on_item_complete
        self._on_item_error = on_item_error
        self._on_change = on_change
        self._name = name

        self._store = ItemStore()
        self._paused = False
        self._closed = False
        self._loop_task: asyncio.Task[None] | None = None
        self._inflight: dict[int, asyncio.Task[None]] = {}
        self._wakeup: asyncio.TimerHandle | None = None
        self._leases = itertools.count(1)
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def name(self) -> str:
        return self._name

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def items(self) -> tuple[WorkItem, ...]:
        return self._store.all()

    @property
    def stats(self) -> QueueStats:
        return QueueStats.from_items(self._store.all())

    def get_item_status(self, item_id: str) -> WorkItem | None:
        return self._store.find(item_id)

    # ---- caller controls ----

    def add_to_queue(self, item_id: str, payload: Any) -> bool:
        """Enqueue a new item. Returns False (and changes nothing) for a duplicate id."""
        if self._closed:
            raise RuntimeError(f"queue {self._name!r} is closed")
        if item_id in self._store:
            _log("item_rejected", queue=self._name, item_id=item_id, reason="duplicate_id")
            return False
        self._commit(self._store.add(WorkItem(id=item_id, payload=payload)))
        _log("item_enqueued", queue=self._name, item_id=item_id)
        self._schedule_dispatch()
        return True

    def remove_from_queue(self, item_id: str) -> bool:
        item = self._store.find(item_id)
        if item is None:
            return False
        self._commit(self._store.remove(item_id))
        _log("item_removed", queue=self._name, item_id=item_id, status=item.status.value)
        if self._cancel_on_remove and item.lease is not None:
            task = self._inflight.get(item.lease)
            if task is not None:
                task.cancel()
        self._schedule_dispatch()
        return True

    def retry_item(self, item_id: str) -> bool:
        """Put a failed (or backed-off) item back at the front of eligibility with retries reset."""
        item = self._store.find(item_id)
        if item is None or item.status not in RETRYABLE_STATUSES:
            _log(
                "retry_rejected",
                queue=self._name,
                item_id=item_id,
                status=item.status.value if item is not None else None,
            )
            return False
        self._commit(
            self._store.update(item_id, status=ItemStatus.PENDING, retries=0, eligible_at=0.0)
        )
        _log("item_retry_requested", queue=self._name, item_id=item_id)
        self._schedule_dispatch()
        return True

    def pause(self) -> None:
        """Stop dispatching new items. Active items run to settlement."""
        self._paused = True
        _log("queue_paused", queue=self._name, active=self._store.active_count())

    def resume(self) -> None:
        self._paused = False
        _log("queue_resumed", queue=self._name)
        self._schedule_dispatch()

    def clear_queue(self) -> None:
        removed = len(self._store)
        self._commit(ItemStore())
        self._cancel_wakeup()
        if self._cancel_on_remove:
            for task in list(self._inflight.values()):
                task.cancel()
        _log("queue_cleared", queue=self._name, removed=removed)

    async def join(self) -> None:
        """Wait until no item is pending or active. Returns at once on a closed queue."""
        if self._closed:
            return
        self._schedule_dispatch()
        await self._drained.wait()

    async def close(self) -> None:
        """Stop dispatching and cancel everything still in flight.

        Items whose processing was interrupted go back to pending, so the final
        snapshot has no active items.
        """
        self._closed = True
        self._cancel_wakeup()
        tasks = list(self._inflight.values())
        if self._loop_task is not None and not self._loop_task.done():
            tasks.append(self._loop_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        store = self._store
        for item in store.all():
            if item.is_active:
                store = store.update(item.id, status=ItemStatus.PENDING, lease=None)
        self._commit(store)
        self._drained.set()
        _log("queue_closed", queue=self._name, cancelled=len(tasks))

    # ---- dispatch ----

    def _schedule_dispatch(self) -> None:
        if self._paused or self._closed:
            return
        if self._loop_task is not None and not self._loop_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Items added before the event loop runs are dispatched by join().
            return
        self._loop_task = loop.create_task(self._dispatch_loop())

    async def _dispatch_loop(self) -> None:
        loop = asyncio.get_running_loop()
        dispatched = 0
        _log("dispatch_loop_started", queue=self._name)
        try:
            while not self._paused and not self._closed:
                store = self._store
                if store.active_count() >= self._max_concurrent:
                    break
                item = store.next_eligible(loop.time())
                if item is None:
                    wake_at = store.next_eligible_at()
                    if wake_at is not None:
                        self._arm_wakeup(wake_at)
                    break
                self._dispatch(item)
                dispatched += 1
                await asyncio.sleep(self._dispatch_interval)
        finally:
            _log("dispatch_loop_stopped", queue=self._name, dispatched=dispatched)

    def _dispatch(self, item: WorkItem) -> None:
        lease = next(self._leases)
        self._commit(self._store.update(item.id, status=ItemStatus.UPLOADING, lease=lease))
        _log("item_dispatched", queue=self._name, item_id=item.id, retries=item.retries, lease=lease)
        task = asyncio.get_running_loop().create_task(self._process(item.id, item.payload, lease))
        self._inflight[lease] = task
        task.add_done_callback(partial(self._on_task_done, lease))

    def _on_task_done(self, lease: int, task: asyncio.Task[None]) -> None:
        self._inflight.pop(lease, None)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error(
                "queue {} processing task failed", self._name
            )
        self._schedule_dispatch()

    def _arm_wakeup(self, when: float) -> None:
        if self._wakeup is not None and not self._wakeup.cancelled() and self._wakeup.when() <= when:
            return
        self._cancel_wakeup()
        loop = asyncio.get_running_loop()
        self._wakeup = loop.call_at(when, self._on_wakeup)

    def _on_wakeup(self) -> None:
        self._wakeup = None
        self._schedule_dispatch()

    def _cancel_wakeup(self) -> None:
        if self._wakeup is not None:
            self._wakeup.cancel()
            self._wakeup = None

    # ---- per-item processing ----

    async def _process(self, item_id: str, payload: Any, lease: int) -> None:
        self._advance(item_id, lease, ItemStatus.ANALYZING)
        self._advance(item_id, lease, ItemStatus.EXTRACTING)
        try:
            result = await self._processor(payload)
        except Exception as exc:
            self._settle_failure(item_id, lease, exc)
        else:
            self._settle_success(item_id, lease, result)

    def _owned(self, item_id: str, lease: int) -> WorkItem | None:
        item = self._store.find(item_id)
        if item is None or item.lease != lease or not item.is_active:
            return None
        return item

    def _advance(self, item_id: str, lease: int, status: ItemStatus) -> None:
        if self._owned(item_id, lease) is not None:
            self._commit(self._store.update(item_id, status=status))

    def _settle_success(self, item_id: str, lease: int, result: Any) -> None:
        if self._owned(item_id, lease) is None:
            _log("item_settled_after_removal", queue=self._name, item_id=item_id, outcome="complete")
            return
        self._commit(self._store.update(item_id, status=ItemStatus.COMPLETE, lease=None))
        _log("item_completed", queue=self._name, item_id=item_id)
        self._notify(self._on_item_complete, item_id, result)

    def _settle_failure(self, item_id: str, lease: int, exc: Exception) -> None:
        item = self._owned(item_id, lease)
        error_text = str(exc) or type(exc).__name__
        if item is None:
            _log(
                "item_settled_after_removal",
                queue=self._name,
                item_id=item_id,
                outcome="error",
                error=error_text,
            )
            return

        decision = self._retry_policy.decide(item.retries)
        if decision.should_retry:
            eligible_at = asyncio.get_running_loop().time() + decision.delay
            self._commit(
                self._store.update(
                    item_id,
                    status=ItemStatus.PENDING,
                    retries=decision.retries,
                    lease=None,
                    eligible_at=eligible_at,
                )
            )
            _log(
                "item_retry_scheduled",
                queue=self._name,
                item_id=item_id,
                retries=decision.retries,
                delay=decision.delay,
                error=error_text,
            )
            return

        self._commit(
            self._store.update(item_id, status=ItemStatus.ERROR, lease=None, error=error_text)
        )
        _log(
            "item_failed",
            queue=self._name,
            item_id=item_id,
            retries=item.retries,
            error=error_text,
        )
        self._notify(self._on_item_error, item_id, exc)

    # ---- state ----

    def _commit(self, store: ItemStore) -> None:
        if store is self._store:
            return
        self._store = store
        if store.is_drained():
            self._drained.set()
        else:
            self._drained.clear()
        if self._on_change is not None:
            try:
                self._on_change(store.all())
            except Exception as e:
                logger.exception("queue {} observer failed: {}", self._name, e)

    def _notify(self, callback: Callable[[str, Any], None] | None, item_id: str, value: Any) -> None:
        if callback is None:
            return
        try:
            callback(item_id, value)
        except Exception as e:
            logger.exception("queue {} callback failed for {}: {}", self._name, item_id, e)
