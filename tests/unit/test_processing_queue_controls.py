"""Unit tests for ProcessingQueue pause/resume, removal, clearing and explicit retry."""
from __future__ import annotations

import asyncio

import pytest

from intake.app.application.processing_queue import ProcessingQueue
from intake.app.constants import ItemStatus
from tests.conftest import CallbackRecorder, GatedProcessor, ScriptedProcessor, SnapshotRecorder, wait_until


def test_pause_lets_active_items_finish_and_holds_the_rest():
    async def scenario():
        processor = GatedProcessor()
        queue = ProcessingQueue(processor, max_concurrent=2, dispatch_interval=0)
        for key in ("A", "B", "C", "D"):
            queue.add_to_queue(key, key)
        await wait_until(lambda: queue.stats.active == 2)

        queue.pause()
        assert queue.is_paused is True
        processor.release("A")
        processor.release("B")
        await wait_until(lambda: queue.stats.complete == 2)
        await asyncio.sleep(0.05)

        paused_stats = queue.stats
        started_while_paused = list(processor.started)

        processor.release("C")
        processor.release("D")
        queue.resume()
        await queue.join()
        return queue, paused_stats, started_while_paused

    queue, paused_stats, started_while_paused = asyncio.run(scenario())

    assert paused_stats.active == 0
    assert paused_stats.pending == 2
    assert started_while_paused == ["A", "B"]
    assert queue.is_paused is False
    assert queue.stats.complete == 4


def test_pause_before_any_dispatch_keeps_everything_pending():
    async def scenario():
        processor = ScriptedProcessor()
        queue = ProcessingQueue(processor, dispatch_interval=0)
        queue.pause()
        queue.add_to_queue("A", "A")
        await asyncio.sleep(0.05)
        pending = queue.stats.pending
        queue.resume()
        await queue.join()
        return queue, pending

    queue, pending = asyncio.run(scenario())

    assert pending == 1
    assert queue.stats.complete == 1


def test_duplicate_id_is_rejected_without_changing_the_store():
    async def scenario():
        recorder = SnapshotRecorder()
        processor = ScriptedProcessor()
        queue = ProcessingQueue(processor, dispatch_interval=0, on_change=recorder)
        queue.pause()
        assert queue.add_to_queue("A", "first") is True
        snapshots_before = len(recorder.snapshots)
        assert queue.add_to_queue("A", "second") is False
        return queue, recorder, snapshots_before

    queue, recorder, snapshots_before = asyncio.run(scenario())

    assert len(queue.items) == 1
    assert queue.get_item_status("A").payload == "first"
    assert len(recorder.snapshots) == snapshots_before


def test_removing_unknown_id_is_a_noop():
    async def scenario():
        recorder = SnapshotRecorder()
        queue = ProcessingQueue(ScriptedProcessor(), on_change=recorder)
        return queue.remove_from_queue("missing"), recorder

    removed, recorder = asyncio.run(scenario())

    assert removed is False
    assert recorder.snapshots == []


def test_settlement_after_removal_changes_nothing():
    async def scenario():
        processor = GatedProcessor()
        callbacks = CallbackRecorder()
        recorder = SnapshotRecorder()
        queue = ProcessingQueue(
            processor,
            dispatch_interval=0,
            on_item_complete=callbacks.on_complete,
            on_item_error=callbacks.on_error,
            on_change=recorder,
        )
        queue.add_to_queue("A", "A")
        await wait_until(lambda: queue.stats.active == 1)

        assert queue.remove_from_queue("A") is True
        snapshots_after_removal = len(recorder.snapshots)
        processor.release("A")
        await asyncio.sleep(0.02)
        return queue, callbacks, recorder, snapshots_after_removal

    queue, callbacks, recorder, snapshots_after_removal = asyncio.run(scenario())

    assert queue.items == ()
    assert callbacks.completed == []
    assert callbacks.failed == []
    assert len(recorder.snapshots) == snapshots_after_removal


def test_failure_after_removal_does_not_retry():
    async def scenario():
        processor = GatedProcessor()
        queue = ProcessingQueue(processor, retry_delay=0, dispatch_interval=0)
        queue.add_to_queue("A", "A")
        await wait_until(lambda: queue.stats.active == 1)
        queue.remove_from_queue("A")
        processor.release("A", error=RuntimeError("late failure"))
        await asyncio.sleep(0.02)
        return queue, processor

    queue, processor = asyncio.run(scenario())

    assert queue.items == ()
    assert processor.started == ["A"]


def test_late_result_for_removed_item_does_not_touch_readded_item():
    async def scenario():
        processor = GatedProcessor()
        callbacks = CallbackRecorder()
        queue = ProcessingQueue(
            processor,
            max_concurrent=1,
            dispatch_interval=0,
            on_item_complete=callbacks.on_complete,
        )
        queue.add_to_queue("A", "first")
        await wait_until(lambda: processor.started == ["first"])
        queue.remove_from_queue("A")
        queue.add_to_queue("A", "second")
        await wait_until(lambda: processor.started == ["first", "second"])

        processor.release("first")
        await asyncio.sleep(0.02)
        status_after_stale_result = queue.get_item_status("A").status

        processor.release("second")
        await queue.join()
        return queue, callbacks, status_after_stale_result

    queue, callbacks, status_after_stale_result = asyncio.run(scenario())

    assert status_after_stale_result == ItemStatus.EXTRACTING
    assert callbacks.completed == [("A", "result-second")]
    assert queue.get_item_status("A").status == ItemStatus.COMPLETE


def test_cancel_on_remove_cancels_the_in_flight_call():
    async def scenario():
        processor = GatedProcessor()
        queue = ProcessingQueue(processor, dispatch_interval=0, cancel_on_remove=True)
        queue.add_to_queue("A", "A")
        await wait_until(lambda: processor.started == ["A"])
        queue.remove_from_queue("A")
        await wait_until(lambda: processor.cancelled == ["A"])
        return queue

    queue = asyncio.run(scenario())

    assert queue.items == ()


def test_removing_active_item_frees_its_slot():
    async def scenario():
        processor = GatedProcessor()
        queue = ProcessingQueue(processor, max_concurrent=1, dispatch_interval=0)
        queue.add_to_queue("A", "A")
        queue.add_to_queue("B", "B")
        await wait_until(lambda: processor.started == ["A"])
        queue.remove_from_queue("A")
        await wait_until(lambda: processor.started == ["A", "B"])
        processor.release("B")
        processor.release("A")
        await queue.join()
        return queue

    queue = asyncio.run(scenario())

    assert [item.id for item in queue.items] == ["B"]
    assert queue.stats.complete == 1


def test_clear_queue_empties_the_store_and_ignores_in_flight_results():
    async def scenario():
        processor = GatedProcessor()
        callbacks = CallbackRecorder()
        queue = ProcessingQueue(
            processor,
            max_concurrent=2,
            dispatch_interval=0,
            on_item_complete=callbacks.on_complete,
        )
        for key in ("A", "B", "C"):
            queue.add_to_queue(key, key)
        await wait_until(lambda: queue.stats.active == 2)

        queue.clear_queue()
        cleared_stats = queue.stats
        processor.release("A")
        processor.release("B")
        await asyncio.sleep(0.02)

        queue.add_to_queue("D", "D")
        processor.release("D")
        await queue.join()
        return queue, callbacks, cleared_stats, processor

    queue, callbacks, cleared_stats, processor = asyncio.run(scenario())

    assert cleared_stats.total == 0
    assert cleared_stats.active == 0
    assert callbacks.completed == [("D", "result-D")]
    assert "C" not in processor.started
    assert [item.id for item in queue.items] == ["D"]


def test_clear_queue_drops_items_waiting_for_backoff():
    async def scenario():
        processor = ScriptedProcessor({"A": 1}, delay=0)
        queue = ProcessingQueue(processor, max_retries=1, retry_delay=0.05, dispatch_interval=0)
        queue.add_to_queue("A", "A")
        await wait_until(lambda: queue.get_item_status("A").retries == 1)
        queue.clear_queue()
        await asyncio.sleep(0.1)
        return queue, processor

    queue, processor = asyncio.run(scenario())

    assert queue.items == ()
    assert processor.calls == ["A"]


def test_retry_item_resets_a_failed_item():
    async def scenario():
        processor = ScriptedProcessor({"A": 1})
        callbacks = CallbackRecorder()
        queue = ProcessingQueue(
            processor,
            max_retries=0,
            dispatch_interval=0,
            on_item_complete=callbacks.on_complete,
            on_item_error=callbacks.on_error,
        )
        queue.add_to_queue("A", "A")
        await queue.join()
        failed = queue.get_item_status("A")

        assert queue.retry_item("A") is True
        await queue.join()
        return queue, failed, callbacks

    queue, failed, callbacks = asyncio.run(scenario())

    assert failed.status == ItemStatus.ERROR
    assert failed.error == "A failed"
    item = queue.get_item_status("A")
    assert item.status == ItemStatus.COMPLETE
    assert item.retries == 0
    assert item.error is None
    assert len(callbacks.failed) == 1
    assert callbacks.completed == [("A", "result-A")]


def test_retry_item_skips_the_remaining_backoff():
    async def scenario():
        processor = ScriptedProcessor({"A": 1}, delay=0)
        queue = ProcessingQueue(processor, max_retries=1, retry_delay=60, dispatch_interval=0)
        queue.add_to_queue("A", "A")
        await wait_until(lambda: queue.get_item_status("A").retries == 1)
        assert queue.retry_item("A") is True
        await asyncio.wait_for(queue.join(), timeout=1)
        return queue

    queue = asyncio.run(scenario())

    assert queue.get_item_status("A").status == ItemStatus.COMPLETE
    assert queue.get_item_status("A").retries == 0


def test_retry_item_rejects_unknown_active_and_complete_items():
    async def scenario():
        processor = GatedProcessor()
        queue = ProcessingQueue(processor, dispatch_interval=0)
        queue.add_to_queue("A", "A")
        await wait_until(lambda: queue.stats.active == 1)
        active_result = queue.retry_item("A")
        processor.release("A")
        await queue.join()
        return queue, active_result, processor

    queue, active_result, processor = asyncio.run(scenario())

    assert active_result is False
    assert queue.retry_item("A") is False
    assert queue.retry_item("missing") is False
    assert processor.started == ["A"]


def test_close_cancels_in_flight_work_and_rejects_new_items():
    async def scenario():
        processor = GatedProcessor()
        queue = ProcessingQueue(processor, dispatch_interval=0)
        queue.add_to_queue("A", "A")
        await wait_until(lambda: processor.started == ["A"])
        await queue.close()
        return queue, processor

    queue, processor = asyncio.run(scenario())

    assert processor.cancelled == ["A"]
    with pytest.raises(RuntimeError, match="closed"):
        queue.add_to_queue("B", "B")


def test_close_returns_interrupted_items_to_pending():
    async def scenario():
        processor = GatedProcessor()
        queue = ProcessingQueue(processor, max_concurrent=2, dispatch_interval=0)
        for key in ("A", "B", "C"):
            queue.add_to_queue(key, key)
        await wait_until(lambda: queue.stats.active == 2)
        await queue.close()
        return queue

    queue = asyncio.run(scenario())

    assert queue.stats.to_dict() == {"total": 3, "pending": 3, "active": 0, "complete": 0, "error": 0}
    assert all(item.lease is None for item in queue.items)


def test_join_does_not_block_on_a_closed_queue():
    async def scenario():
        processor = GatedProcessor()
        queue = ProcessingQueue(processor, dispatch_interval=0)
        queue.add_to_queue("A", "A")
        await wait_until(lambda: processor.started == ["A"])
        waiter = asyncio.create_task(queue.join())
        await asyncio.sleep(0)
        await queue.close()
        await asyncio.wait_for(waiter, timeout=1)
        await asyncio.wait_for(queue.join(), timeout=1)
        return processor

    processor = asyncio.run(scenario())

    assert processor.started == ["A"]
