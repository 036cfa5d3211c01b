"""
Unit tests for NotificationQueue against both delay-queue stores.

Test Coverage:
    - Immediate and delayed enqueue
    - Delivery acknowledgement
    - Retry with exponential backoff and terminal failure
    - Manual retry and clearing of failed notifications
    - Per-tick batch limit
    - Processing job start/stop
"""

import pytest

from conftest import FakeClock
from pnr_tracker.core.notification_queue import NotificationQueue


@pytest.fixture
def queue(delay_store, dispatch, clock):
    return NotificationQueue(delay_store, dispatch, clock=clock, max_attempts=3)


class TestEnqueue:
    def test_immediate_goes_to_pending(self, queue):
        notification_id = queue.enqueue("status_change", "alice@example.com", {"reference_code": "1111111111"})

        assert notification_id.startswith("notif_")
        stats = queue.stats()
        assert stats.pending == 1
        assert stats.delayed == 0

    def test_delay_goes_to_delayed(self, queue):
        queue.enqueue("system", "alice@example.com", {"title": "hi"}, delay_ms=5000)

        stats = queue.stats()
        assert stats.delayed == 1
        assert stats.pending == 0

    def test_unknown_kind_rejected(self, queue):
        with pytest.raises(ValueError):
            queue.enqueue("carrier_pigeon", "alice@example.com", {})

    def test_ids_are_unique(self, queue):
        ids = {queue.queue_test_notification("alice@example.com") for _ in range(20)}
        assert len(ids) == 20

    def test_convenience_payloads(self, queue, dispatch):
        queue.queue_status_change("alice@example.com", 7, "2222222222", "WL/5", "WL/2")
        queue.queue_system_notification("system", "Scheduler Error", "boom")

        assert queue.stats().pending == 2


class TestProcessing:
    @pytest.mark.asyncio
    async def test_successful_delivery_removes_entry(self, queue, dispatch):
        queue.enqueue("status_change", "alice@example.com", {"reference_code": "1111111111"})

        delivered = await queue.process_once()

        assert delivered == 1
        dispatch.deliver.assert_awaited_once_with(
            "status_change", "alice@example.com", {"reference_code": "1111111111"}
        )
        stats = queue.stats()
        assert (stats.pending, stats.delayed, stats.processing, stats.failed) == (0, 0, 0, 0)

    @pytest.mark.asyncio
    async def test_delayed_not_delivered_before_due(self, queue, dispatch, clock):
        queue.enqueue("system", "alice@example.com", {"title": "later"}, delay_ms=5000)

        await queue.process_once()
        assert dispatch.deliver.await_count == 0

        clock.advance(5000)
        await queue.process_once()
        assert dispatch.deliver.await_count == 1

    @pytest.mark.asyncio
    async def test_failure_backs_off_then_fails(self, queue, dispatch, clock):
        dispatch.deliver.side_effect = Exception("smtp down")
        notification_id = queue.enqueue("status_change", "alice@example.com", {})

        await queue.process_once()
        assert dispatch.deliver.await_count == 1
        assert queue.stats().delayed == 1

        # first retry is due 2s after the failure
        clock.advance(1999)
        await queue.process_once()
        assert dispatch.deliver.await_count == 1

        clock.advance(1)
        await queue.process_once()
        assert dispatch.deliver.await_count == 2
        assert queue.stats().delayed == 1

        # second retry after 4s, which exhausts max_attempts
        clock.advance(4000)
        await queue.process_once()
        assert dispatch.deliver.await_count == 3

        stats = queue.stats()
        assert stats.failed == 1
        assert stats.delayed == 0
        assert stats.pending == 0

        failed = queue.list_failed()
        assert len(failed) == 1
        assert failed[0].id == notification_id
        assert failed[0].attempts == 3
        assert failed[0].last_error == "smtp down"
        assert failed[0].last_attempt_at is not None

        # failed entries are never picked up again
        clock.advance(60000)
        await queue.process_once()
        assert dispatch.deliver.await_count == 3

    @pytest.mark.asyncio
    async def test_retry_failed_moves_back_to_pending(self, queue, dispatch):
        dispatch.deliver.side_effect = Exception("smtp down")
        notification_id = queue.enqueue("system", "alice@example.com", {}, max_attempts=1)

        await queue.process_once()
        assert queue.stats().failed == 1

        assert queue.retry_failed(notification_id) is True
        assert queue.stats().failed == 0
        assert queue.stats().pending == 1

        dispatch.deliver.side_effect = None
        assert await queue.process_once() == 1
        assert queue.stats().pending == 0

    def test_retry_unknown_returns_false(self, queue):
        assert queue.retry_failed("notif_0_missing") is False

    @pytest.mark.asyncio
    async def test_clear_failed(self, queue, dispatch):
        dispatch.deliver.side_effect = Exception("smtp down")
        for _ in range(3):
            queue.enqueue("system", "alice@example.com", {}, max_attempts=1)

        await queue.process_once()

        assert queue.clear_failed() == 3
        assert queue.stats().failed == 0
        assert queue.list_failed() == []

    @pytest.mark.asyncio
    async def test_batch_limit_per_tick(self, queue, dispatch):
        for _ in range(15):
            queue.enqueue("test", "alice@example.com", {})

        assert await queue.process_once() == 10
        assert queue.stats().pending == 5

        assert await queue.process_once() == 5

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, queue, dispatch):
        async def deliver(kind, owner_id, payload):
            if owner_id == "broken":
                raise Exception("no address")

        dispatch.deliver.side_effect = deliver
        queue.enqueue("test", "broken", {})
        queue.enqueue("test", "alice@example.com", {})

        assert await queue.process_once() == 1
        assert queue.stats().delayed == 1

    @pytest.mark.asyncio
    async def test_tick_error_is_logged_not_raised(self, dispatch):
        class BrokenStore:
            def promote_ready(self, now_ms):
                raise RuntimeError("store offline")

        queue = NotificationQueue(BrokenStore(), dispatch, clock=FakeClock())

        assert await queue.process_once() == 0


class TestProcessingJob:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, queue):
        queue.start_processing(interval_ms=1000)
        assert queue.is_processing()

        # second start is a no-op
        queue.start_processing(interval_ms=1000)
        assert queue.is_processing()

        queue.stop_processing()
        assert not queue.is_processing()

        queue.stop_processing()
