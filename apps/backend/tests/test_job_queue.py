"""
Tests for the durable task queue: ordering, claiming, retries and backpressure.
"""
import asyncio
from datetime import timedelta
from unittest.mock import patch

import pytest

from core.errors import PersistenceError, QueueBackpressure
from core.job_queue import JobQueueManager, PRIORITY_HIGH, PRIORITY_LOW, PRIORITY_NORMAL
from core.models import TaskStatus


@pytest.fixture
def queue(store, clock):
    return JobQueueManager(
        store,
        clock=clock,
        max_attempts=3,
        retry_base_seconds=60,
        retry_max_seconds=3600,
        soft_limit=2,
        hard_limit=4,
        defer_seconds=900,
        poll_seconds=0.01,
    )


@pytest.mark.asyncio
async def test_claims_highest_priority_first(queue):
    low = await queue.add_job("email", {"n": 1}, priority=PRIORITY_LOW)
    high = await queue.add_job("email", {"n": 2}, priority=PRIORITY_HIGH)
    normal = await queue.add_job("email", {"n": 3}, priority=PRIORITY_NORMAL)

    claimed = [(await queue.claim_next()).id for _ in range(3)]
    assert claimed == [high, normal, low]
    assert await queue.claim_next() is None


@pytest.mark.asyncio
async def test_same_priority_is_fifo(queue, clock):
    first = await queue.add_job("email", {}, priority=5)
    clock.advance(seconds=1)
    second = await queue.add_job("email", {}, priority=5)

    assert (await queue.claim_next()).id == first
    assert (await queue.claim_next()).id == second


@pytest.mark.asyncio
async def test_future_tasks_are_not_due(queue, clock):
    await queue.add_job("email", {}, scheduled_for=clock() + timedelta(minutes=5))
    assert await queue.claim_next() is None

    clock.advance(minutes=5)
    task = await queue.claim_next()
    assert task is not None
    assert task.status == TaskStatus.RUNNING
    assert task.attempts == 1


@pytest.mark.asyncio
async def test_claim_is_exclusive(queue, store, clock):
    task_id = await queue.add_job("email", {})
    first = store.claim_task(task_id, clock())
    second = store.claim_task(task_id, clock())
    assert first is not None
    assert second is None


@pytest.mark.asyncio
async def test_successful_task_is_done_with_result(queue, store):
    async def handler(payload):
        return {"echo": payload["value"]}

    queue.register_handler("echo", handler)
    task_id = await queue.add_job("echo", {"value": 42})

    assert await queue.process_next() is True
    task = store.get_task(task_id)
    assert task.status == TaskStatus.DONE
    assert task.result == {"echo": 42}
    assert await queue.process_next() is False


@pytest.mark.asyncio
async def test_failed_task_retries_with_backoff_then_fails(queue, store, clock):
    calls = []

    async def handler(payload):
        calls.append(clock())
        raise RuntimeError("source down")

    queue.register_handler("flaky", handler)
    task_id = await queue.add_job("flaky", {})
    start = clock()

    await queue.process_next()
    task = store.get_task(task_id)
    assert task.status == TaskStatus.PENDING
    assert task.attempts == 1
    assert task.scheduled_for == start + timedelta(seconds=60)
    assert task.error == "source down"

    # Not due until the backoff elapses
    assert await queue.process_next() is False
    clock.advance(seconds=60)
    await queue.process_next()
    task = store.get_task(task_id)
    assert task.attempts == 2
    assert task.scheduled_for == clock() + timedelta(seconds=120)

    clock.advance(seconds=120)
    await queue.process_next()
    task = store.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 3
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_retry_delay_is_capped(queue):
    assert queue._retry_delay(1) == 60
    assert queue._retry_delay(3) == 240
    assert queue._retry_delay(10) == 3600


@pytest.mark.asyncio
async def test_task_without_handler_fails(queue, store):
    task_id = await queue.add_job("unknown", {})
    await queue.process_next()
    task = store.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert "No handler" in task.error


@pytest.mark.asyncio
async def test_cancel_and_retry_transitions(queue, store):
    async def handler(payload):
        raise RuntimeError("boom")

    queue.register_handler("boom", handler)
    pending_id = await queue.add_job("other", {}, priority=0)
    failing_id = await queue.add_job("boom", {}, priority=10, max_attempts=1)

    await queue.process_next()
    assert store.get_task(failing_id).status == TaskStatus.FAILED

    # Only PENDING tasks can be cancelled, only FAILED ones retried
    assert await queue.cancel_job(failing_id) is False
    assert await queue.retry_job(pending_id) is False

    assert await queue.cancel_job(pending_id) is True
    assert store.get_task(pending_id).status == TaskStatus.CANCELLED

    assert await queue.retry_job(failing_id) is True
    task = store.get_task(failing_id)
    assert task.status == TaskStatus.PENDING
    assert task.attempts == 0
    assert task.error is None


@pytest.mark.asyncio
async def test_update_priority_only_while_pending(queue, store):
    task_id = await queue.add_job("email", {}, priority=1)
    assert await queue.update_job_priority(task_id, 9) is True
    assert store.get_task(task_id).priority == 9

    await queue.claim_next()
    assert await queue.update_job_priority(task_id, 2) is False


@pytest.mark.asyncio
async def test_admission_rejects_past_hard_limit(queue):
    for _ in range(4):
        await queue.add_job("email", {})

    with pytest.raises(QueueBackpressure) as exc_info:
        await queue.admit_job("email", {}, priority=PRIORITY_NORMAL)
    assert exc_info.value.depth == 4
    assert exc_info.value.retry_after == 60

    task = await queue.admit_job("email", {}, priority=PRIORITY_HIGH)
    assert task.priority == PRIORITY_HIGH


@pytest.mark.asyncio
async def test_admission_defers_low_priority_past_soft_limit(queue, clock):
    for _ in range(2):
        await queue.add_job("email", {})

    deferred = await queue.admit_job("email", {}, priority=0)
    assert deferred.priority == PRIORITY_LOW
    assert deferred.scheduled_for == clock() + timedelta(seconds=900)

    normal = await queue.admit_job("email", {}, priority=PRIORITY_NORMAL)
    assert normal.priority == PRIORITY_NORMAL
    assert normal.scheduled_for == clock()


@pytest.mark.asyncio
async def test_stats_and_cleanup(queue, store, clock):
    async def handler(payload):
        return None

    queue.register_handler("noop", handler)
    await queue.add_job("noop", {}, priority=10)
    pending_id = await queue.add_job("other", {})
    await queue.process_next()

    clock.advance(minutes=5)
    stats = await queue.get_queue_stats()
    assert stats["pending"] == 1
    assert stats["done"] == 1
    assert stats["total"] == 2
    assert stats["oldestPendingAgeSeconds"] == 300

    clock.advance(days=8)
    assert await queue.cleanup_old_jobs(7) == 1
    assert store.get_task(pending_id) is not None
    assert len(await queue.get_jobs_by_type("noop")) == 0


@pytest.mark.asyncio
async def test_worker_runs_tasks_until_stopped(queue):
    done = asyncio.Event()

    async def handler(payload):
        done.set()
        return {"ok": True}

    queue.register_handler("signal", handler)
    await queue.start()
    try:
        await queue.add_job("signal", {})
        await asyncio.wait_for(done.wait(), timeout=2)
    finally:
        await queue.stop(timeout=2)

    assert queue.running is False


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_task(queue, store):
    entered = asyncio.Event()
    release = asyncio.Event()

    async def handler(payload):
        entered.set()
        await release.wait()
        return {"ok": True}

    queue.register_handler("slow", handler)
    task_id = await queue.add_job("slow", {})
    await queue.start()
    await asyncio.wait_for(entered.wait(), timeout=2)

    stopping = asyncio.create_task(queue.stop(timeout=5))
    await asyncio.sleep(0.05)
    assert not stopping.done()
    assert store.get_task(task_id).status == TaskStatus.RUNNING

    release.set()
    await asyncio.wait_for(stopping, timeout=2)

    assert queue.running is False
    task = store.get_task(task_id)
    assert task.status == TaskStatus.DONE
    assert task.result == {"ok": True}


@pytest.mark.asyncio
async def test_lost_status_write_is_recovered_after_lease(queue, store, clock):
    async def handler(payload):
        raise RuntimeError("source down")

    queue.register_handler("flaky", handler)
    task_id = await queue.add_job("flaky", {})

    real_update = store.update_task
    writes = []

    def update_once_failing(task_id, fields, expected_status=None):
        writes.append(fields["status"])
        if len(writes) == 1:
            raise PersistenceError("connection reset")
        return real_update(task_id, fields, expected_status=expected_status)

    with patch.object(store, "update_task", side_effect=update_once_failing):
        await queue.process_next()
        task = store.get_task(task_id)
        assert task.status == TaskStatus.RUNNING
        assert task.attempts == 1

        # Lease still held
        assert await queue.process_next() is False

        clock.advance(seconds=queue.lease_seconds + 1)
        await queue.process_next()
        task = store.get_task(task_id)
        assert task.status == TaskStatus.PENDING
        assert task.attempts == 2

        clock.advance(seconds=120)
        await queue.process_next()

    task = store.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.attempts == 3
    assert task.error == "source down"


@pytest.mark.asyncio
async def test_expired_lease_without_attempts_left_fails(queue, store, clock):
    task_id = await queue.add_job("email", {}, max_attempts=1)
    claimed = await queue.claim_next()
    assert claimed.id == task_id

    clock.advance(seconds=queue.lease_seconds - 1)
    assert await queue.reclaim_expired() == 0
    assert store.get_task(task_id).status == TaskStatus.RUNNING

    clock.advance(seconds=2)
    assert await queue.reclaim_expired() == 1
    task = store.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.error == "Lease expired while running"
    assert await queue.claim_next() is None
