# tests/test_queue.py
from datetime import date

import pytest

from read_analytics.jobs import AggregationQueue
from read_analytics.models import task_id_for
from conftest import pending_ids

DAY = date(2024, 3, 1)


@pytest.mark.asyncio
async def test_enqueue_twice_before_claim_leaves_one_task(queue):
    """Enqueue (A, D) dua kali sebelum di-claim -> tepat satu task pending"""
    assert await queue.enqueue("A1", DAY) is True
    assert await queue.enqueue("A1", DAY) is False

    assert await pending_ids(queue) == [task_id_for("A1", DAY)]
    assert (await queue.stats())["waiting"] == 1


@pytest.mark.asyncio
async def test_task_id_is_deterministic():
    assert task_id_for("A1", DAY) == "analytics:A1:2024-03-01"


@pytest.mark.asyncio
async def test_different_days_are_different_tasks(queue):
    assert await queue.enqueue("A1", DAY) is True
    assert await queue.enqueue("A1", date(2024, 3, 2)) is True
    assert await queue.enqueue("A2", DAY) is True
    assert (await queue.stats())["waiting"] == 3


@pytest.mark.asyncio
async def test_enqueue_while_in_flight_is_noop(queue):
    await queue.enqueue("A1", DAY)
    task = await queue.claim()
    assert task is not None

    assert await queue.enqueue("A1", DAY) is False
    assert await queue.stats() == {"waiting": 0, "active": 1, "delayed": 0}


@pytest.mark.asyncio
async def test_claim_hands_task_to_one_consumer(queue, clock):
    await queue.enqueue("A1", DAY)

    first = await queue.claim()
    second = await queue.claim()

    assert first.article_id == "A1"
    assert first.date == DAY
    assert first.claimed_at == clock.now
    assert second is None


@pytest.mark.asyncio
async def test_claim_is_fifo(queue):
    for article_id in ("A1", "A2", "A3"):
        await queue.enqueue(article_id, DAY)
    claimed = [(await queue.claim()).article_id for _ in range(3)]
    assert claimed == ["A1", "A2", "A3"]


@pytest.mark.asyncio
async def test_complete_removes_task_permanently(queue, redis_client):
    await queue.enqueue("A1", DAY)
    task = await queue.claim()
    await queue.complete(task)

    assert await queue.stats() == {"waiting": 0, "active": 0, "delayed": 0}
    assert await redis_client.get(queue.task_key(task.task_id)) is None
    # Setelah selesai, identitas yang sama boleh masuk lagi
    assert await queue.enqueue("A1", DAY) is True


@pytest.mark.asyncio
async def test_failed_task_retries_with_exponential_backoff(queue, clock):
    await queue.enqueue("A1", DAY)

    task = await queue.claim()
    assert await queue.fail(task, "db down") == 2.0
    assert await queue.stats() == {"waiting": 0, "active": 0, "delayed": 1}

    # Belum jatuh tempo
    clock.advance(1)
    assert await queue.claim() is None

    clock.advance(1)
    task = await queue.claim()
    assert task.attempts == 1
    assert await queue.fail(task, "db down") == 4.0

    clock.advance(3)
    assert await queue.claim() is None
    clock.advance(1)
    task = await queue.claim()
    assert task.attempts == 2


@pytest.mark.asyncio
async def test_task_dropped_after_three_failures(queue, clock, logged_events):
    await queue.enqueue("A1", DAY)

    for _ in range(2):
        task = await queue.claim()
        assert await queue.fail(task, "db down") is not None
        clock.advance(60)

    task = await queue.claim()
    assert await queue.fail(task, "db down") is None

    # Tidak ada attempt ke-4
    clock.advance(3600)
    assert await queue.claim() is None
    assert await queue.stats() == {"waiting": 0, "active": 0, "delayed": 0}

    exhausted = logged_events("aggregation_task_exhausted")
    assert len(exhausted) == 1
    assert exhausted[0]["article_id"] == "A1"
    assert exhausted[0]["date"] == "2024-03-01"
    assert exhausted[0]["attempt"] == 3
    assert exhausted[0]["error"] == "db down"


@pytest.mark.asyncio
async def test_enqueue_during_retry_delay_is_noop(queue):
    await queue.enqueue("A1", DAY)
    task = await queue.claim()
    await queue.fail(task, "db down")

    assert await queue.enqueue("A1", DAY) is False
    assert (await queue.stats())["delayed"] == 1


@pytest.mark.asyncio
async def test_promote_delayed_moves_each_task_once(queue, clock):
    await queue.enqueue("A1", DAY)
    task = await queue.claim()
    await queue.fail(task, "db down")
    clock.advance(10)

    assert await queue.promote_delayed() == 1
    assert await queue.promote_delayed() == 0
    assert await pending_ids(queue) == [task.task_id]


@pytest.mark.asyncio
async def test_recover_stalled_counts_as_failed_attempt(queue, clock):
    await queue.enqueue("A1", DAY)
    await queue.claim()

    # Claim masih segar
    clock.advance(30)
    assert await queue.recover_stalled(visibility=120) == 0

    clock.advance(100)
    assert await queue.recover_stalled(visibility=120) == 1
    assert await queue.stats() == {"waiting": 0, "active": 0, "delayed": 1}

    clock.advance(2)
    task = await queue.claim()
    assert task.attempts == 1


@pytest.mark.asyncio
async def test_claim_drops_orphan_without_task_body(queue, redis_client):
    await queue.enqueue("A1", DAY)
    await redis_client.delete(queue.task_key(task_id_for("A1", DAY)))

    assert await queue.claim() is None
    assert (await queue.stats())["active"] == 0


@pytest.mark.asyncio
async def test_claim_recovers_stalled_tasks_periodically(queue, clock):
    await queue.enqueue("A1", DAY)
    await queue.claim()  # worker hilang tanpa complete/fail

    # Dalam visibility window: belum disentuh
    clock.advance(60)
    assert await queue.claim() is None
    assert (await queue.stats())["active"] == 1

    clock.advance(120)
    assert await queue.claim() is None  # recovery jalan, retry masih delayed
    assert await queue.stats() == {"waiting": 0, "active": 0, "delayed": 1}

    clock.advance(2)
    task = await queue.claim()
    assert (task.article_id, task.attempts) == ("A1", 1)


@pytest.mark.asyncio
async def test_unstamped_active_entry_is_recovered(queue, redis_client, clock):
    # Crash di antara LMOVE dan stamp claimed_at
    await queue.enqueue("A1", DAY)
    await redis_client.lmove(queue.wait_key, queue.active_key, "LEFT", "RIGHT")

    assert await queue.recover_stalled() == 0
    clock.advance(120)
    assert await queue.recover_stalled() == 1
    assert await queue.stats() == {"waiting": 0, "active": 0, "delayed": 1}


@pytest.mark.asyncio
async def test_recovery_counts_each_stalled_claim_once(redis_client, clock):
    first = AggregationQueue(redis_client, name="shared", clock=clock)
    second = AggregationQueue(redis_client, name="shared", clock=clock)
    await first.enqueue("A1", DAY)
    await first.claim()
    clock.advance(200)

    assert await first.recover_stalled() + await second.recover_stalled() == 1
    clock.advance(2)
    assert (await second.claim()).attempts == 1
