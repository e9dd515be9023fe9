import asyncio
import itertools
from datetime import datetime, timezone

import pytest

from reliability.exceptions import InvalidJobType, InvalidTransition, JobNotFound
from reliability.models import JobState, Priority
from reliability.queue import JobQueue


async def noop(payload):
    return payload


@pytest.fixture
def typed_queue(queue):
    for t in ("a", "b", "report"):
        queue.register_handler(t, noop)
    return queue


@pytest.mark.asyncio
async def test_enqueue_unknown_type_fails_fast(queue):
    with pytest.raises(InvalidJobType):
        await queue.enqueue("nobody-handles-this", {})
    assert (await queue.stats())["total"] == 0


@pytest.mark.asyncio
async def test_lenient_queue_accepts_late_handler_registration(store, clock):
    q = JobQueue(store, clock, strict_job_types=False)
    job_id = await q.enqueue("later", {"x": 1})
    q.register_handler("later", noop)
    job = await q.dequeue_next()
    assert job.id == job_id


@pytest.mark.asyncio
@pytest.mark.parametrize("order", list(itertools.permutations(list(Priority))))
async def test_dequeue_order_is_priority_then_fifo(typed_queue, order):
    enqueued = []
    for round_ in range(2):
        for p in order:
            job_id = await typed_queue.enqueue("a", {"round": round_}, priority=p)
            enqueued.append((p, job_id))

    claimed = []
    while True:
        job = await typed_queue.dequeue_next()
        if job is None:
            break
        claimed.append(job)

    priorities = [int(j.priority) for j in claimed]
    assert priorities == sorted(priorities, reverse=True)
    for p in Priority:
        expected = [job_id for prio, job_id in enqueued if prio == p]
        assert [j.id for j in claimed if j.priority == p] == expected


@pytest.mark.asyncio
async def test_future_job_is_not_dequeued_before_run_at(typed_queue, clock):
    job_id = await typed_queue.enqueue("a", {}, run_at=clock.now() + 30)
    assert await typed_queue.dequeue_next() is None
    clock.advance(30)
    job = await typed_queue.dequeue_next()
    assert job.id == job_id
    assert job.state == JobState.PROCESSING


@pytest.mark.asyncio
async def test_run_at_accepts_datetime(typed_queue, clock):
    when = datetime.fromtimestamp(clock.now() + 5, tz=timezone.utc)
    job_id = await typed_queue.enqueue("a", {}, run_at=when)
    assert (await typed_queue.get_job(job_id)).next_run_at == pytest.approx(clock.now() + 5)


@pytest.mark.asyncio
async def test_only_one_of_many_racing_workers_claims_a_job(typed_queue):
    job_id = await typed_queue.enqueue("a", {})
    results = await asyncio.gather(*(typed_queue.dequeue_next(f"w{i}") for i in range(8)))
    claimed = [r for r in results if r is not None]
    assert len(claimed) == 1
    assert claimed[0].id == job_id
    job = await typed_queue.get_job(job_id)
    assert job.state == JobState.PROCESSING
    assert job.claimed_by == claimed[0].claimed_by


@pytest.mark.asyncio
async def test_explicit_job_id_makes_enqueue_idempotent(typed_queue):
    first = await typed_queue.enqueue("a", {"v": 1}, job_id="nightly:1")
    second = await typed_queue.enqueue("a", {"v": 2}, job_id="nightly:1")
    assert first == second == "nightly:1"
    assert (await typed_queue.get_job("nightly:1")).payload == {"v": 1}
    assert (await typed_queue.stats())["total"] == 1


@pytest.mark.asyncio
async def test_priority_accepts_names_and_ints(typed_queue):
    a = await typed_queue.enqueue("a", {}, priority="high")
    b = await typed_queue.enqueue("a", {}, priority=3)
    assert (await typed_queue.get_job(a)).priority == Priority.HIGH
    assert (await typed_queue.get_job(b)).priority == Priority.CRITICAL
    with pytest.raises(ValueError):
        await typed_queue.enqueue("a", {}, priority="urgent")


@pytest.mark.asyncio
async def test_get_unknown_job_raises(typed_queue):
    with pytest.raises(JobNotFound):
        await typed_queue.get_job("missing")


@pytest.mark.asyncio
async def test_stats_count_states_per_type(typed_queue):
    await typed_queue.enqueue("a", {})
    await typed_queue.enqueue("a", {})
    await typed_queue.enqueue("b", {})
    await typed_queue.dequeue_next()

    stats = await typed_queue.stats()
    assert stats["total"] == 3
    assert stats["by_state"]["PENDING"] == 2
    assert stats["by_state"]["PROCESSING"] == 1
    assert stats["by_state"]["DEAD_LETTER"] == 0
    assert stats["by_type"]["a"] == {"PROCESSING": 1, "PENDING": 1}
    assert stats["by_type"]["b"] == {"PENDING": 1}


@pytest.mark.asyncio
async def test_replay_dead_letter_resets_attempts(typed_queue):
    job_id = await typed_queue.enqueue("report", {}, max_retries=1)
    job = await typed_queue.dequeue_next()
    dead = await typed_queue.fail(job, RuntimeError("smtp down"))
    assert dead.state == JobState.DEAD_LETTER
    assert [j.id for j in await typed_queue.dead_letters()] == [job_id]

    replayed = await typed_queue.replay(job_id)
    assert replayed.state == JobState.PENDING
    assert replayed.attempts == 0
    assert (await typed_queue.dequeue_next()).id == job_id


@pytest.mark.asyncio
async def test_replay_rejects_jobs_that_are_not_dead(typed_queue):
    job_id = await typed_queue.enqueue("report", {})
    with pytest.raises(InvalidTransition):
        await typed_queue.replay(job_id)


@pytest.mark.asyncio
async def test_cleanup_removes_only_old_completed_jobs(typed_queue, clock):
    old_id = await typed_queue.enqueue("a", {})
    await typed_queue.complete(await typed_queue.dequeue_next(), {"ok": True})
    clock.advance(8 * 86400)
    new_id = await typed_queue.enqueue("a", {})
    await typed_queue.complete(await typed_queue.dequeue_next(), {"ok": True})
    pending_id = await typed_queue.enqueue("a", {})

    assert await typed_queue.cleanup(7 * 86400) == 1
    with pytest.raises(JobNotFound):
        await typed_queue.get_job(old_id)
    assert (await typed_queue.get_job(new_id)).state == JobState.COMPLETED
    assert (await typed_queue.get_job(pending_id)).state == JobState.PENDING
