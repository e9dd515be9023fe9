import asyncio

import pytest

from reliability.models import JobState, Priority
from reliability.scheduler import Scheduler


async def noop(payload):
    return None


@pytest.fixture
def scheduler(queue, clock):
    queue.register_handler("digest", noop)
    return Scheduler(queue, clock=clock, tick_s=0.01)


@pytest.mark.asyncio
async def test_tick_enqueues_once_per_interval_bucket(scheduler, queue, clock):
    await scheduler.schedule("digest", 60, {"channel": "ops"}, priority=Priority.LOW)

    first = await scheduler.tick()
    assert len(first) == 1
    assert await scheduler.tick() == []

    # ManualClock starts 40s before a 60s boundary
    clock.advance(30)
    assert await scheduler.tick() == []
    clock.advance(60)
    later = await scheduler.tick()
    assert len(later) == 1
    assert later != first

    job = await queue.get_job(first[0])
    assert job.type == "digest"
    assert job.payload == {"channel": "ops"}
    assert job.priority == Priority.LOW
    assert job.state == JobState.PENDING


@pytest.mark.asyncio
async def test_restarted_scheduler_does_not_double_enqueue(scheduler, queue, store, clock):
    await scheduler.schedule("digest", 300)
    assert len(await scheduler.tick()) == 1

    restarted = Scheduler(queue, store=store, clock=clock)
    await restarted.schedule("digest", 300)
    assert await restarted.tick() == []
    assert (await queue.stats())["total"] == 1


@pytest.mark.asyncio
async def test_two_schedulers_racing_on_one_bucket_enqueue_one_job(scheduler, queue, store, clock):
    other = Scheduler(queue, store=store, clock=clock)
    await scheduler.schedule("digest", 300)
    await other.schedule("digest", 300)

    ids = (await scheduler.tick()) + (await other.tick())
    assert len(ids) == 1
    assert (await queue.stats())["total"] == 1


@pytest.mark.asyncio
async def test_payload_factory_receives_template_and_bucket(scheduler, queue, clock):
    def factory(template, bucket):
        return {**template, "bucket": bucket}

    defn = await scheduler.schedule("digest", 3600, {"days_old": 90}, payload_factory=factory, definition_id="cleanup")
    [job_id] = await scheduler.tick()

    bucket = int(clock.now() // 3600)
    assert job_id == f"cleanup:{bucket}"
    assert defn.id == "cleanup"
    assert (await queue.get_job(job_id)).payload == {"days_old": 90, "bucket": bucket}


@pytest.mark.asyncio
async def test_status_reports_last_and_next_run(scheduler, clock):
    await scheduler.schedule("digest", 100)
    status = await scheduler.status()
    assert status["digest"]["last_run_at"] is None

    await scheduler.tick()
    bucket = int(clock.now() // 100)
    status = await scheduler.status()
    assert status["digest"]["last_materialized_bucket"] == bucket
    assert status["digest"]["next_run_at"] == (bucket + 1) * 100


@pytest.mark.asyncio
async def test_rejects_non_positive_interval(scheduler):
    with pytest.raises(ValueError):
        await scheduler.schedule("digest", 0)


@pytest.mark.asyncio
async def test_background_loop_materializes_and_stops(scheduler, queue):
    await scheduler.schedule("digest", 10)
    await scheduler.start()
    try:
        for _ in range(100):
            if (await queue.stats())["total"]:
                break
            await asyncio.sleep(0.01)
    finally:
        await scheduler.stop()
    assert (await queue.stats())["total"] == 1


@pytest.mark.asyncio
async def test_background_loop_ticks_on_the_scheduler_clock(queue, clock):
    queue.register_handler("digest", noop)
    scheduler = Scheduler(queue, clock=clock, tick_s=60)
    await scheduler.schedule("digest", 60)

    async def total_after_yield():
        for _ in range(20):
            await asyncio.sleep(0.005)
        return (await queue.stats())["total"]

    await scheduler.start()
    try:
        assert await total_after_yield() == 1
        # no further tick until the clock moves a full tick
        assert await total_after_yield() == 1
        clock.advance(60)
        assert await total_after_yield() == 2
    finally:
        await scheduler.stop()
