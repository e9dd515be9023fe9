import random

import pytest

from reliability.clock import ManualClock
from reliability.queue import JobQueue
from reliability.retry import RetryPolicy
from reliability.store import InMemoryJobStore
from reliability.worker_pool import WorkerPool


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def queue(store, clock):
    # no jitter so backoff delays are exact
    policy = RetryPolicy(base_delay_s=1.0, max_delay_s=60.0, jitter=0.0, rng=random.Random(7))
    return JobQueue(store, clock, retry_policy=policy)


@pytest.fixture
def pool(queue, clock):
    return WorkerPool(
        queue,
        concurrency=2,
        poll_interval_s=0.01,
        job_timeout_s=1.0,
        drain_timeout_s=1.0,
        stale_after_s=60.0,
        reclaim_interval_s=60.0,
        clock=clock,
    )
