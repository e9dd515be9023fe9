from __future__ import annotations

import logging
from typing import Dict, List, Optional

from redis.asyncio import Redis
from redis.exceptions import WatchError

from .models import CLAIMABLE_STATES, Job, JobState, Priority, ScheduledJobDefinition
from .store import Counts, JobStore

log = logging.getLogger("job-store")

# Composite ready-set score: priority band first, enqueue sequence second.
# Must stay below 2**53 to remain exact in a Redis double.
_BAND = 10**12


def _ready_score(job: Job) -> float:
    return (int(Priority.CRITICAL) - int(job.priority)) * _BAND + job.seq


class RedisJobStore(JobStore):
    """
    Durable job store on Redis.

    Layout (all keys under a prefix):
      job:{id}       hash, one field per Job attribute
      jobs           set of every job id
      delayed        zset id -> next_run_at; PENDING/RETRYING jobs not yet promoted
      ready          zset id -> (priority band, seq); claimable now
      processing     zset id -> claimed_at; scanned by the reclaim sweep
      seq            enqueue counter
      schedule:{id}  hash per ScheduledJobDefinition, listed in `schedules`

    Multi-key updates run in WATCH/MULTI transactions so a claim or outcome
    write that races another client is retried or rejected, never merged.
    """

    def __init__(self, redis: Redis, prefix: str = "reliability") -> None:
        self.redis = redis
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "reliability") -> "RedisJobStore":
        return cls(Redis.from_url(url, decode_responses=True), prefix=prefix)

    def _k(self, *parts: str) -> str:
        return ":".join((self.prefix,) + parts)

    def _job_key(self, job_id: str) -> str:
        return self._k("job", job_id)

    def _def_key(self, definition_id: str) -> str:
        return self._k("schedule", definition_id)

    def _index_job(self, pipe, job: Job) -> None:
        """Queue index updates matching job.state on a MULTI pipeline."""
        pipe.zrem(self._k("ready"), job.id)
        pipe.zrem(self._k("delayed"), job.id)
        pipe.zrem(self._k("processing"), job.id)
        if job.state in CLAIMABLE_STATES:
            pipe.zadd(self._k("delayed"), {job.id: job.next_run_at})
        elif job.state == JobState.PROCESSING:
            pipe.zadd(self._k("processing"), {job.id: job.claimed_at or job.updated_at})

    # -----------------------
    # Jobs
    # -----------------------

    async def insert(self, job: Job) -> bool:
        key = self._job_key(job.id)
        job.seq = await self.redis.incr(self._k("seq"))
        job.version = 1
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    if await pipe.exists(key):
                        return False
                    pipe.multi()
                    pipe.hset(key, mapping=job.to_record())
                    pipe.sadd(self._k("jobs"), job.id)
                    self._index_job(pipe, job)
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def get(self, job_id: str) -> Optional[Job]:
        rec = await self.redis.hgetall(self._job_key(job_id))
        return Job.from_record(rec) if rec else None

    async def _load_many(self, ids: List[str]) -> List[Job]:
        if not ids:
            return []
        pipe = self.redis.pipeline(transaction=False)
        for job_id in ids:
            pipe.hgetall(self._job_key(job_id))
        return [Job.from_record(rec) for rec in await pipe.execute() if rec]

    async def list_jobs(self, state: Optional[JobState] = None, job_type: Optional[str] = None) -> List[Job]:
        jobs = await self._load_many(sorted(await self.redis.smembers(self._k("jobs"))))
        out = [
            j for j in jobs if (state is None or j.state == state) and (job_type is None or j.type == job_type)
        ]
        out.sort(key=Job.sort_key)
        return out

    async def _promote(self, job_id: str, now: float) -> bool:
        """Move one due job from `delayed` to `ready`. True if it was RETRYING."""
        key = self._job_key(job_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    rec = await pipe.hgetall(key)
                    pipe.multi()
                    pipe.zrem(self._k("delayed"), job_id)
                    if not rec:
                        await pipe.execute()
                        return False
                    job = Job.from_record(rec)
                    was_retrying = job.state == JobState.RETRYING
                    if job.state in CLAIMABLE_STATES:
                        pipe.zadd(self._k("ready"), {job_id: _ready_score(job)})
                    if was_retrying:
                        pipe.hset(key, mapping={"state": JobState.PENDING.value, "updated_at": str(now)})
                        pipe.hincrby(key, "version", 1)
                    await pipe.execute()
                    return was_retrying
                except WatchError:
                    continue

    async def release_due(self, now: float) -> List[str]:
        due = await self.redis.zrangebyscore(self._k("delayed"), "-inf", now)
        released = []
        for job_id in due:
            if await self._promote(job_id, now):
                released.append(job_id)
        return released

    async def claim_next(self, now: float, worker_id: str) -> Optional[Job]:
        ready = self._k("ready")
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(ready)
                    head = await pipe.zrange(ready, 0, 0)
                    if not head:
                        return None
                    job_id = head[0]
                    key = self._job_key(job_id)
                    await pipe.watch(key)
                    rec = await pipe.hgetall(key)
                    if not rec or JobState(rec.get("state")) not in CLAIMABLE_STATES:
                        # stale index entry
                        pipe.multi()
                        pipe.zrem(ready, job_id)
                        await pipe.execute()
                        continue
                    pipe.multi()
                    pipe.zrem(ready, job_id)
                    pipe.hset(
                        key,
                        mapping={
                            "state": JobState.PROCESSING.value,
                            "claimed_at": str(now),
                            "claimed_by": worker_id,
                            "updated_at": str(now),
                        },
                    )
                    pipe.hincrby(key, "version", 1)
                    pipe.zadd(self._k("processing"), {job_id: now})
                    pipe.hgetall(key)
                    result = await pipe.execute()
                    return Job.from_record(result[-1])
                except WatchError:
                    continue

    async def replace(self, job: Job, expected_version: int) -> bool:
        key = self._job_key(job.id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.hget(key, "version")
                    if current is None or int(current) != expected_version:
                        return False
                    job.version = expected_version + 1
                    pipe.multi()
                    pipe.hset(key, mapping=job.to_record())
                    self._index_job(pipe, job)
                    await pipe.execute()
                    return True
                except WatchError:
                    job.version = expected_version
                    continue

    async def find_stale(self, cutoff: float) -> List[Job]:
        ids = await self.redis.zrangebyscore(self._k("processing"), "-inf", f"({cutoff}")
        return [j for j in await self._load_many(ids) if j.state == JobState.PROCESSING]

    async def delete(self, job_id: str) -> bool:
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(self._job_key(job_id))
        pipe.srem(self._k("jobs"), job_id)
        for index in ("ready", "delayed", "processing"):
            pipe.zrem(self._k(index), job_id)
        deleted, *_ = await pipe.execute()
        return bool(deleted)

    async def counts(self) -> Counts:
        ids = list(await self.redis.smembers(self._k("jobs")))
        if not ids:
            return {}
        pipe = self.redis.pipeline(transaction=False)
        for job_id in ids:
            pipe.hmget(self._job_key(job_id), "type", "state")
        out: Counts = {}
        for job_type, state in await pipe.execute():
            if job_type is None:
                continue
            by_state = out.setdefault(job_type, {})
            by_state[state] = by_state.get(state, 0) + 1
        return out

    # -----------------------
    # Scheduled definitions
    # -----------------------

    async def save_definition(self, definition: ScheduledJobDefinition) -> ScheduledJobDefinition:
        key = self._def_key(definition.id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    existing = await pipe.hget(key, "last_materialized_bucket")
                    if existing is not None:
                        definition.last_materialized_bucket = max(
                            definition.last_materialized_bucket, int(existing)
                        )
                    pipe.multi()
                    pipe.hset(key, mapping=definition.to_record())
                    pipe.sadd(self._k("schedules"), definition.id)
                    await pipe.execute()
                    return definition
                except WatchError:
                    continue

    async def get_definition(self, definition_id: str) -> Optional[ScheduledJobDefinition]:
        rec = await self.redis.hgetall(self._def_key(definition_id))
        return ScheduledJobDefinition.from_record(rec) if rec else None

    async def list_definitions(self) -> List[ScheduledJobDefinition]:
        ids = sorted(await self.redis.smembers(self._k("schedules")))
        pipe = self.redis.pipeline(transaction=False)
        for definition_id in ids:
            pipe.hgetall(self._def_key(definition_id))
        recs: List[Dict[str, str]] = await pipe.execute() if ids else []
        return [ScheduledJobDefinition.from_record(rec) for rec in recs if rec]

    async def mark_materialized(self, definition_id: str, expected_bucket: int, bucket: int) -> bool:
        key = self._def_key(definition_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    current = await pipe.hget(key, "last_materialized_bucket")
                    if current is None or int(current) != expected_bucket:
                        return False
                    pipe.multi()
                    pipe.hset(key, "last_materialized_bucket", str(bucket))
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def close(self) -> None:
        await self.redis.aclose()
