from __future__ import annotations

import asyncio
import itertools
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional

from .models import CLAIMABLE_STATES, Job, JobState, ScheduledJobDefinition

# job_type -> state -> count
Counts = Dict[str, Dict[str, int]]


class JobStore(ABC):
    """
    Source of truth for job state.

    Every write that follows a read goes through a compare-and-swap on
    Job.version, so two workers can never both move the same job.
    """

    @abstractmethod
    async def insert(self, job: Job) -> bool:
        """Persist a new job, assigning its enqueue sequence. False if the id exists."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def list_jobs(self, state: Optional[JobState] = None, job_type: Optional[str] = None) -> List[Job]:
        ...

    @abstractmethod
    async def release_due(self, now: float) -> List[str]:
        """Move RETRYING jobs whose next_run_at has passed back to PENDING."""

    @abstractmethod
    async def claim_next(self, now: float, worker_id: str) -> Optional[Job]:
        """Atomically move the best eligible job to PROCESSING and return it.

        Callers run release_due(now) first; a backend may keep due RETRYING jobs
        unclaimable until they are promoted.
        """

    @abstractmethod
    async def replace(self, job: Job, expected_version: int) -> bool:
        """Write job if the stored version still equals expected_version."""

    @abstractmethod
    async def find_stale(self, cutoff: float) -> List[Job]:
        """PROCESSING jobs claimed before cutoff."""

    @abstractmethod
    async def delete(self, job_id: str) -> bool:
        ...

    @abstractmethod
    async def counts(self) -> Counts:
        ...

    # -----------------------
    # Scheduled definitions
    # -----------------------

    @abstractmethod
    async def save_definition(self, definition: ScheduledJobDefinition) -> ScheduledJobDefinition:
        """Upsert a definition; an existing last_materialized_bucket is kept."""

    @abstractmethod
    async def get_definition(self, definition_id: str) -> Optional[ScheduledJobDefinition]:
        ...

    @abstractmethod
    async def list_definitions(self) -> List[ScheduledJobDefinition]:
        ...

    @abstractmethod
    async def mark_materialized(self, definition_id: str, expected_bucket: int, bucket: int) -> bool:
        ...

    async def close(self) -> None:
        return None


class InMemoryJobStore(JobStore):
    """Process-local store. Same contract as the Redis store, minus durability."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._definitions: Dict[str, ScheduledJobDefinition] = {}
        self._seq = itertools.count(1)
        self._lock = asyncio.Lock()

    async def insert(self, job: Job) -> bool:
        async with self._lock:
            if job.id in self._jobs:
                return False
            job.seq = next(self._seq)
            job.version = 1
            self._jobs[job.id] = job.copy()
            return True

    async def get(self, job_id: str) -> Optional[Job]:
        j = self._jobs.get(job_id)
        return j.copy() if j else None

    async def list_jobs(self, state: Optional[JobState] = None, job_type: Optional[str] = None) -> List[Job]:
        out = [
            j.copy()
            for j in self._jobs.values()
            if (state is None or j.state == state) and (job_type is None or j.type == job_type)
        ]
        out.sort(key=Job.sort_key)
        return out

    async def release_due(self, now: float) -> List[str]:
        released = []
        async with self._lock:
            for j in self._jobs.values():
                if j.state == JobState.RETRYING and j.next_run_at <= now:
                    j.state = JobState.PENDING
                    j.updated_at = now
                    j.version += 1
                    released.append(j.id)
        return released

    async def claim_next(self, now: float, worker_id: str) -> Optional[Job]:
        async with self._lock:
            eligible = [
                j for j in self._jobs.values() if j.state in CLAIMABLE_STATES and j.next_run_at <= now
            ]
            if not eligible:
                return None
            j = min(eligible, key=Job.sort_key)
            j.state = JobState.PROCESSING
            j.claimed_at = now
            j.claimed_by = worker_id
            j.updated_at = now
            j.version += 1
            return j.copy()

    async def replace(self, job: Job, expected_version: int) -> bool:
        async with self._lock:
            current = self._jobs.get(job.id)
            if current is None or current.version != expected_version:
                return False
            job.version = expected_version + 1
            self._jobs[job.id] = job.copy()
            return True

    async def find_stale(self, cutoff: float) -> List[Job]:
        return [
            j.copy()
            for j in self._jobs.values()
            if j.state == JobState.PROCESSING and j.claimed_at is not None and j.claimed_at < cutoff
        ]

    async def delete(self, job_id: str) -> bool:
        async with self._lock:
            return self._jobs.pop(job_id, None) is not None

    async def counts(self) -> Counts:
        out: Counts = defaultdict(lambda: defaultdict(int))
        for j in self._jobs.values():
            out[j.type][j.state.value] += 1
        return {t: dict(c) for t, c in out.items()}

    async def save_definition(self, definition: ScheduledJobDefinition) -> ScheduledJobDefinition:
        async with self._lock:
            existing = self._definitions.get(definition.id)
            if existing is not None:
                definition.last_materialized_bucket = max(
                    definition.last_materialized_bucket, existing.last_materialized_bucket
                )
            self._definitions[definition.id] = definition
            return definition

    async def get_definition(self, definition_id: str) -> Optional[ScheduledJobDefinition]:
        return self._definitions.get(definition_id)

    async def list_definitions(self) -> List[ScheduledJobDefinition]:
        return list(self._definitions.values())

    async def mark_materialized(self, definition_id: str, expected_bucket: int, bucket: int) -> bool:
        async with self._lock:
            d = self._definitions.get(definition_id)
            if d is None or d.last_materialized_bucket != expected_bucket:
                return False
            d.last_materialized_bucket = bucket
            return True
