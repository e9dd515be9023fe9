from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .clock import Clock
from .event_log import EventLogger
from .exceptions import InvalidJobType, InvalidTransition, JobNotFound, ReclaimedStaleJobError
from .metrics import Metrics
from .models import Job, JobState, Priority, new_job_id
from .retry import RetryPolicy, should_retry
from .store import JobStore

log = logging.getLogger("job-queue")

Handler = Callable[[Any], Union[Any, Awaitable[Any]]]
RunAt = Union[float, int, datetime, None]


def _to_timestamp(run_at: RunAt, default: float) -> float:
    if run_at is None:
        return default
    if isinstance(run_at, datetime):
        return run_at.timestamp()
    return float(run_at)


class JobQueue:
    """
    Priority job queue over a JobStore.

    Dequeue order is priority (CRITICAL first), then enqueue order within a
    priority band. LOW jobs can starve under sustained higher-priority load;
    callers that need fairness should use separate queues.
    """

    def __init__(
        self,
        store: JobStore,
        clock: Optional[Clock] = None,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        strict_job_types: bool = True,
        metrics: Optional[Metrics] = None,
        event_log: Optional[EventLogger] = None,
    ) -> None:
        self.store = store
        self.clock = clock or Clock()
        self.retry_policy = retry_policy or RetryPolicy()
        self.strict_job_types = strict_job_types
        self.metrics = metrics
        self.event_log = event_log or EventLogger.disabled()
        self._handlers: Dict[str, Handler] = {}

    # -----------------------
    # Handlers
    # -----------------------

    def register_handler(self, job_type: str, handler: Handler) -> None:
        if not callable(handler):
            raise TypeError(f"handler for {job_type!r} is not callable")
        self._handlers[job_type] = handler
        log.info("handler registered", extra={"event": "handler_registered", "job_type": job_type})

    def handler_for(self, job_type: str) -> Handler:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise InvalidJobType(job_type) from None

    @property
    def job_types(self) -> List[str]:
        return sorted(self._handlers)

    # -----------------------
    # Enqueue / dequeue
    # -----------------------

    async def enqueue(
        self,
        job_type: str,
        payload: Any = None,
        *,
        priority: Union[Priority, int, str] = Priority.NORMAL,
        max_retries: int = 3,
        run_at: RunAt = None,
        job_id: Optional[str] = None,
    ) -> str:
        """Persist a new PENDING job and return its id.

        Passing job_id makes the call idempotent: an existing job with that id
        is left untouched and its id returned.
        """
        if self.strict_job_types and job_type not in self._handlers:
            raise InvalidJobType(job_type)
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        t = self.clock.now()
        job = Job(
            id=job_id or new_job_id(),
            type=job_type,
            payload=payload,
            priority=Priority.parse(priority),
            max_retries=max_retries,
            next_run_at=_to_timestamp(run_at, t),
            created_at=t,
            updated_at=t,
        )
        if not await self.store.insert(job):
            log.info("job already enqueued", extra={"event": "job_duplicate", "job_id": job.id, "job_type": job_type})
            return job.id

        if self.metrics:
            self.metrics.jobs_enqueued.labels(job_type=job_type).inc()
        log.info(
            "job enqueued",
            extra={"event": "job_enqueued", "job_id": job.id, "job_type": job_type, "state": job.state.value},
        )
        self.event_log.emit("job_enqueued", {"job_id": job.id, "job_type": job_type, "state": job.state.value})
        return job.id

    async def dequeue_next(self, worker_id: str = "worker") -> Optional[Job]:
        """Claim the next eligible job for worker_id, or None if nothing is due."""
        now = self.clock.now()
        for job_id in await self.store.release_due(now):
            self.event_log.emit(
                "job_released", {"job_id": job_id, "from_state": JobState.RETRYING.value, "state": JobState.PENDING.value}
            )
        job = await self.store.claim_next(now, worker_id)
        if job is None:
            return None
        log.info(
            "job claimed",
            extra={
                "event": "job_claimed",
                "job_id": job.id,
                "job_type": job.type,
                "worker_id": worker_id,
                "attempts": job.attempts,
                "state": job.state.value,
            },
        )
        self.event_log.emit(
            "job_claimed",
            {"job_id": job.id, "job_type": job.type, "worker_id": worker_id, "state": job.state.value, "attempts": job.attempts},
        )
        return job

    # -----------------------
    # Outcomes
    # -----------------------

    async def _commit(self, job: Job, expected_version: int, from_state: JobState) -> Job:
        if not await self.store.replace(job, expected_version):
            raise ReclaimedStaleJobError(job.id, job.claimed_by)
        self.event_log.emit(
            "job_transition",
            {
                "job_id": job.id,
                "job_type": job.type,
                "worker_id": job.claimed_by or "",
                "from_state": from_state.value,
                "state": job.state.value,
                "attempts": job.attempts,
                "error": job.last_error or "",
            },
        )
        return job

    async def complete(self, job: Job, result: Any = None) -> Job:
        """PROCESSING -> COMPLETED. Raises ReclaimedStaleJobError if the claim was lost."""
        expected = job.version
        done = job.copy()
        t = self.clock.now()
        done.state = JobState.COMPLETED
        done.attempts += 1
        done.result = result
        done.last_error = None
        done.completed_at = t
        done.updated_at = t
        await self._commit(done, expected, JobState.PROCESSING)
        if self.metrics:
            self.metrics.jobs_finished.labels(job_type=job.type, status="completed").inc()
        log.info(
            "job completed",
            extra={"event": "job_completed", "job_id": job.id, "job_type": job.type, "attempts": done.attempts, "state": done.state.value},
        )
        return done

    async def fail(self, job: Job, error: BaseException) -> Job:
        """PROCESSING -> RETRYING (with backoff) or DEAD_LETTER once retries are spent."""
        expected = job.version
        failed = job.copy()
        t = self.clock.now()
        failed.attempts += 1
        failed.last_error = str(error) or type(error).__name__
        failed.updated_at = t
        if should_retry(failed):
            delay = self.retry_policy.delay_for(failed.attempts)
            failed.state = JobState.RETRYING
            failed.next_run_at = t + delay
            status, level = "retrying", logging.WARNING
            msg = f"job failed; retry in {delay:.2f}s"
        else:
            failed.state = JobState.DEAD_LETTER
            status, level = "dead_letter", logging.ERROR
            msg = "job dead-lettered"
        failed.claimed_at = None
        await self._commit(failed, expected, JobState.PROCESSING)
        if self.metrics:
            self.metrics.jobs_finished.labels(job_type=job.type, status=status).inc()
        log.log(
            level,
            msg,
            extra={
                "event": f"job_{status}",
                "job_id": job.id,
                "job_type": job.type,
                "attempts": failed.attempts,
                "state": failed.state.value,
                "error": failed.last_error,
            },
        )
        return failed

    async def reclaim(self, job: Job) -> Job:
        """PROCESSING -> PENDING without counting an attempt."""
        expected = job.version
        back = job.copy()
        t = self.clock.now()
        back.state = JobState.PENDING
        back.next_run_at = t
        back.claimed_at = None
        back.claimed_by = None
        back.updated_at = t
        await self._commit(back, expected, JobState.PROCESSING)
        if self.metrics:
            self.metrics.jobs_reclaimed.labels(job_type=job.type).inc()
        return back

    # -----------------------
    # Inspection / operator actions
    # -----------------------

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job

    async def list_jobs(self, state: Optional[JobState] = None, job_type: Optional[str] = None) -> List[Job]:
        return await self.store.list_jobs(state=state, job_type=job_type)

    async def dead_letters(self) -> List[Job]:
        return await self.store.list_jobs(state=JobState.DEAD_LETTER)

    async def replay(self, job_id: str) -> Job:
        """Give a DEAD_LETTER job a fresh retry budget."""
        job = await self.get_job(job_id)
        if job.state != JobState.DEAD_LETTER:
            raise InvalidTransition(job_id, job.state.value, "replay")
        expected = job.version
        t = self.clock.now()
        job.state = JobState.PENDING
        job.attempts = 0
        job.next_run_at = t
        job.claimed_by = None
        job.updated_at = t
        try:
            await self._commit(job, expected, JobState.DEAD_LETTER)
        except ReclaimedStaleJobError:
            raise InvalidTransition(job_id, "modified concurrently", "replay") from None
        log.info("job replayed", extra={"event": "job_replayed", "job_id": job_id, "job_type": job.type})
        return job

    async def cleanup(self, older_than_s: float) -> int:
        """Delete COMPLETED jobs that finished more than older_than_s ago."""
        cutoff = self.clock.now() - older_than_s
        deleted = 0
        for job in await self.store.list_jobs(state=JobState.COMPLETED):
            if (job.completed_at or job.updated_at) < cutoff and await self.store.delete(job.id):
                deleted += 1
        log.info("completed jobs cleaned up", extra={"event": "jobs_cleanup"})
        return deleted

    async def stats(self) -> Dict[str, Any]:
        by_type = await self.store.counts()
        by_state: Dict[str, int] = {s.value: 0 for s in JobState}
        for counts in by_type.values():
            for state, n in counts.items():
                by_state[state] = by_state.get(state, 0) + n
        return {"total": sum(by_state.values()), "by_state": by_state, "by_type": by_type}
