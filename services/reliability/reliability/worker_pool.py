from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import List, Optional

from .clock import Clock
from .config import DRAIN_TIMEOUT_S, JOB_TIMEOUT_S, POLL_INTERVAL_S, RECLAIM_INTERVAL_S, STALE_AFTER_S, WORKER_CONCURRENCY
from .exceptions import HandlerExecutionError, InvalidJobType, JobTimeoutError, ReclaimedStaleJobError
from .metrics import Metrics
from .models import Job
from .queue import Handler, JobQueue

log = logging.getLogger("worker-pool")


class WorkerPool:
    """
    Fixed number of asyncio workers pulling from one JobQueue.

    Each worker loops dequeue -> execute -> record outcome. A failing handler
    only ever affects its own job. A periodic reclaim sweep returns jobs whose
    worker died mid-flight to PENDING.
    """

    def __init__(
        self,
        queue: JobQueue,
        *,
        concurrency: int = WORKER_CONCURRENCY,
        poll_interval_s: float = POLL_INTERVAL_S,
        job_timeout_s: Optional[float] = JOB_TIMEOUT_S,
        drain_timeout_s: float = DRAIN_TIMEOUT_S,
        stale_after_s: float = STALE_AFTER_S,
        reclaim_interval_s: float = RECLAIM_INTERVAL_S,
        clock: Optional[Clock] = None,
        metrics: Optional[Metrics] = None,
        name: str = "worker",
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.concurrency = concurrency
        self.poll_interval_s = poll_interval_s
        self.job_timeout_s = job_timeout_s
        self.drain_timeout_s = drain_timeout_s
        self.stale_after_s = stale_after_s
        self.reclaim_interval_s = reclaim_interval_s
        self.clock = clock or queue.clock
        self.metrics = metrics
        self.name = name

        self._workers: List[asyncio.Task] = []
        self._reclaimer: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    @classmethod
    def from_settings(cls, queue: JobQueue, settings, **kwargs) -> "WorkerPool":
        return cls(
            queue,
            concurrency=settings.worker_concurrency,
            poll_interval_s=settings.poll_interval_s,
            job_timeout_s=settings.job_timeout_s,
            drain_timeout_s=settings.drain_timeout_s,
            stale_after_s=settings.stale_after_s,
            reclaim_interval_s=settings.reclaim_interval_s,
            **kwargs,
        )

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._workers)

    # -----------------------
    # Lifecycle
    # -----------------------

    async def start(self, poll_interval_s: Optional[float] = None) -> None:
        if self.running:
            return
        if poll_interval_s is not None:
            self.poll_interval_s = poll_interval_s
        self._stopping = asyncio.Event()
        self._workers = [
            asyncio.create_task(self._worker_loop(f"{self.name}-{i}"), name=f"{self.name}-{i}")
            for i in range(self.concurrency)
        ]
        self._reclaimer = asyncio.create_task(self._reclaim_loop(), name=f"{self.name}-reclaim")
        log.info(
            "worker pool started",
            extra={"event": "pool_started", "worker_id": self.name},
        )

    async def stop(self) -> None:
        """Stop dequeuing and drain in-flight jobs for up to drain_timeout_s.

        Jobs still running at the deadline are abandoned in PROCESSING; the
        reclaim sweep of a later run returns them to the queue.
        """
        self._stopping.set()
        tasks = [t for t in self._workers if not t.done()]
        pending = set()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=self.drain_timeout_s)
        abandoned = len(pending)
        for t in pending:
            t.cancel()
        if self._reclaimer is not None:
            self._reclaimer.cancel()
            pending.add(self._reclaimer)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if tasks:
            log.info(
                "worker pool stopped (%d worker(s) abandoned in-flight jobs)",
                abandoned,
                extra={"event": "pool_stopped", "worker_id": self.name},
            )
        self._workers = []
        self._reclaimer = None

    async def _idle(self, seconds: float) -> None:
        await self.clock.wait(self._stopping, seconds)

    async def _worker_loop(self, worker_id: str) -> None:
        while not self._stopping.is_set():
            try:
                job = await self.run_once(worker_id)
            except Exception:
                # store unavailable or similar; keep the worker alive
                log.exception("worker iteration failed", extra={"event": "worker_error", "worker_id": worker_id})
                job = None
            if job is None:
                await self._idle(self.poll_interval_s)

    async def _reclaim_loop(self) -> None:
        while not self._stopping.is_set():
            await self._idle(self.reclaim_interval_s)
            if self._stopping.is_set():
                return
            try:
                await self.reclaim_stale()
            except Exception:
                log.exception("reclaim sweep failed", extra={"event": "reclaim_error"})

    # -----------------------
    # Execution
    # -----------------------

    async def run_once(self, worker_id: str = "worker-0") -> Optional[Job]:
        """Dequeue and execute at most one job. Returns the job's final record."""
        job = await self.queue.dequeue_next(worker_id)
        if job is None:
            return None
        return await self.execute(job)

    async def _run_handler(self, handler: Handler, job: Job):
        async def call():
            if inspect.iscoroutinefunction(handler):
                return await handler(job.payload)
            # plain callables run on a thread; the job deadline still applies to them
            out = await asyncio.to_thread(handler, job.payload)
            if inspect.isawaitable(out):
                out = await out
            return out

        if self.job_timeout_s is None:
            return await call()
        try:
            return await asyncio.wait_for(call(), timeout=self.job_timeout_s)
        except asyncio.TimeoutError:
            raise JobTimeoutError(job.id, self.job_timeout_s) from None

    async def execute(self, job: Job) -> Job:
        started = time.perf_counter()
        try:
            handler = self.queue.handler_for(job.type)
            result = await self._run_handler(handler, job)
        except asyncio.CancelledError as exc:
            if asyncio.current_task().cancelling():
                # the worker itself is being cancelled (stop() past its drain deadline)
                raise
            return await self._record_failure(job, HandlerExecutionError(job.id, exc), exc)
        except Exception as exc:
            if isinstance(exc, (JobTimeoutError, InvalidJobType)):
                error: Exception = exc
            else:
                error = HandlerExecutionError(job.id, exc)
            return await self._record_failure(job, error, exc)
        else:
            try:
                return await self.queue.complete(job, result)
            except ReclaimedStaleJobError as stale:
                self._log_lost_claim(stale, job)
                return job
        finally:
            if self.metrics:
                self.metrics.job_runtime_s.labels(job_type=job.type).observe(time.perf_counter() - started)

    async def _record_failure(self, job: Job, error: Exception, raised: BaseException) -> Job:
        log.debug("handler raised", exc_info=raised, extra={"job_id": job.id, "job_type": job.type})
        try:
            return await self.queue.fail(job, error)
        except ReclaimedStaleJobError as stale:
            self._log_lost_claim(stale, job)
            return job

    def _log_lost_claim(self, stale: ReclaimedStaleJobError, job: Job) -> None:
        log.warning(
            "outcome dropped, claim no longer held",
            extra={"event": "claim_lost", "job_id": job.id, "job_type": job.type, "worker_id": job.claimed_by, "error": str(stale)},
        )

    async def reclaim_stale(self) -> List[str]:
        """Return jobs PROCESSING for longer than stale_after_s to PENDING."""
        cutoff = self.clock.now() - self.stale_after_s
        reclaimed = []
        for job in await self.queue.store.find_stale(cutoff):
            try:
                await self.queue.reclaim(job)
            except ReclaimedStaleJobError:
                # finished or reclaimed by someone else since we looked
                continue
            reclaimed.append(job.id)
            log.warning(
                "stale job reclaimed",
                extra={
                    "event": "job_reclaimed",
                    "job_id": job.id,
                    "job_type": job.type,
                    "worker_id": job.claimed_by,
                    "attempts": job.attempts,
                    "error": str(ReclaimedStaleJobError(job.id, job.claimed_by)),
                },
            )
        return reclaimed
