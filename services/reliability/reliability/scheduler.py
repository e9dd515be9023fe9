from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from .clock import Clock
from .config import SCHEDULER_TICK_S
from .models import PayloadFactory, Priority, ScheduledJobDefinition
from .queue import JobQueue
from .store import JobStore

log = logging.getLogger("scheduler")


class Scheduler:
    """
    Materializes recurring job definitions into queue entries.

    Time is cut into buckets of floor(now / interval_s). A definition yields
    at most one job per bucket: the job id is derived from the bucket and the
    bucket is recorded with a compare-and-swap, so restarts and competing
    schedulers do not double-enqueue. Missed buckets are not back-filled.
    """

    def __init__(
        self,
        queue: JobQueue,
        store: Optional[JobStore] = None,
        clock: Optional[Clock] = None,
        tick_s: float = SCHEDULER_TICK_S,
    ) -> None:
        self.queue = queue
        self.store = store or queue.store
        self.clock = clock or queue.clock
        self.tick_s = tick_s
        self._factories: Dict[str, PayloadFactory] = {}
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

    async def schedule(
        self,
        job_type: str,
        interval_s: float,
        payload_template: Optional[Dict[str, Any]] = None,
        *,
        payload_factory: Optional[PayloadFactory] = None,
        definition_id: Optional[str] = None,
        priority: Union[Priority, int, str] = Priority.NORMAL,
        max_retries: int = 3,
    ) -> ScheduledJobDefinition:
        if interval_s <= 0:
            raise ValueError("interval_s must be positive")
        definition = ScheduledJobDefinition(
            id=definition_id or job_type,
            type=job_type,
            interval_s=float(interval_s),
            payload_template=dict(payload_template or {}),
            priority=Priority.parse(priority),
            max_retries=max_retries,
        )
        if payload_factory is not None:
            self._factories[definition.id] = payload_factory
        saved = await self.store.save_definition(definition)
        log.info(
            "job scheduled every %gs",
            interval_s,
            extra={"event": "job_scheduled", "job_type": job_type},
        )
        return saved

    async def tick(self) -> List[str]:
        """Enqueue every definition whose current bucket has not been materialized."""
        now = self.clock.now()
        enqueued = []
        for definition in await self.store.list_definitions():
            definition.payload_factory = self._factories.get(definition.id)
            bucket = definition.bucket_at(now)
            if bucket <= definition.last_materialized_bucket:
                continue
            try:
                job_id = await self.queue.enqueue(
                    definition.type,
                    definition.make_payload(bucket),
                    priority=definition.priority,
                    max_retries=definition.max_retries,
                    job_id=f"{definition.id}:{bucket}",
                )
            except Exception:
                log.exception(
                    "scheduled job materialization failed",
                    extra={"event": "schedule_failed", "job_type": definition.type},
                )
                continue
            if await self.store.mark_materialized(definition.id, definition.last_materialized_bucket, bucket):
                enqueued.append(job_id)
        return enqueued

    async def status(self) -> Dict[str, Dict[str, Any]]:
        out = {}
        for d in await self.store.list_definitions():
            out[d.id] = {
                "type": d.type,
                "interval_s": d.interval_s,
                "last_materialized_bucket": d.last_materialized_bucket,
                "last_run_at": d.last_materialized_bucket * d.interval_s if d.last_materialized_bucket >= 0 else None,
                "next_run_at": (max(d.last_materialized_bucket, d.bucket_at(self.clock.now())) + 1) * d.interval_s,
            }
        return out

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="scheduler")

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                log.exception("scheduler tick failed", extra={"event": "scheduler_error"})
            await self.clock.wait(self._stopping, self.tick_s)
