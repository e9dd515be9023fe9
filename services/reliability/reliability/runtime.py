from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, Optional

import httpx

from .clock import Clock
from .config import Settings
from .event_log import EventLogger
from .handlers import CLEANUP_COMPLETED_JOBS, register_default_handlers
from .metrics import Metrics
from .models import Priority
from .queue import JobQueue
from .registry import CircuitBreakerRegistry
from .retry import RetryPolicy
from .scheduler import Scheduler
from .store import InMemoryJobStore, JobStore
from .worker_pool import WorkerPool

log = logging.getLogger("runtime")


def build_store(settings: Settings) -> JobStore:
    if settings.store_backend == "redis":
        from .redis_store import RedisJobStore

        return RedisJobStore.from_url(settings.redis_url, prefix=settings.redis_prefix)
    if settings.store_backend == "memory":
        return InMemoryJobStore()
    raise ValueError(f"unknown STORE_BACKEND {settings.store_backend!r}")


class Runtime:
    """Composition root: wires one store, queue, pool, scheduler and breaker registry."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[JobStore] = None,
        clock: Optional[Clock] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings or Settings()
        self.clock = clock or Clock()
        self.metrics = Metrics()
        self.event_log = EventLogger.from_settings(self.settings)
        self.store = store or build_store(self.settings)
        self.queue = JobQueue(
            self.store,
            self.clock,
            retry_policy=RetryPolicy.from_settings(self.settings, rng),
            strict_job_types=self.settings.strict_job_types,
            metrics=self.metrics,
            event_log=self.event_log,
        )
        self.pool = WorkerPool.from_settings(self.queue, self.settings, clock=self.clock, metrics=self.metrics)
        self.scheduler = Scheduler(self.queue, clock=self.clock, tick_s=self.settings.scheduler_tick_s)
        self.breakers = CircuitBreakerRegistry(clock=self.clock, metrics=self.metrics, event_log=self.event_log)
        self.breakers.register_defaults()

        self._owns_http = http_client is None
        self.http = http_client
        self._metrics_task: Optional[asyncio.Task] = None
        self.started = False

    def install_default_handlers(self) -> None:
        if self.http is None:
            self.http = httpx.AsyncClient(timeout=10.0)
        register_default_handlers(self.queue, self.breakers, self.http, self.settings)

    async def start(self) -> None:
        if self.started:
            return
        if CLEANUP_COMPLETED_JOBS in self.queue.job_types:
            await self.scheduler.schedule(
                CLEANUP_COMPLETED_JOBS,
                86400,
                {"days_old": self.settings.cleanup_after_days},
                priority=Priority.LOW,
            )
        await self.scheduler.start()
        await self.pool.start()
        self._metrics_task = asyncio.create_task(self._metrics_loop(), name="metrics")
        self.started = True
        log.info("runtime started", extra={"event": "runtime_started"})

    async def stop(self) -> None:
        if not self.started:
            return
        await self.pool.stop()
        await self.scheduler.stop()
        if self._metrics_task is not None:
            self._metrics_task.cancel()
            await asyncio.gather(self._metrics_task, return_exceptions=True)
        if self._owns_http and self.http is not None:
            await self.http.aclose()
        await self.store.close()
        self.started = False
        log.info("runtime stopped", extra={"event": "runtime_stopped"})

    async def refresh_metrics(self) -> Dict[str, Any]:
        stats = await self.queue.stats()
        self.metrics.update_queue(stats["by_state"])
        return stats

    async def _metrics_loop(self) -> None:
        """Continuously update gauges from the store."""

        while True:
            try:
                await self.refresh_metrics()
            except Exception:
                log.warning("metrics refresh failed", exc_info=True)
            await self.clock.sleep(self.settings.metrics_refresh_s)

    async def status(self) -> Dict[str, Any]:
        """Read-only export: job counts per type and state, breaker states, schedules."""
        return {
            "jobs": await self.refresh_metrics(),
            "breakers": self.breakers.all_status(),
            "health": self.breakers.health(),
            "schedules": await self.scheduler.status(),
            "workers": {"running": self.pool.running, "concurrency": self.pool.concurrency},
        }
