from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

# -----------------------
# Tunable parameters
# -----------------------
WORKER_CONCURRENCY = 4
POLL_INTERVAL_S = 0.5  # idle sleep between dequeue attempts
JOB_TIMEOUT_S = 30.0  # per-job handler deadline
DRAIN_TIMEOUT_S = 30.0  # how long stop() waits for in-flight jobs
STALE_AFTER_S = 300.0  # a job PROCESSING longer than this is considered orphaned
RECLAIM_INTERVAL_S = 30.0
RETRY_BASE_DELAY_S = 1.0  # exponential backoff base
RETRY_MAX_DELAY_S = 300.0
RETRY_JITTER = 0.2  # +/- fraction applied to every backoff delay
SCHEDULER_TICK_S = 1.0
CLEANUP_AFTER_DAYS = 7


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw not in ("0", "false", "False", "no", "")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw.lower() in ("none", "off"):
        return None
    return float(raw)


@dataclass
class Settings:
    store_backend: str = "memory"  # memory | redis
    redis_url: str = "redis://localhost:6379/0"
    redis_prefix: str = "reliability"

    worker_concurrency: int = WORKER_CONCURRENCY
    poll_interval_s: float = POLL_INTERVAL_S
    job_timeout_s: Optional[float] = JOB_TIMEOUT_S
    drain_timeout_s: float = DRAIN_TIMEOUT_S
    stale_after_s: float = STALE_AFTER_S
    reclaim_interval_s: float = RECLAIM_INTERVAL_S

    retry_base_delay_s: float = RETRY_BASE_DELAY_S
    retry_max_delay_s: float = RETRY_MAX_DELAY_S
    retry_jitter: float = RETRY_JITTER

    # reject enqueue for job types without a handler
    strict_job_types: bool = True
    scheduler_tick_s: float = SCHEDULER_TICK_S
    cleanup_after_days: int = CLEANUP_AFTER_DAYS
    metrics_refresh_s: float = 2.0

    notify_webhook_url: Optional[str] = None
    http_host: str = "0.0.0.0"
    http_port: int = 8000

    event_log_enabled: bool = False
    event_log_format: str = "json"  # json | csv
    event_log_path: str = "/logs/job_events.jsonl"

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ.get
        return cls(
            store_backend=env("STORE_BACKEND", "memory").lower(),
            redis_url=env("REDIS_URL", "redis://localhost:6379/0"),
            redis_prefix=env("REDIS_PREFIX", "reliability"),
            worker_concurrency=int(env("WORKER_CONCURRENCY", WORKER_CONCURRENCY)),
            poll_interval_s=float(env("POLL_INTERVAL_S", POLL_INTERVAL_S)),
            job_timeout_s=_env_float("JOB_TIMEOUT_S", JOB_TIMEOUT_S),
            drain_timeout_s=float(env("DRAIN_TIMEOUT_S", DRAIN_TIMEOUT_S)),
            stale_after_s=float(env("STALE_AFTER_S", STALE_AFTER_S)),
            reclaim_interval_s=float(env("RECLAIM_INTERVAL_S", RECLAIM_INTERVAL_S)),
            retry_base_delay_s=float(env("RETRY_BASE_DELAY_S", RETRY_BASE_DELAY_S)),
            retry_max_delay_s=float(env("RETRY_MAX_DELAY_S", RETRY_MAX_DELAY_S)),
            retry_jitter=float(env("RETRY_JITTER", RETRY_JITTER)),
            strict_job_types=_env_bool("STRICT_JOB_TYPES", True),
            scheduler_tick_s=float(env("SCHEDULER_TICK_S", SCHEDULER_TICK_S)),
            cleanup_after_days=int(env("CLEANUP_AFTER_DAYS", CLEANUP_AFTER_DAYS)),
            metrics_refresh_s=float(env("METRICS_REFRESH_S", 2.0)),
            notify_webhook_url=env("NOTIFY_WEBHOOK_URL") or None,
            http_host=env("HTTP_HOST", "0.0.0.0"),
            http_port=int(env("HTTP_PORT", 8000)),
            event_log_enabled=_env_bool("EVENT_LOG_ENABLED", False),
            event_log_format=env("EVENT_LOG_FORMAT", "json").lower(),
            event_log_path=env("EVENT_LOG_PATH", "/logs/job_events.jsonl"),
        )
