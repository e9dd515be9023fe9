"""Durable priority job engine and per-dependency circuit breakers."""

from .breaker import DEFAULT_BREAKERS, BreakerConfig, CircuitBreaker, CircuitState
from .clock import Clock, ManualClock
from .config import Settings
from .exceptions import (
    CircuitOpenError,
    HandlerExecutionError,
    InvalidJobType,
    InvalidTransition,
    JobNotFound,
    JobTimeoutError,
    ReclaimedStaleJobError,
    ReliabilityError,
)
from .guard import guarded
from .models import Job, JobState, Priority, ScheduledJobDefinition
from .queue import JobQueue
from .registry import CircuitBreakerRegistry
from .retry import RetryPolicy, backoff_s
from .runtime import Runtime
from .scheduler import Scheduler
from .store import InMemoryJobStore, JobStore
from .worker_pool import WorkerPool

__all__ = [
    "DEFAULT_BREAKERS",
    "BreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
    "Clock",
    "HandlerExecutionError",
    "InMemoryJobStore",
    "InvalidJobType",
    "InvalidTransition",
    "Job",
    "JobNotFound",
    "JobQueue",
    "JobState",
    "JobStore",
    "JobTimeoutError",
    "ManualClock",
    "Priority",
    "ReclaimedStaleJobError",
    "ReliabilityError",
    "RetryPolicy",
    "Runtime",
    "ScheduledJobDefinition",
    "Scheduler",
    "Settings",
    "WorkerPool",
    "backoff_s",
    "guarded",
]
