from __future__ import annotations

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest

# Numeric encoding for the breaker state gauge
BREAKER_STATE_VALUES = {"CLOSED": 0, "OPEN": 1, "HALF_OPEN": 2}


class Metrics:
    """Prometheus metrics for one runtime, on its own registry so several can coexist."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        r = self.registry

        # Jobs
        self.jobs_enqueued = Counter("jobs_enqueued_total", "Total jobs enqueued", ["job_type"], registry=r)
        # completed | retrying | dead_letter
        self.jobs_finished = Counter(
            "jobs_finished_total", "Job executions by outcome", ["job_type", "status"], registry=r
        )
        self.jobs_reclaimed = Counter(
            "jobs_reclaimed_total", "Stale PROCESSING jobs returned to the queue", ["job_type"], registry=r
        )
        self.job_runtime_s = Histogram("job_runtime_seconds", "Handler runtime seconds", ["job_type"], registry=r)
        self.queue_depth = Gauge("queue_depth", "Jobs waiting (PENDING or RETRYING)", registry=r)
        self.jobs_inflight = Gauge("jobs_inflight", "Jobs currently PROCESSING", registry=r)
        self.dead_letter_depth = Gauge("dead_letter_depth", "Jobs parked in DEAD_LETTER", registry=r)

        # Circuit breakers
        self.breaker_state = Gauge(
            "circuit_breaker_state", "Circuit breaker state (0=CLOSED, 1=OPEN, 2=HALF_OPEN)", ["breaker"], registry=r
        )
        # success | failure | rejected | fallback | cancelled
        self.breaker_calls = Counter(
            "circuit_breaker_calls_total", "Guarded calls by outcome", ["breaker", "outcome"], registry=r
        )
        self.breaker_transitions = Counter(
            "circuit_breaker_transitions_total", "Breaker state changes", ["breaker", "to_state"], registry=r
        )

    def set_breaker_state(self, name: str, state: str) -> None:
        self.breaker_state.labels(breaker=name).set(BREAKER_STATE_VALUES[state])

    def update_queue(self, by_state: dict) -> None:
        self.queue_depth.set(by_state.get("PENDING", 0) + by_state.get("RETRYING", 0))
        self.jobs_inflight.set(by_state.get("PROCESSING", 0))
        self.dead_letter_depth.set(by_state.get("DEAD_LETTER", 0))

    def render(self) -> bytes:
        return generate_latest(self.registry)
