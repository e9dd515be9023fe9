"""
Circuit breaker: CLOSED -> OPEN -> HALF_OPEN -> {CLOSED | OPEN}.

Stops calling a failing dependency for a cooldown, then lets exactly one
trial call through at a time until enough consecutive trials succeed.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple, TypeVar, Union

from .clock import Clock
from .event_log import EventLogger
from .exceptions import CircuitOpenError
from .metrics import Metrics

log = logging.getLogger("circuit-breaker")

T = TypeVar("T")
Call = Callable[[], Union[T, Awaitable[T]]]


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


_ALLOWED = {
    CircuitState.CLOSED: (CircuitState.OPEN,),
    CircuitState.OPEN: (CircuitState.HALF_OPEN,),
    CircuitState.HALF_OPEN: (CircuitState.CLOSED, CircuitState.OPEN),
}


@dataclass(frozen=True)
class BreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    # cooldown spent OPEN before a trial is allowed
    timeout_s: float = 60.0
    # per-call deadline; expiry counts as a failure
    call_timeout_s: Optional[float] = None


# Pre-configured per dependency class; overridable at registration
DEFAULT_BREAKERS: Dict[str, BreakerConfig] = {
    # messaging webhooks
    "slack": BreakerConfig(failure_threshold=5, success_threshold=3, timeout_s=30.0),
    "teams": BreakerConfig(failure_threshold=5, success_threshold=3, timeout_s=30.0),
    # mail relay
    "email": BreakerConfig(failure_threshold=3, success_threshold=2, timeout_s=60.0),
    # primary datastore
    "database": BreakerConfig(failure_threshold=10, success_threshold=5, timeout_s=20.0),
    # object storage
    "storage": BreakerConfig(failure_threshold=8, success_threshold=4, timeout_s=30.0),
}


async def _invoke(fn: Call[T]) -> T:
    if inspect.iscoroutinefunction(fn):
        return await fn()
    # plain callables go to a thread so call_timeout_s can bound them
    out = await asyncio.to_thread(fn)
    if inspect.isawaitable(out):
        return await out
    return out


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: Optional[BreakerConfig] = None,
        clock: Optional[Clock] = None,
        *,
        metrics: Optional[Metrics] = None,
        event_log: Optional[EventLogger] = None,
        history_size: int = 50,
    ) -> None:
        self.name = name
        self.config = config or BreakerConfig()
        self.clock = clock or Clock()
        self.metrics = metrics
        self.event_log = event_log or EventLogger.disabled()

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._successes = 0
        self._open_until = 0.0
        self._trial_in_flight = False
        self._last_state_change_at = self.clock.monotonic()
        # critical sections never await, so a thread lock is safe for coroutines too
        self._lock = threading.Lock()

        self.total_requests = 0
        self.total_successes = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.total_fallbacks = 0
        self.state_changes: Deque[Dict[str, Any]] = deque(maxlen=history_size)

        if self.metrics:
            self.metrics.set_breaker_state(name, self._state.value)

    @property
    def state(self) -> CircuitState:
        return self._state

    # -----------------------
    # State machine (call with self._lock held)
    # -----------------------

    def _transition(self, new: CircuitState, reason: str = "") -> None:
        old = self._state
        if new not in _ALLOWED[old]:
            raise RuntimeError(f"breaker {self.name}: illegal transition {old.value} -> {new.value}")
        self._set_state(new, reason)

    def _set_state(self, new: CircuitState, reason: str) -> None:
        old = self._state
        now = self.clock.monotonic()
        self.state_changes.append(
            {
                "from": old.value,
                "to": new.value,
                "at": now,
                "failure_count": self._failures,
                "success_count": self._successes,
                "reason": reason,
            }
        )
        self._state = new
        self._failures = 0
        self._successes = 0
        self._trial_in_flight = False
        self._last_state_change_at = now
        if new == CircuitState.OPEN:
            self._open_until = now + self.config.timeout_s

        level = logging.WARNING if new == CircuitState.OPEN else logging.INFO
        log.log(
            level,
            "breaker %s: %s -> %s",
            self.name,
            old.value,
            new.value,
            extra={"event": "breaker_transition", "breaker": self.name, "state": new.value},
        )
        self.event_log.emit(
            "breaker_transition", {"breaker": self.name, "from_state": old.value, "state": new.value, "error": reason}
        )
        if self.metrics:
            self.metrics.set_breaker_state(self.name, new.value)
            self.metrics.breaker_transitions.labels(breaker=self.name, to_state=new.value).inc()

    def _acquire(self) -> Tuple[bool, bool]:
        """Decide whether a call may reach the dependency: (permitted, is_trial)."""
        self.total_requests += 1
        if self._state == CircuitState.CLOSED:
            return True, False
        if self._state == CircuitState.OPEN:
            if self.clock.monotonic() < self._open_until:
                return False, False
            self._transition(CircuitState.HALF_OPEN, "cooldown elapsed")
        if self._trial_in_flight:
            return False, False
        self._trial_in_flight = True
        return True, True

    def _on_success(self, trial: bool) -> None:
        self.total_successes += 1
        if trial and self._state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._successes += 1
            if self._successes >= self.config.success_threshold:
                self._transition(CircuitState.CLOSED, "trial calls succeeded")
        elif self._state == CircuitState.CLOSED:
            self._failures = 0

    def _on_failure(self, trial: bool, exc: BaseException) -> None:
        self.total_failures += 1
        if trial and self._state == CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN, f"trial failed: {exc!r}")
        elif self._state == CircuitState.CLOSED:
            self._failures += 1
            if self._failures >= self.config.failure_threshold:
                self._transition(CircuitState.OPEN, f"{self._failures} consecutive failures, last: {exc!r}")
        # calls admitted before a trip that finish while OPEN do not count

    def _on_cancel(self, trial: bool) -> None:
        if trial:
            self._trial_in_flight = False

    # -----------------------
    # Public API
    # -----------------------

    async def call(self, fn: Call[T], fallback: Optional[Call[T]] = None) -> T:
        """Run fn through the breaker.

        A rejected call, or a failed one, returns fallback() when a fallback
        is given. Without one, rejection raises CircuitOpenError and a failure
        re-raises the dependency's exception. Cancellation by the caller is
        re-raised and not counted either way.
        """
        with self._lock:
            permitted, trial = self._acquire()
            if not permitted:
                self.total_rejections += 1
                retry_in = max(0.0, self._open_until - self.clock.monotonic())
        if not permitted:
            self._count("rejected")
            if fallback is not None:
                return await self._fallback(fallback, "open")
            raise CircuitOpenError(self.name, retry_in)

        try:
            if self.config.call_timeout_s is not None:
                result = await asyncio.wait_for(_invoke(fn), timeout=self.config.call_timeout_s)
            else:
                result = await _invoke(fn)
        except asyncio.CancelledError:
            with self._lock:
                self._on_cancel(trial)
            self._count("cancelled")
            raise
        except Exception as exc:
            with self._lock:
                self._on_failure(trial, exc)
            self._count("failure")
            if fallback is not None:
                log.warning(
                    "guarded call failed, using fallback",
                    extra={"event": "breaker_fallback", "breaker": self.name, "error": repr(exc)},
                )
                return await self._fallback(fallback, "failure")
            raise
        with self._lock:
            self._on_success(trial)
        self._count("success")
        return result

    async def _fallback(self, fallback: Call[T], why: str) -> T:
        with self._lock:
            self.total_fallbacks += 1
        self._count("fallback")
        log.debug("breaker %s using fallback (%s)", self.name, why, extra={"breaker": self.name})
        return await _invoke(fallback)

    def _count(self, outcome: str) -> None:
        if self.metrics:
            self.metrics.breaker_calls.labels(breaker=self.name, outcome=outcome).inc()

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            now = self.clock.monotonic()
            state = self._state
            return {
                "name": self.name,
                "state": state.value,
                "failure_count": self._failures,
                "success_count": self._successes,
                "open_until": self._open_until if state == CircuitState.OPEN else None,
                "retry_in_s": max(0.0, self._open_until - now) if state == CircuitState.OPEN else None,
                "trial_in_flight": self._trial_in_flight,
                "last_state_change_at": self._last_state_change_at,
                "config": {
                    "failure_threshold": self.config.failure_threshold,
                    "success_threshold": self.config.success_threshold,
                    "timeout_s": self.config.timeout_s,
                    "call_timeout_s": self.config.call_timeout_s,
                },
            }

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            rate = (self.total_successes / self.total_requests * 100) if self.total_requests else 100.0
            return {
                "total_requests": self.total_requests,
                "total_successes": self.total_successes,
                "total_failures": self.total_failures,
                "total_rejections": self.total_rejections,
                "total_fallbacks": self.total_fallbacks,
                "success_rate": round(rate, 2),
                "state_changes": list(self.state_changes),
            }

    def reset(self) -> None:
        """Operator override: force CLOSED from any state."""
        with self._lock:
            if self._state != CircuitState.CLOSED:
                self._set_state(CircuitState.CLOSED, "manual reset")
            self._failures = 0
            self._successes = 0
