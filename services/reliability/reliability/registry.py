from __future__ import annotations

import threading
from typing import Any, Dict, Mapping, Optional

from .breaker import DEFAULT_BREAKERS, BreakerConfig, Call, CircuitBreaker, CircuitState, T
from .clock import Clock
from .event_log import EventLogger
from .metrics import Metrics


class CircuitBreakerRegistry:
    """
    Named breakers, one per guarded dependency, owned by the composition root.

    State is process-local. Sharing it between processes would need a
    lock-protected external store and is not done here.
    """

    def __init__(
        self,
        defaults: Optional[Mapping[str, BreakerConfig]] = None,
        clock: Optional[Clock] = None,
        *,
        default_config: Optional[BreakerConfig] = None,
        metrics: Optional[Metrics] = None,
        event_log: Optional[EventLogger] = None,
    ) -> None:
        self.clock = clock or Clock()
        self.defaults: Dict[str, BreakerConfig] = dict(DEFAULT_BREAKERS if defaults is None else defaults)
        self.default_config = default_config or BreakerConfig()
        self.metrics = metrics
        self.event_log = event_log
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def register(self, name: str, config: Optional[BreakerConfig] = None) -> CircuitBreaker:
        """Get or create the breaker for name. config only applies on creation."""
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                cfg = config or self.defaults.get(name) or self.default_config
                breaker = CircuitBreaker(
                    name, cfg, self.clock, metrics=self.metrics, event_log=self.event_log
                )
                self._breakers[name] = breaker
            return breaker

    def register_defaults(self) -> None:
        for name in self.defaults:
            self.register(name)

    def get(self, name: str) -> CircuitBreaker:
        return self._breakers.get(name) or self.register(name)

    def __contains__(self, name: str) -> bool:
        return name in self._breakers

    @property
    def names(self):
        return sorted(self._breakers)

    async def execute(self, name: str, fn: Call[T], fallback: Optional[Call[T]] = None) -> T:
        """The guarded call path: run fn through breaker `name`."""
        return await self.get(name).call(fn, fallback)

    def get_state(self, name: str) -> Dict[str, Any]:
        return self.get(name).snapshot()

    def all_status(self) -> Dict[str, Dict[str, Any]]:
        out = {}
        for name in self.names:
            b = self._breakers[name]
            out[name] = {**b.snapshot(), "metrics": b.stats()}
        return out

    def health(self) -> Dict[str, Any]:
        states = [b.state for b in list(self._breakers.values())]
        open_count = states.count(CircuitState.OPEN)
        return {
            "total": len(states),
            "closed": states.count(CircuitState.CLOSED),
            "half_open": states.count(CircuitState.HALF_OPEN),
            "open": open_count,
            "healthy": open_count == 0,
            "status": "DEGRADED" if open_count else "HEALTHY",
        }

    def reset(self, name: str) -> Dict[str, Any]:
        breaker = self.get(name)
        breaker.reset()
        return breaker.snapshot()

    def reset_all(self) -> None:
        for breaker in list(self._breakers.values()):
            breaker.reset()
