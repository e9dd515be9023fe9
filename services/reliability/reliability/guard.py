from __future__ import annotations

import functools
from typing import Any, Callable, Optional

from .registry import CircuitBreakerRegistry


def guarded(registry: CircuitBreakerRegistry, name: str, fallback: Optional[Callable[..., Any]] = None):
    """Decorator routing every call of an async function through breaker `name`.

    The fallback, if any, receives the same arguments as the wrapped function.
    """

    def decorator(fn):
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any):
            fb = functools.partial(fallback, *args, **kwargs) if fallback is not None else None
            return await registry.execute(name, functools.partial(fn, *args, **kwargs), fb)

        return wrapper

    return decorator
