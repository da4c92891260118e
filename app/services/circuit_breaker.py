"""
Circuit breaker implementation using pybreaker library.
State lives in Redis so restarts and parallel bot replicas share it.
"""
import logging
from typing import Any, Callable

import pybreaker
import redis

from app.core.config import settings
from app.utils.metrics import circuit_breaker_state


logger = logging.getLogger("circuit_breaker")


class CircuitBreakerListener(pybreaker.CircuitBreakerListener):
    """Listener for circuit breaker events (logging/metrics)."""

    def __init__(self, name: str) -> None:
        self.name = name

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: Any, new_state: Any) -> None:
        old_name = getattr(old_state, "name", old_state)
        new_name = getattr(new_state, "name", new_state)
        logger.warning(
            "circuit_breaker_state_change",
            extra={
                "breaker_name": self.name,
                "old_state": old_name,
                "new_state": new_name,
            },
        )
        circuit_breaker_state.labels(name=self.name).set(
            1 if new_name == pybreaker.STATE_OPEN else 0
        )

    def failure(self, cb: pybreaker.CircuitBreaker, exc: BaseException) -> None:
        logger.warning(
            "circuit_breaker_failure",
            extra={
                "breaker_name": self.name,
                "error": type(exc).__name__,
            },
        )


_breakers: dict[str, pybreaker.CircuitBreaker] = {}


def get_circuit_breaker(name: str) -> pybreaker.CircuitBreaker:
    """Get or create a Redis-backed circuit breaker by name."""
    if name not in _breakers:
        # pybreaker decodes the stored values itself
        client = redis.Redis.from_url(settings.redis_url)
        _breakers[name] = pybreaker.CircuitBreaker(
            fail_max=settings.cb_failure_threshold,
            reset_timeout=settings.cb_open_seconds,
            state_storage=pybreaker.CircuitRedisStorage(
                pybreaker.STATE_CLOSED, client, namespace=f"cb:{name}"
            ),
            listeners=[CircuitBreakerListener(name)],
            name=name,
        )
    return _breakers[name]


def call_with_breaker(
    breaker: pybreaker.CircuitBreaker | None,
    func: Callable,
    *args: Any,
    **kwargs: Any,
) -> Any:
    """Run func through breaker when one is configured."""
    if breaker is None:
        return func(*args, **kwargs)
    return breaker.call(func, *args, **kwargs)

