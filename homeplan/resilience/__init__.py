"""Resilience primitives: response cache, circuit breaker, retry controller, concurrency limiter."""

from homeplan.resilience.cache import CacheEntry, CacheStats, ResponseCache, fingerprint
from homeplan.resilience.circuit_breaker import CircuitBreaker, CircuitState
from homeplan.resilience.concurrency import ConcurrencyLimiter
from homeplan.resilience.retry import RetryController, call_with_timeout

__all__ = [
    "CacheEntry",
    "CacheStats",
    "CircuitBreaker",
    "CircuitState",
    "ConcurrencyLimiter",
    "ResponseCache",
    "RetryController",
    "call_with_timeout",
    "fingerprint",
]
